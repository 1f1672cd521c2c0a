"""Storage error taxonomy shared by repositories, the reconciler and the API layer."""

from __future__ import annotations


class StorageError(Exception):
    """A record store operation failed."""


class StoreUnavailableError(StorageError):
    """The record store could not be reached before any work started."""
