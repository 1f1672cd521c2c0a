"""
Task Sync Backend package.

FastAPI service that reconciles batches of offline client task records with
server-side storage. The reconciliation core lives in ``tasksync.reconciler``
and has no web dependencies; the HTTP app is ``tasksync.main.app``.
"""

from .reconciler import Reconciler, ReconcileResult  # noqa: F401
