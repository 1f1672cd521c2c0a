"""
Batch reconciliation of client task records against the record store.

Each submitted record ends up in exactly one of five outcomes:

- created: the server had no record with that id (or no id was given); the
  client's record is stored.
- merged: the client's timestamp is strictly newer; the client's title,
  description and completed flag replace the server's, whole-record.
- conflict: the server's timestamp is strictly newer; nothing is written and
  both versions are reported.
- unchanged: the timestamps are equal; nothing is written and the server's
  version is acknowledged.
- failed: processing raised; the error is reported and the batch continues.

A missing timestamp compares as older than any real timestamp.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .models import TaskEntity
from .repositories import Repository
from .utils import to_utc, utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
IdFactory = Callable[[], str]

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


# PUBLIC_INTERFACE
def new_task_id() -> str:
    """Return a fresh globally unique task id."""
    return str(uuid.uuid4())


class OutcomeKind(str, Enum):
    CREATED = "created"
    MERGED = "merged"
    CONFLICT = "conflict"
    UNCHANGED = "unchanged"
    FAILED = "failed"


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class Conflict:
    """The server holds a strictly newer version of ``id`` than the client sent."""

    id: str
    server: TaskEntity
    client: TaskEntity


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class RecordOutcome:
    """
    Result of reconciling a single record.

    ``record`` is set for created, merged and unchanged outcomes, ``conflict``
    for conflicts and ``error`` for failures.
    """

    kind: OutcomeKind
    record: Optional[TaskEntity] = None
    conflict: Optional[Conflict] = None
    error: Optional[str] = None

    @classmethod
    def created(cls, record: TaskEntity) -> RecordOutcome:
        return cls(OutcomeKind.CREATED, record=record)

    @classmethod
    def merged(cls, record: TaskEntity) -> RecordOutcome:
        return cls(OutcomeKind.MERGED, record=record)

    @classmethod
    def unchanged(cls, record: TaskEntity) -> RecordOutcome:
        return cls(OutcomeKind.UNCHANGED, record=record)

    @classmethod
    def conflicted(cls, server: TaskEntity, client: TaskEntity) -> RecordOutcome:
        return cls(OutcomeKind.CONFLICT, conflict=Conflict(id=server["id"], server=server, client=client))

    @classmethod
    def failed(cls, message: str) -> RecordOutcome:
        return cls(OutcomeKind.FAILED, error=message)

    @property
    def is_synced(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.MERGED, OutcomeKind.UNCHANGED)


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class ReconcileResult:
    """
    Aggregated outcome of one ``reconcile`` call.

    Each sequence keeps the order in which the batch was processed.
    """

    synced: Tuple[TaskEntity, ...] = ()
    conflicts: Tuple[Conflict, ...] = ()
    errors: Tuple[str, ...] = ()

    def add(self, outcome: RecordOutcome) -> ReconcileResult:
        """Return a new result with ``outcome`` appended to the matching sequence."""
        return ReconcileResult.fold((outcome,), start=self)

    @classmethod
    def fold(cls, outcomes: Iterable[RecordOutcome], start: Optional[ReconcileResult] = None) -> ReconcileResult:
        """Aggregate ``outcomes`` in order; sequences are frozen once at the end."""
        base = start or cls()
        synced: List[TaskEntity] = list(base.synced)
        conflicts: List[Conflict] = list(base.conflicts)
        errors: List[str] = list(base.errors)
        for outcome in outcomes:
            if outcome.is_synced:
                assert outcome.record is not None
                synced.append(outcome.record)
            elif outcome.kind is OutcomeKind.CONFLICT:
                assert outcome.conflict is not None
                conflicts.append(outcome.conflict)
            else:
                errors.append(outcome.error or "")
        return cls(synced=tuple(synced), conflicts=tuple(conflicts), errors=tuple(errors))


# PUBLIC_INTERFACE
def is_blank_id(task_id: Optional[str]) -> bool:
    """True when the id is missing, empty or whitespace only."""
    return task_id is None or not task_id.strip()


# PUBLIC_INTERFACE
def compare_timestamps(client: Optional[datetime], server: Optional[datetime]) -> int:
    """
    Three-way comparison of two modification timestamps.

    Returns 1 if the client is strictly newer, -1 if the server is strictly
    newer and 0 if they are equal. None compares as the earliest instant;
    naive values are taken to be UTC.
    """
    c = to_utc(client) or _EARLIEST
    s = to_utc(server) or _EARLIEST
    if c > s:
        return 1
    if c < s:
        return -1
    return 0


# PUBLIC_INTERFACE
def decide(client: TaskEntity, server: TaskEntity, clock: Clock = utc_now) -> RecordOutcome:
    """
    Decide what to do with a client record whose id the server already holds.

    Pure: reads both records and performs no I/O. For a merged outcome the
    returned record is what must be written back to the store.
    """
    client_ts = to_utc(client["updated_at"])
    order = compare_timestamps(client_ts, server["updated_at"])

    if order > 0:
        merged: TaskEntity = server.copy()
        merged["title"] = client["title"]
        merged["description"] = client["description"]
        merged["completed"] = client["completed"]
        merged["updated_at"] = client_ts if client_ts is not None else clock()
        return RecordOutcome.merged(merged)

    if order < 0:
        submitted: TaskEntity = client.copy()
        submitted["updated_at"] = client_ts
        return RecordOutcome.conflicted(server=server, client=submitted)

    return RecordOutcome.unchanged(server)


def _normalize(submitted: TaskEntity) -> TaskEntity:
    """Copy a submitted record, filling omitted fields and moving its timestamp to UTC."""
    return {
        "id": submitted.get("id") or "",
        "title": submitted.get("title"),
        "description": submitted.get("description"),
        "completed": bool(submitted.get("completed", False)),
        "updated_at": to_utc(submitted.get("updated_at")),
    }


# PUBLIC_INTERFACE
class Reconciler:
    """
    Reconciles batches of client records against a Repository.

    Records are processed one at a time in batch order, so later records see
    the writes of earlier ones. The whole batch runs inside one repository
    transaction. A failure while handling one record is reported in
    ``errors`` and does not stop the batch.

    ``clock`` and ``id_factory`` supply timestamps and ids for records that
    arrive without them.
    """

    def __init__(
        self,
        repository: Repository,
        clock: Clock = utc_now,
        id_factory: IdFactory = new_task_id,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._id_factory = id_factory

    def reconcile(self, batch: Sequence[TaskEntity]) -> ReconcileResult:
        """
        Reconcile ``batch`` and return the aggregated result.

        Raises StoreUnavailableError, without writing anything, when the store
        cannot be reached before the first record is processed.
        """
        if not batch:
            return ReconcileResult()

        with self._repository.transaction():
            result = ReconcileResult.fold(self._reconcile_one(task) for task in batch)

        logger.info(
            "Reconciled batch of %d: %d synced, %d conflicts, %d errors",
            len(batch),
            len(result.synced),
            len(result.conflicts),
            len(result.errors),
        )
        return result

    def _reconcile_one(self, submitted: TaskEntity) -> RecordOutcome:
        task_id = None
        try:
            task_id = submitted.get("id")
            client = _normalize(submitted)
            if is_blank_id(task_id):
                task_id = self._id_factory()
                outcome = self._create(client, task_id, self._clock())
            else:
                outcome = self._classify(client)
        except Exception as exc:
            logger.warning("Failed to sync task %s", task_id, exc_info=True)
            return RecordOutcome.failed(f"Failed to sync task {task_id}: {str(exc) or type(exc).__name__}")

        logger.debug("Task %s: %s", task_id, outcome.kind.value)
        return outcome

    def _create(self, client: TaskEntity, task_id: str, updated_at: Optional[datetime]) -> RecordOutcome:
        created: TaskEntity = client.copy()
        created["id"] = task_id
        created["updated_at"] = updated_at
        return RecordOutcome.created(self._repository.upsert(created))

    def _classify(self, client: TaskEntity) -> RecordOutcome:
        server = self._repository.get(client["id"])
        if server is None:
            return self._create(client, client["id"], client["updated_at"] or self._clock())

        outcome = decide(client, server, self._clock)
        if outcome.kind is OutcomeKind.MERGED:
            assert outcome.record is not None
            return RecordOutcome.merged(self._repository.upsert(outcome.record))
        return outcome
