from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from threading import RLock
from typing import ContextManager, Dict, Iterator, List, Optional, Tuple

from .models import TaskEntity
from .settings import get_settings
from .utils import to_utc

# Sort key for records without a timestamp: older than anything else
_EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ListQuery:
    """
    Query parameters for listing tasks.
    """
    limit: int = 50
    offset: int = 0
    completed: Optional[bool] = None
    search: Optional[str] = None
    sort: str = "-updated_at"  # allowed: updated_at, -updated_at


# PUBLIC_INTERFACE
class Repository(ABC):
    """
    Abstract record store contract.

    Implementations hand out copies; callers never hold references to stored state.
    """

    @abstractmethod
    def get(self, task_id: str) -> Optional[TaskEntity]:
        """Return a TaskEntity by id, or None if not found."""

    @abstractmethod
    def upsert(self, task: TaskEntity) -> TaskEntity:
        """Insert the task, or replace the stored task with the same id. Return the stored copy."""

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        """Delete a TaskEntity by id. Return True if deleted, False if not found."""

    @abstractmethod
    def list(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        """
        Return a slice of TaskEntities and total count matching filters.
        - Supports limit/offset
        - Filter by completed
        - Substring search across title and description (case-insensitive)
        - Sorting by updated_at (asc/desc)
        """

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """
        Group every write made inside the block into one all-or-nothing unit.

        Raises StoreUnavailableError on entry if the store cannot be reached.
        If the block raises, writes made inside it are discarded and the
        exception propagates.
        """

    def exists(self, task_id: str) -> bool:
        return self.get(task_id) is not None

    def list_all(self) -> List[TaskEntity]:
        items, total = self.list(ListQuery(limit=0))
        if total == 0:
            return []
        items, _ = self.list(ListQuery(limit=total))
        return items


class InMemoryRepository(Repository):
    """
    Thread-safe in-memory repository suitable for testing and default runtime.

    A transaction holds the repository lock for its whole duration, so batches
    against one instance run one at a time.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._items: Dict[str, TaskEntity] = {}
        self._depth = 0

    def get(self, task_id: str) -> Optional[TaskEntity]:
        with self._lock:
            item = self._items.get(task_id)
            return None if item is None else item.copy()

    def upsert(self, task: TaskEntity) -> TaskEntity:
        stored: TaskEntity = task.copy()
        stored["updated_at"] = to_utc(stored["updated_at"])
        with self._lock:
            self._items[stored["id"]] = stored
            return stored.copy()

    def delete(self, task_id: str) -> bool:
        with self._lock:
            return self._items.pop(task_id, None) is not None

    def list(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        q = query or ListQuery()
        with self._lock:
            items: List[TaskEntity] = list(self._items.values())

            if q.completed is not None:
                items = [t for t in items if t["completed"] == q.completed]

            if q.search:
                s = q.search.lower()
                items = [
                    t for t in items
                    if s in (t["title"] or "").lower() or s in (t["description"] or "").lower()
                ]

            total = len(items)

            reverse = (q.sort or "-updated_at").strip().lower().startswith("-")
            items_sorted = sorted(
                items, key=lambda t: t["updated_at"] or _EPOCH_MIN, reverse=reverse
            )

            start = max(q.offset, 0)
            end = start + max(q.limit, 0)
            return [t.copy() for t in items_sorted[start:end]], total

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth:
                # Nested: the outermost transaction owns the snapshot
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            snapshot = {k: v.copy() for k, v in self._items.items()}
            self._depth = 1
            try:
                yield
            except BaseException:
                self._items = snapshot
                raise
            finally:
                self._depth = 0


def _build_repository() -> Repository:
    settings = get_settings()
    if settings.persistence_backend == "sqlite":
        from .db import SQLiteRepository

        return SQLiteRepository(settings.sqlite_db_path)
    return InMemoryRepository()


# PUBLIC_INTERFACE
@lru_cache(maxsize=1)
def get_repository() -> Repository:
    """
    Return the process-wide repository configured by settings.
    - memory: InMemoryRepository
    - sqlite: SQLiteRepository

    Tests swap it out through FastAPI's dependency_overrides.
    """
    return _build_repository()
