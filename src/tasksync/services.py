from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .models import TaskEntity
from .reconciler import Clock, IdFactory, is_blank_id, new_task_id
from .repositories import ListQuery, Repository
from .schemas import TaskCreate, TaskUpdate
from .utils import utc_now

logger = logging.getLogger(__name__)


# PUBLIC_INTERFACE
class TaskService:
    """
    Single-record CRUD on top of a Repository.

    Owns id generation and timestamp refresh for direct edits; every write
    stamps ``updated_at`` so later sync batches compare against it.
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

    def list(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        return self._repository.list(query)

    def get(self, task_id: str) -> Optional[TaskEntity]:
        return self._repository.get(task_id)

    def create(self, data: TaskCreate) -> TaskEntity:
        """Store a new task; generates the id and timestamp when the payload omits them."""
        task: TaskEntity = {
            "id": self._id_factory() if is_blank_id(data.id) else data.id,  # type: ignore[typeddict-item]
            "title": data.title,
            "description": data.description,
            "completed": data.completed,
            "updated_at": data.updated_at or self._clock(),
        }
        created = self._repository.upsert(task)
        logger.debug("Created task %s", created["id"])
        return created

    def replace(self, task_id: str, data: TaskCreate) -> Optional[TaskEntity]:
        """Overwrite title, description and completed together. None if the task does not exist."""
        with self._repository.transaction():
            existing = self._repository.get(task_id)
            if existing is None:
                return None
            existing["title"] = data.title
            existing["description"] = data.description
            existing["completed"] = data.completed
            existing["updated_at"] = self._clock()
            return self._repository.upsert(existing)

    def update(self, task_id: str, data: TaskUpdate) -> Optional[TaskEntity]:
        """Write only the fields present in the payload. None if the task does not exist."""
        with self._repository.transaction():
            existing = self._repository.get(task_id)
            if existing is None:
                return None
            if "title" in data.model_fields_set:
                existing["title"] = data.title
            if "description" in data.model_fields_set:
                existing["description"] = data.description
            if data.completed is not None:
                existing["completed"] = data.completed
            existing["updated_at"] = self._clock()
            return self._repository.upsert(existing)

    def delete(self, task_id: str) -> bool:
        deleted = self._repository.delete(task_id)
        if deleted:
            logger.debug("Deleted task %s", task_id)
        return deleted
