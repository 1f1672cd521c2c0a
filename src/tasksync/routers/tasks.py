from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..repositories import ListQuery, Repository, get_repository
from ..schemas import TaskCreate, TaskOut, TaskUpdate
from ..services import TaskService
from ..utils import pagination_envelope

router = APIRouter(
    prefix="/api/v1/tasks",
    tags=["tasks"],
)


class PaginationEnvelope(BaseModel):
    """
    Envelope for paginated list responses.
    """
    items: List[TaskOut] = Field(..., description="List of tasks")
    total: int = Field(..., description="Total number of items matching the query")
    limit: int = Field(..., description="Limit applied to the query")
    offset: int = Field(..., description="Offset applied to the query")


def get_task_service(repo: Repository = Depends(get_repository)) -> TaskService:
    """
    Dependency building a TaskService bound to the configured repository.
    """
    return TaskService(repo)


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")


# PUBLIC_INTERFACE
@router.post(
    "/",
    response_model=TaskOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create Task",
    description="Create a task. An id is generated unless the client supplies one.",
    responses={
        201: {"description": "Task created successfully"},
        422: {"description": "Validation error"},
    },
)
def create_task(payload: TaskCreate, service: TaskService = Depends(get_task_service)) -> TaskOut:
    """
    Create a new task.
    """
    return TaskOut.from_entity(service.create(payload))


# PUBLIC_INTERFACE
@router.get(
    "/",
    response_model=PaginationEnvelope,
    summary="List Tasks",
    description=(
        "List tasks with optional filters and pagination.\n\n"
        "Query parameters:\n"
        "- limit: max number of items to return (0..1000)\n"
        "- offset: number of items to skip (>=0)\n"
        "- completed: filter by completion status\n"
        "- q: search query for title/description (substring match)\n"
        "- sort: updated_at or -updated_at"
    ),
    responses={
        200: {"description": "List retrieved successfully"},
        400: {"description": "Invalid query parameters"},
    },
)
def list_tasks(
    limit: int = Query(50, ge=0, le=1000, description="Maximum number of items to return"),
    offset: int = Query(0, ge=0, description="Number of items to skip"),
    completed: Optional[bool] = Query(None, description="Filter by completion status"),
    q: Optional[str] = Query(None, description="Search text for title/description"),
    sort: str = Query("-updated_at", description="Sort by updated_at or -updated_at"),
    service: TaskService = Depends(get_task_service),
) -> PaginationEnvelope:
    """
    List tasks with pagination and filters.
    """
    normalized_sort = sort.strip().lower()
    if normalized_sort not in {"updated_at", "-updated_at"}:
        raise HTTPException(status_code=400, detail="sort must be 'updated_at' or '-updated_at'")

    query = ListQuery(
        limit=limit,
        offset=offset,
        completed=completed,
        search=q.strip() if q else None,
        sort=normalized_sort,
    )
    items, total = service.list(query)
    envelope = pagination_envelope(
        items=[TaskOut.from_entity(it) for it in items],
        total=total,
        limit=limit,
        offset=offset,
    )
    return PaginationEnvelope(**envelope)


# PUBLIC_INTERFACE
@router.get(
    "/{task_id}",
    response_model=TaskOut,
    summary="Get Task",
    description="Get a single task by ID.",
    responses={
        200: {"description": "Task found"},
        404: {"description": "Task not found"},
    },
)
def get_task(task_id: str, service: TaskService = Depends(get_task_service)) -> TaskOut:
    item = service.get(task_id)
    if not item:
        raise _not_found()
    return TaskOut.from_entity(item)


# PUBLIC_INTERFACE
@router.put(
    "/{task_id}",
    response_model=TaskOut,
    summary="Replace Task",
    description=(
        "Replace title, description and completed of an existing task. Omitted fields are "
        "reset to their defaults; updatedAt is set to the current server time."
    ),
    responses={
        200: {"description": "Task updated"},
        404: {"description": "Task not found"},
    },
)
def put_task(task_id: str, payload: TaskCreate, service: TaskService = Depends(get_task_service)) -> TaskOut:
    updated = service.replace(task_id, payload)
    if not updated:
        raise _not_found()
    return TaskOut.from_entity(updated)


# PUBLIC_INTERFACE
@router.patch(
    "/{task_id}",
    response_model=TaskOut,
    summary="Update Task",
    description="Partially update fields of a task; updatedAt is set to the current server time.",
    responses={
        200: {"description": "Task updated"},
        404: {"description": "Task not found"},
    },
)
def patch_task(task_id: str, payload: TaskUpdate, service: TaskService = Depends(get_task_service)) -> TaskOut:
    updated = service.update(task_id, payload)
    if not updated:
        raise _not_found()
    return TaskOut.from_entity(updated)


# PUBLIC_INTERFACE
@router.delete(
    "/{task_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Task",
    description="Delete a task by ID.",
    responses={
        204: {"description": "Task deleted"},
        404: {"description": "Task not found"},
    },
)
def delete_task(task_id: str, service: TaskService = Depends(get_task_service)) -> None:
    """
    Delete a task. Returns 204 on success, 404 if not found.
    """
    if not service.delete(task_id):
        raise _not_found()
    return None
