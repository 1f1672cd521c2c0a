from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import TaskEntity
from .utils import to_utc

# Incoming timestamps may be datetimes, ISO8601 strings or epoch seconds
TimestampInput = Union[datetime, date, str, int, float]


def _parse_timestamp(value: Optional[TimestampInput]) -> Optional[datetime]:
    """
    Normalise an incoming updatedAt value into an aware UTC datetime.
    - None (or a blank string) means "no timestamp".
    - Strings are parsed as ISO8601; a trailing 'Z' is accepted, dates become midnight UTC.
    - Numbers are seconds since the Unix epoch.
    - Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None

    if isinstance(value, bool):
        raise ValueError("Invalid type for updatedAt; expected ISO8601 string or epoch seconds.")

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError("updatedAt epoch seconds out of range.") from e

    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(s))
        except ValueError as e:
            raise ValueError(
                "Invalid updatedAt format. Use an ISO8601 datetime (e.g., '2025-01-31T13:45:00Z')."
            ) from e

    raise ValueError("Invalid type for updatedAt; expected ISO8601 string or epoch seconds.")


def _validate_title(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    s = v.strip()
    if not (1 <= len(s) <= 200):
        raise ValueError("title length must be between 1 and 200 characters")
    return s


# PUBLIC_INTERFACE
class TaskIn(BaseModel):
    """
    A task record as submitted by a client in a sync batch.

    Every field is optional. A missing or blank id marks a record the server has
    never seen; a missing updatedAt is older than any real timestamp.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": "4f0c1a52-8d0e-4a4b-9a59-2b6f3f1d7c11",
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "completed": False,
                "updatedAt": "2025-01-26T09:00:00Z",
            }
        },
    )

    id: Optional[str] = Field(default=None, description="Task identifier; omit for new tasks")
    title: Optional[str] = Field(default=None, description="Short title")
    description: Optional[str] = Field(default=None, description="Detailed description")
    completed: Optional[bool] = Field(default=False, description="Completion status flag")
    updated_at: Optional[datetime] = Field(
        default=None,
        alias="updatedAt",
        description="Client-side last modification time (ISO8601 or epoch seconds)",
    )

    @field_validator("updated_at", mode="before")
    @classmethod
    def parse_updated_at(cls, v: Optional[TimestampInput]) -> Optional[datetime]:
        return _parse_timestamp(v)

    def to_entity(self) -> TaskEntity:
        """Convert to the domain record, keeping the id exactly as submitted."""
        return {
            "id": self.id or "",
            "title": self.title,
            "description": self.description,
            "completed": bool(self.completed),
            "updated_at": self.updated_at,
        }


# PUBLIC_INTERFACE
class TaskOut(BaseModel):
    """
    Schema returned by the API for a task record.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "id": "4f0c1a52-8d0e-4a4b-9a59-2b6f3f1d7c11",
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "completed": False,
                "updatedAt": "2025-01-26T09:00:00Z",
            }
        },
    )

    id: str = Field(..., description="Unique identifier of the task")
    title: Optional[str] = Field(default=None, description="Short title")
    description: Optional[str] = Field(default=None, description="Detailed description")
    completed: bool = Field(..., description="Completion status flag")
    updated_at: Optional[datetime] = Field(
        default=None, alias="updatedAt", description="Last modification time (UTC)"
    )

    @classmethod
    def from_entity(cls, entity: TaskEntity) -> "TaskOut":
        return cls(**entity)


# PUBLIC_INTERFACE
class ConflictOut(BaseModel):
    """A record the server holds a strictly newer version of; both versions verbatim."""

    id: str = Field(..., description="Identifier of the conflicting task")
    server: TaskOut = Field(..., description="Current server version (left untouched)")
    client: TaskOut = Field(..., description="Version submitted by the client")


# PUBLIC_INTERFACE
class SyncResponse(BaseModel):
    """
    Outcome of reconciling one batch.

    synced, conflicts and errors each preserve the order of the submitted batch.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "synced": [
                    {
                        "id": "A",
                        "title": "Buy groceries",
                        "description": None,
                        "completed": True,
                        "updatedAt": "2025-01-26T09:00:10Z",
                    }
                ],
                "conflicts": [],
                "errors": [],
            }
        }
    )

    synced: List[TaskOut] = Field(default_factory=list)
    conflicts: List[ConflictOut] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


# PUBLIC_INTERFACE
class TaskCreate(BaseModel):
    """
    Schema for creating a task through the CRUD endpoints.
    An id may be supplied (client-generated ids); otherwise one is generated.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "title": "Buy groceries",
                "description": "Milk, eggs, bread",
                "completed": False,
            }
        },
    )

    id: Optional[str] = Field(default=None, description="Optional client-generated identifier")
    title: Optional[str] = Field(default=None, description="Short title", max_length=200)
    description: Optional[str] = Field(default=None, description="Detailed description")
    completed: bool = Field(default=False, description="Completion status flag")
    updated_at: Optional[datetime] = Field(
        default=None, alias="updatedAt", description="Optional modification time; defaults to now"
    )

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        """
        If title is provided, strip whitespace and enforce 1..200 length.
        """
        return _validate_title(v)

    @field_validator("updated_at", mode="before")
    @classmethod
    def parse_updated_at(cls, v: Optional[TimestampInput]) -> Optional[datetime]:
        return _parse_timestamp(v)


# PUBLIC_INTERFACE
class TaskUpdate(BaseModel):
    """
    Schema for partially updating a task.
    Only fields present in the request body are written; an explicit null clears
    title or description.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "title": "Buy groceries and supplies",
                "completed": True,
            }
        }
    )

    title: Optional[str] = Field(default=None, description="Short title", max_length=200)
    description: Optional[str] = Field(default=None, description="Detailed description")
    completed: Optional[bool] = Field(default=None, description="Completion status flag")

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        return _validate_title(v)
