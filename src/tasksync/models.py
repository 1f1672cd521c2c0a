from __future__ import annotations

from datetime import datetime
from typing import Optional, TypedDict


# PUBLIC_INTERFACE
class TaskEntity(TypedDict):
    """
    A lightweight domain model representing a synchronised task record.

    Fields:
    - id: Opaque unique string identifier; empty/blank on client input means
      the server has not seen the record yet
    - title: Optional short title
    - description: Optional detailed description
    - completed: Boolean completion flag
    - updated_at: Last modification timestamp (aware UTC datetime), or None
      when unknown; None sorts before every real timestamp
    """

    id: str
    title: Optional[str]
    description: Optional[str]
    completed: bool
    updated_at: Optional[datetime]


# PUBLIC_INTERFACE
def make_task(
    id: str = "",
    title: Optional[str] = None,
    description: Optional[str] = None,
    completed: bool = False,
    updated_at: Optional[datetime] = None,
) -> TaskEntity:
    """Build a TaskEntity with defaults for omitted fields."""
    return {
        "id": id,
        "title": title,
        "description": description,
        "completed": completed,
        "updated_at": updated_at,
    }
