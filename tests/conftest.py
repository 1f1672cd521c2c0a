import os
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from fastapi.testclient import TestClient

# Ensure we default to memory backend for tests to avoid filesystem dependencies
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from tasksync.main import app  # noqa: E402
from tasksync.repositories import InMemoryRepository, get_repository  # noqa: E402

T1 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW = T1 + timedelta(days=30)


class FixedClock:
    """Clock returning a fixed instant, counting how often it was read."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now
        self.calls = 0

    def __call__(self) -> datetime:
        self.calls += 1
        return self.now


def sequential_ids(prefix: str = "gen"):
    counter = count(1)
    return lambda: f"{prefix}-{next(counter)}"


def parse_ts(value: str) -> datetime:
    """Parse an ISO8601 timestamp as emitted by the API ('Z' suffix allowed)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def client(repo):
    app.dependency_overrides[get_repository] = lambda: repo
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
