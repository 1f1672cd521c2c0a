from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Generator, Iterator, List, Optional, Tuple

from .errors import StorageError, StoreUnavailableError
from .models import TaskEntity
from .repositories import ListQuery, Repository
from .utils import to_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Cols:
    table: str = "tasks"
    id: str = "id"
    title: str = "title"
    description: str = "description"
    completed: str = "completed"
    updated_at: str = "updated_at"


_COLS = _Cols()


class SQLiteRepository(Repository):
    """
    Lightweight SQLite repository implementing the Repository interface.

    Outside a transaction every call opens, commits and closes its own
    connection. Inside ``transaction()`` calls from the same thread share the
    transaction's connection, which is opened with ``BEGIN IMMEDIATE`` so that
    concurrent batches take the write lock one at a time.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._local = threading.local()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self._db_path, isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open database {self._db_path!r}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        active: Optional[sqlite3.Connection] = getattr(self._local, "conn", None)
        if active is not None:
            try:
                yield active
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e
            return

        conn = self._connect()
        try:
            conn.execute("BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StorageError(str(e)) from e
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            conn.close()
            raise StoreUnavailableError(f"Cannot start transaction: {e}") from e

        self._local.conn = conn
        try:
            yield
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
                logger.warning("Rolled back transaction on %s", self._db_path)
            raise
        finally:
            self._local.conn = None
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_COLS.table} (
                    {_COLS.id} TEXT PRIMARY KEY,
                    {_COLS.title} TEXT NULL,
                    {_COLS.description} TEXT NULL,
                    {_COLS.completed} INTEGER NOT NULL DEFAULT 0,
                    {_COLS.updated_at} TEXT NULL
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_completed ON {_COLS.table}({_COLS.completed})"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_updated_at ON {_COLS.table}({_COLS.updated_at})"
            )

    def _row_to_entity(self, row: sqlite3.Row) -> TaskEntity:
        raw_ts = row[_COLS.updated_at]
        return {
            "id": str(row[_COLS.id]),
            "title": row[_COLS.title],
            "description": row[_COLS.description],
            "completed": bool(row[_COLS.completed]),
            "updated_at": to_utc(datetime.fromisoformat(raw_ts)) if raw_ts else None,
        }

    def get(self, task_id: str) -> Optional[TaskEntity]:
        with self._conn() as conn:
            row = conn.execute(f"SELECT * FROM {_COLS.table} WHERE {_COLS.id} = ?", (task_id,)).fetchone()
            return self._row_to_entity(row) if row else None

    def upsert(self, task: TaskEntity) -> TaskEntity:
        updated_at = to_utc(task["updated_at"])
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO {_COLS.table} ({_COLS.id}, {_COLS.title}, {_COLS.description},
                    {_COLS.completed}, {_COLS.updated_at})
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT({_COLS.id}) DO UPDATE SET
                    {_COLS.title} = excluded.{_COLS.title},
                    {_COLS.description} = excluded.{_COLS.description},
                    {_COLS.completed} = excluded.{_COLS.completed},
                    {_COLS.updated_at} = excluded.{_COLS.updated_at}
                """,
                (
                    task["id"],
                    task["title"],
                    task["description"],
                    1 if task["completed"] else 0,
                    # fixed width keeps lexical order equal to time order
                    updated_at.isoformat(timespec="microseconds") if updated_at else None,
                ),
            )
            row = conn.execute(
                f"SELECT * FROM {_COLS.table} WHERE {_COLS.id} = ?", (task["id"],)
            ).fetchone()
            assert row is not None
            return self._row_to_entity(row)

    def delete(self, task_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(f"DELETE FROM {_COLS.table} WHERE {_COLS.id} = ?", (task_id,))
            return cur.rowcount > 0

    def list(self, query: Optional[ListQuery] = None) -> Tuple[List[TaskEntity], int]:
        q = query or ListQuery()
        clauses = []
        params: list = []

        if q.completed is not None:
            clauses.append(f"{_COLS.completed} = ?")
            params.append(1 if q.completed else 0)

        if q.search:
            # literal substring match, same as the in-memory store
            clauses.append(
                f"({_COLS.title} LIKE ? ESCAPE '\\' OR {_COLS.description} LIKE ? ESCAPE '\\')"
            )
            escaped = q.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            like = f"%{escaped}%"
            params.extend([like, like])

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        # NULL timestamps sort first ascending, last descending
        reverse = (q.sort or "-updated_at").strip().lower().startswith("-")
        order_sql = f"ORDER BY {_COLS.updated_at} {'DESC' if reverse else 'ASC'}, {_COLS.id} ASC"

        with self._conn() as conn:
            count_row = conn.execute(
                f"SELECT COUNT(*) as cnt FROM {_COLS.table} {where_sql}", params
            ).fetchone()
            total = int(count_row["cnt"]) if count_row else 0

            rows = conn.execute(
                f"""
                SELECT * FROM {_COLS.table}
                {where_sql}
                {order_sql}
                LIMIT ? OFFSET ?
                """,
                [*params, max(q.limit, 0), max(q.offset, 0)],
            ).fetchall()
            return [self._row_to_entity(r) for r in rows], total
