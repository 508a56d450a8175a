"""DuckDB-backed deadline repository.

A single-file store for deployments that need deadlines to survive a
restart. DuckDB calls block, so each one runs in a worker thread and is
bounded by ``timeout`` seconds; a timeout surfaces as ``StorageError``.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

import duckdb

from lientrack.core.errors import StorageError
from lientrack.domain import DeadlineRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLUMNS = (
    "id",
    "project_id",
    "user_id",
    "category",
    "deadline_date",
    "jurisdiction",
    "title",
    "legal_reference",
    "trigger_fact",
    "trigger_date",
    "rule_version",
    "facts_snapshot",
    "completed_at",
    "created_at",
    "updated_at",
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS deadlines (
    id VARCHAR PRIMARY KEY,
    project_id VARCHAR NOT NULL,
    user_id VARCHAR NOT NULL,
    category VARCHAR NOT NULL,
    deadline_date DATE NOT NULL,
    jurisdiction VARCHAR NOT NULL,
    title VARCHAR NOT NULL,
    legal_reference VARCHAR,
    trigger_fact VARCHAR NOT NULL,
    trigger_date DATE NOT NULL,
    rule_version VARCHAR NOT NULL,
    facts_snapshot VARCHAR,
    completed_at VARCHAR,
    created_at VARCHAR NOT NULL,
    updated_at VARCHAR NOT NULL,
    UNIQUE (project_id, category)
)
"""

_SELECT = f"SELECT {', '.join(COLUMNS)} FROM deadlines"


def _to_row(record: DeadlineRecord) -> list[Any]:
    return [
        record.id,
        record.project_id,
        record.user_id,
        record.category,
        record.deadline_date,
        record.jurisdiction,
        record.title,
        record.legal_reference,
        record.trigger_fact,
        record.trigger_date,
        record.rule_version,
        json.dumps(record.facts_snapshot, default=str),
        record.completed_at.isoformat() if record.completed_at else None,
        record.created_at.isoformat(),
        record.updated_at.isoformat(),
    ]


def _from_row(row: tuple[Any, ...]) -> DeadlineRecord:
    data = dict(zip(COLUMNS, row))
    completed_at = data.pop("completed_at")
    return DeadlineRecord(
        **{key: value for key, value in data.items() if key not in {"facts_snapshot", "created_at", "updated_at", "legal_reference"}},
        legal_reference=data["legal_reference"] or "",
        facts_snapshot=json.loads(data["facts_snapshot"] or "{}"),
        completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


class _Attempt:
    """Commit-or-abandon handshake between a worker thread and its caller.

    Whichever of :meth:`commit` and :meth:`abandon` runs first wins, so a
    caller that gave up never sees its write land afterwards.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._committed = False

    def commit(self, cursor: duckdb.DuckDBPyConnection) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            cursor.commit()
            self._committed = True
            return True

    def abandon(self) -> bool:
        with self._lock:
            if self._committed:
                return False
            self._abandoned = True
            return True


def _consume(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class DuckDBDeadlineRepository:
    def __init__(self, path: Path | str = ":memory:", *, timeout: float = 5.0) -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._path = str(path)
        self._timeout = timeout
        self._guard = threading.Lock()
        self._connection = duckdb.connect(self._path)
        self._connection.execute(SCHEMA)

    def close(self) -> None:
        with self._guard:
            self._connection.close()

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _execute(
        self,
        operation: str,
        record_id: str | None,
        work: Callable[[duckdb.DuckDBPyConnection], T],
        attempt: _Attempt,
    ) -> T:
        with self._guard:
            cursor = self._connection.cursor()
            try:
                cursor.begin()
                try:
                    result = work(cursor)
                except BaseException:
                    cursor.rollback()
                    raise
                if not attempt.commit(cursor):
                    cursor.rollback()
                    raise StorageError(operation, record_id, "abandoned after timeout, rolled back")
                return result
            except duckdb.Error as exc:
                raise StorageError(operation, record_id, str(exc)) from exc
            finally:
                cursor.close()

    async def _run(self, operation: str, record_id: str | None, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        attempt = _Attempt()
        task = asyncio.ensure_future(asyncio.to_thread(self._execute, operation, record_id, work, attempt))
        done, _ = await asyncio.wait({task}, timeout=self._timeout)
        if task in done:
            return task.result()
        if not attempt.abandon():
            # committed just as the timeout fired
            return await task
        task.add_done_callback(_consume)
        logger.warning("duckdb %s timed out after %.1fs", operation, self._timeout)
        raise StorageError(operation, record_id, f"timed out after {self._timeout}s")

    def _select(self, where: str, params: list[Any]) -> Callable[[duckdb.DuckDBPyConnection], list[DeadlineRecord]]:
        def work(cursor: duckdb.DuckDBPyConnection) -> list[DeadlineRecord]:
            rows = cursor.execute(f"{_SELECT} WHERE {where} ORDER BY deadline_date, category", params).fetchall()
            return [_from_row(row) for row in rows]

        return work

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    async def create(self, record: DeadlineRecord) -> DeadlineRecord:
        placeholders = ", ".join("?" for _ in COLUMNS)

        def work(cursor: duckdb.DuckDBPyConnection) -> DeadlineRecord:
            cursor.execute(
                f"INSERT INTO deadlines ({', '.join(COLUMNS)}) VALUES ({placeholders})",
                _to_row(record),
            )
            return record

        return await self._run("create", record.id, work)

    async def update(self, record: DeadlineRecord) -> DeadlineRecord:
        mutable = [column for column in COLUMNS if column not in {"id", "project_id", "category"}]
        assignments = ", ".join(f"{column} = ?" for column in mutable)
        values = dict(zip(COLUMNS, _to_row(record)))

        def work(cursor: duckdb.DuckDBPyConnection) -> DeadlineRecord:
            found = cursor.execute(
                "SELECT project_id, category FROM deadlines WHERE id = ?",
                [record.id],
            ).fetchone()
            if found is None:
                raise StorageError("update", record.id, "deadline does not exist")
            if tuple(found) != record.natural_key:
                raise StorageError("update", record.id, "project and category cannot change")
            cursor.execute(
                f"UPDATE deadlines SET {assignments} WHERE id = ?",
                [values[column] for column in mutable] + [record.id],
            )
            return record

        return await self._run("update", record.id, work)

    async def get(self, deadline_id: str) -> DeadlineRecord | None:
        records = await self._run("read", deadline_id, self._select("id = ?", [deadline_id]))
        return records[0] if records else None

    async def list_by_project(self, project_id: str) -> list[DeadlineRecord]:
        return await self._run("read", project_id, self._select("project_id = ?", [project_id]))

    async def list_by_user(self, user_id: str) -> list[DeadlineRecord]:
        return await self._run("read", user_id, self._select("user_id = ?", [user_id]))

    async def list_open(self) -> list[DeadlineRecord]:
        return await self._run("read", None, self._select("completed_at IS NULL", []))

    async def delete(self, deadline_id: str) -> bool:
        def work(cursor: duckdb.DuckDBPyConnection) -> bool:
            found = cursor.execute("SELECT 1 FROM deadlines WHERE id = ?", [deadline_id]).fetchone()
            if found is None:
                return False
            cursor.execute("DELETE FROM deadlines WHERE id = ?", [deadline_id])
            return True

        return await self._run("delete", deadline_id, work)

    async def delete_by_project(self, project_id: str) -> int:
        def work(cursor: duckdb.DuckDBPyConnection) -> int:
            (count,) = cursor.execute("SELECT COUNT(*) FROM deadlines WHERE project_id = ?", [project_id]).fetchone()
            cursor.execute("DELETE FROM deadlines WHERE project_id = ?", [project_id])
            return int(count)

        count = await self._run("delete", project_id, work)
        if count:
            logger.info("deleted %d deadline(s) for project %s", count, project_id)
        return count

    def reset(self) -> None:
        self._execute("delete", None, lambda cursor: cursor.execute("DELETE FROM deadlines"), _Attempt())
