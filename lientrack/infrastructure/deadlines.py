"""Infrastructure layer for deadline persistence."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Protocol

from lientrack.core.errors import StorageError
from lientrack.domain import DeadlineRecord

logger = logging.getLogger(__name__)


class DeadlineRepository(Protocol):
    """Persistence contract for deadline records.

    Implementations enforce ``(project_id, category)`` uniqueness and raise
    :class:`~lientrack.core.errors.StorageError` for any failure, including
    their own timeouts.
    """

    async def create(self, record: DeadlineRecord) -> DeadlineRecord: ...

    async def update(self, record: DeadlineRecord) -> DeadlineRecord: ...

    async def get(self, deadline_id: str) -> DeadlineRecord | None: ...

    async def list_by_project(self, project_id: str) -> list[DeadlineRecord]: ...

    async def list_by_user(self, user_id: str) -> list[DeadlineRecord]: ...

    async def list_open(self) -> list[DeadlineRecord]: ...

    async def delete(self, deadline_id: str) -> bool: ...

    async def delete_by_project(self, project_id: str) -> int: ...

    def reset(self) -> None: ...


class InMemoryDeadlineRepository:
    """Simple in-memory repository for fast iteration and tests.

    Methods never await, so each call is atomic on the event loop.
    """

    def __init__(self) -> None:
        self._records: dict[str, DeadlineRecord] = {}
        self._keys: dict[tuple[str, str], str] = {}

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    async def create(self, record: DeadlineRecord) -> DeadlineRecord:
        if record.id in self._records:
            raise StorageError("create", record.id, "duplicate deadline id")
        existing = self._keys.get(record.natural_key)
        if existing is not None:
            raise StorageError(
                "create",
                record.id,
                f"project {record.project_id} already has a {record.category} deadline ({existing})",
            )
        stored = replace(record, facts_snapshot=dict(record.facts_snapshot))
        self._records[record.id] = stored
        self._keys[record.natural_key] = record.id
        return replace(stored)

    async def update(self, record: DeadlineRecord) -> DeadlineRecord:
        current = self._records.get(record.id)
        if current is None:
            raise StorageError("update", record.id, "deadline does not exist")
        if current.natural_key != record.natural_key:
            raise StorageError("update", record.id, "project and category cannot change")
        stored = replace(record, facts_snapshot=dict(record.facts_snapshot))
        self._records[record.id] = stored
        return replace(stored)

    async def get(self, deadline_id: str) -> DeadlineRecord | None:
        record = self._records.get(deadline_id)
        return replace(record) if record is not None else None

    async def list_by_project(self, project_id: str) -> list[DeadlineRecord]:
        return [replace(record) for record in self._records.values() if record.project_id == project_id]

    async def list_by_user(self, user_id: str) -> list[DeadlineRecord]:
        return [replace(record) for record in self._records.values() if record.user_id == user_id]

    async def list_open(self) -> list[DeadlineRecord]:
        return [replace(record) for record in self._records.values() if not record.is_completed]

    async def delete(self, deadline_id: str) -> bool:
        record = self._records.pop(deadline_id, None)
        if record is None:
            return False
        self._keys.pop(record.natural_key, None)
        return True

    async def delete_by_project(self, project_id: str) -> int:
        doomed = [record for record in self._records.values() if record.project_id == project_id]
        for record in doomed:
            del self._records[record.id]
            self._keys.pop(record.natural_key, None)
        if doomed:
            logger.info("deleted %d deadline(s) for project %s", len(doomed), project_id)
        return len(doomed)

    def reset(self) -> None:
        self._records.clear()
        self._keys.clear()
