"""Application service layer for deadline lifecycle tracking."""
from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from lientrack.core.dates import utc_now
from lientrack.core.errors import (
    DeadlineNotFoundError,
    InvalidTransitionError,
    MissingFactError,
    PartialSyncError,
    StorageError,
    UnsupportedRuleError,
)
from lientrack.core.rules import DEFAULT_URGENT_WINDOW, RuleBook, classify, load_rule_book
from lientrack.core.schema import DeadlineView, ProjectFacts
from lientrack.core.settings import Settings
from lientrack.domain import DeadlineRecord
from lientrack.infrastructure import DeadlineRepository, DuckDBDeadlineRepository, InMemoryDeadlineRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPLETED = "completed"
KNOWN_STATUSES = frozenset({"upcoming", "urgent", "overdue", COMPLETED})
SEVERITIES = ("critical", "high", "medium", "low")


@dataclass
class SyncReport:
    """Outcome of one create/update pass over a project's categories."""

    project_id: str
    created: list[DeadlineView] = field(default_factory=list)
    updated: list[DeadlineView] = field(default_factory=list)
    unchanged: list[DeadlineView] = field(default_factory=list)
    preserved: list[DeadlineView] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def succeeded(self) -> list[str]:
        views = [*self.created, *self.updated, *self.unchanged, *self.preserved]
        return sorted(view.category for view in views)

    @property
    def deadlines(self) -> list[DeadlineView]:
        views = [*self.created, *self.updated, *self.unchanged, *self.preserved]
        return sorted(views, key=lambda view: (view.deadline_date, view.category))

    def to_dict(self) -> dict[str, Any]:
        def dump(views: Iterable[DeadlineView]) -> list[dict[str, Any]]:
            return [view.model_dump(mode="json") for view in views]

        return {
            "project_id": self.project_id,
            "ok": self.ok,
            "created": dump(self.created),
            "updated": dump(self.updated),
            "unchanged": dump(self.unchanged),
            "preserved": dump(self.preserved),
            "skipped": dict(self.skipped),
            "failed": dict(self.failed),
        }


@dataclass
class _Write:
    category: str
    operation: str
    record: DeadlineRecord


class DeadlineService:
    """Coordinates deadline computation, persistence and read-time status."""

    def __init__(
        self,
        repository: DeadlineRepository,
        rules: RuleBook | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        urgent_window: int = DEFAULT_URGENT_WINDOW,
        reminder_window: int = DEFAULT_URGENT_WINDOW,
    ) -> None:
        self._repository = repository
        self._rules = rules or load_rule_book()
        self._clock = clock
        self._urgent_window = urgent_window
        self._reminder_window = reminder_window
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._commit_gate = asyncio.Lock()

    @property
    def rules(self) -> RuleBook:
        return self._rules

    @property
    def urgent_window(self) -> int:
        return self._urgent_window

    @property
    def reminder_window(self) -> int:
        return self._reminder_window

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _project_guard(self, project_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        async with lock:
            yield

    async def _storage(self, operation: str, record_id: str | None, call: Awaitable[T]) -> T:
        try:
            return await call
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(operation, record_id, str(exc) or exc.__class__.__name__) from exc

    def _timezone(self, jurisdiction: str) -> str | None:
        try:
            return self._rules.jurisdiction(jurisdiction).timezone
        except UnsupportedRuleError:
            return None

    def _view(self, record: DeadlineRecord, now: date | datetime) -> DeadlineView:
        classification = classify(
            record.deadline_date,
            now,
            completed=record.is_completed,
            urgent_window=self._urgent_window,
            timezone=self._timezone(record.jurisdiction),
        )
        return DeadlineView(
            id=record.id,
            project_id=record.project_id,
            user_id=record.user_id,
            category=record.category,
            deadline_date=record.deadline_date,
            jurisdiction=record.jurisdiction,
            title=record.title,
            legal_reference=record.legal_reference,
            trigger_fact=record.trigger_fact,
            trigger_date=record.trigger_date,
            rule_version=record.rule_version,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            **classification.model_dump(),
        )

    def _views(self, records: Iterable[DeadlineRecord], now: date | datetime) -> list[DeadlineView]:
        views = [self._view(record, now) for record in records]
        views.sort(key=lambda view: (view.deadline_date, view.category, view.project_id))
        return views

    async def _require(self, deadline_id: str) -> DeadlineRecord:
        record = await self._storage("read", deadline_id, self._repository.get(deadline_id))
        if record is None:
            raise DeadlineNotFoundError(deadline_id)
        return record

    # ------------------------------------------------------------------
    # project sync
    # ------------------------------------------------------------------
    async def create_project_deadlines(
        self,
        project_id: str,
        facts: ProjectFacts,
        *,
        now: datetime | None = None,
    ) -> SyncReport:
        """Compute and persist every category the facts satisfy.

        Categories that do not apply to the role/project type, or whose
        trigger date is missing, are skipped. A category that already has a
        record is recomputed in place rather than duplicated.
        """

        return await self._sync(project_id, facts, now or self._clock())

    async def update_project_deadlines(
        self,
        project_id: str,
        facts: ProjectFacts,
        *,
        now: datetime | None = None,
    ) -> SyncReport:
        """Recompute a project's deadlines after its facts changed.

        Completed records are never touched; records whose trigger fact
        disappeared are left as they are.
        """

        return await self._sync(project_id, facts, now or self._clock())

    async def _sync(self, project_id: str, facts: ProjectFacts, now: datetime) -> SyncReport:
        categories = self._rules.categories(facts.jurisdiction)
        applicable = set(self._rules.applicable_categories(facts))
        snapshot = facts.model_dump(mode="json")
        report = SyncReport(project_id=project_id)

        async with self._project_guard(project_id):
            existing = await self._storage("read", project_id, self._repository.list_by_project(project_id))
            by_category = {record.category: record for record in existing}

            writes: list[_Write] = []
            for category in categories:
                current = by_category.get(category)
                if current is not None and current.is_completed:
                    report.preserved.append(self._view(current, now))
                    continue
                if category not in applicable:
                    report.skipped[category] = f"not applicable to {facts.role} on {facts.project_type} projects"
                    continue
                try:
                    rule, trigger, trigger_date = self._rules.resolve(category, facts)
                except MissingFactError as exc:
                    reason = f"missing {exc.fact}"
                    if current is not None:
                        reason += "; existing deadline kept"
                    report.skipped[category] = reason
                    continue
                deadline_date = trigger.offset.apply(trigger_date)

                if current is None:
                    record = DeadlineRecord(
                        id=uuid.uuid4().hex,
                        project_id=project_id,
                        user_id=facts.user_id,
                        category=category,
                        deadline_date=deadline_date,
                        jurisdiction=facts.jurisdiction,
                        title=rule.title,
                        legal_reference=rule.legal_reference,
                        trigger_fact=trigger.source,
                        trigger_date=trigger_date,
                        rule_version=self._rules.version,
                        facts_snapshot=snapshot,
                        created_at=now,
                        updated_at=now,
                    )
                    writes.append(_Write(category, "create", record))
                    continue

                application = (deadline_date, trigger.source, trigger_date, facts.jurisdiction, self._rules.version, facts.user_id)
                recorded = (
                    current.deadline_date,
                    current.trigger_fact,
                    current.trigger_date,
                    current.jurisdiction,
                    current.rule_version,
                    current.user_id,
                )
                if application == recorded:
                    report.unchanged.append(self._view(current, now))
                    continue
                record = replace(
                    current,
                    user_id=facts.user_id,
                    deadline_date=deadline_date,
                    jurisdiction=facts.jurisdiction,
                    title=rule.title,
                    legal_reference=rule.legal_reference,
                    trigger_fact=trigger.source,
                    trigger_date=trigger_date,
                    rule_version=self._rules.version,
                    facts_snapshot=snapshot,
                    updated_at=now,
                )
                writes.append(_Write(category, "update", record))

            # user-level and reminder reads wait on the same gate
            async with self._commit_gate:
                results = await asyncio.gather(
                    *(
                        self._storage(
                            write.operation,
                            write.record.id,
                            self._repository.create(write.record) if write.operation == "create" else self._repository.update(write.record),
                        )
                        for write in writes
                    ),
                    return_exceptions=True,
                )

        for write, result in zip(writes, results):
            if isinstance(result, StorageError):
                report.failed[write.category] = str(result)
                continue
            if isinstance(result, BaseException):
                raise result
            target = report.created if write.operation == "create" else report.updated
            target.append(self._view(result, now))

        if report.failed:
            logger.error(
                "deadline sync for project %s failed for %s (succeeded: %s)",
                project_id,
                ", ".join(sorted(report.failed)),
                ", ".join(report.succeeded) or "none",
            )
            raise PartialSyncError(project_id, report)

        logger.info(
            "synced deadlines for project %s: %d created, %d updated, %d unchanged, %d completed kept, %d skipped",
            project_id,
            len(report.created),
            len(report.updated),
            len(report.unchanged),
            len(report.preserved),
            len(report.skipped),
        )
        return report

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    async def fetch_deadlines_by_project(self, project_id: str, *, now: datetime | None = None) -> list[DeadlineView]:
        async with self._project_guard(project_id):
            records = await self._storage("read", project_id, self._repository.list_by_project(project_id))
        return self._views(records, now or self._clock())

    async def fetch_deadlines_by_user(self, user_id: str, *, now: datetime | None = None) -> list[DeadlineView]:
        async with self._commit_gate:
            records = await self._storage("read", user_id, self._repository.list_by_user(user_id))
        return self._views(records, now or self._clock())

    async def get_deadline(self, deadline_id: str, *, now: datetime | None = None) -> DeadlineView:
        record = await self._require(deadline_id)
        return self._view(record, now or self._clock())

    async def get_deadlines_needing_reminders(
        self,
        window: int | None = None,
        *,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> list[DeadlineView]:
        """Open deadlines due between today and ``window`` days from now, inclusive."""

        window = self._reminder_window if window is None else window
        if window < 0:
            raise ValueError("window must not be negative")
        async with self._commit_gate:
            if user_id is None:
                records = await self._storage("read", None, self._repository.list_open())
            else:
                records = await self._storage("read", user_id, self._repository.list_by_user(user_id))
        views = self._views(records, now or self._clock())
        return [view for view in views if view.status != COMPLETED and 0 <= view.days_remaining <= window]

    async def get_upcoming_deadlines(
        self,
        user_id: str,
        days_ahead: int = 30,
        *,
        now: datetime | None = None,
    ) -> list[DeadlineView]:
        views = await self.fetch_deadlines_by_user(user_id, now=now)
        return [view for view in views if view.status == "upcoming" and view.days_remaining <= days_ahead]

    async def get_overdue_deadlines(self, user_id: str, *, now: datetime | None = None) -> list[DeadlineView]:
        views = await self.fetch_deadlines_by_user(user_id, now=now)
        return [view for view in views if view.status == "overdue"]

    async def get_dashboard_stats(self, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        views = await self.fetch_deadlines_by_user(user_id, now=now)
        status_counter = Counter(view.status for view in views)
        open_views = [view for view in views if view.status != COMPLETED]
        severity_counter = Counter(view.severity for view in open_views)
        upcoming = [view for view in open_views if view.status == "upcoming"]

        return {
            "user_id": user_id,
            "total": len(views),
            "projects": len({view.project_id for view in views}),
            "by_status": {status: status_counter.get(status, 0) for status in ("upcoming", "overdue", COMPLETED)},
            "urgent": sum(1 for view in open_views if view.urgency == "urgent"),
            "by_severity": {severity: severity_counter.get(severity, 0) for severity in SEVERITIES},
            "by_category": dict(sorted(Counter(view.category for view in views).items())),
            "next_deadline": upcoming[0].model_dump(mode="json") if upcoming else None,
        }

    # ------------------------------------------------------------------
    # status & deletion
    # ------------------------------------------------------------------
    async def update_deadline_status(
        self,
        deadline_id: str,
        status: str,
        *,
        now: datetime | None = None,
    ) -> DeadlineView:
        """Apply a status change requested by the owning workflow.

        ``completed`` is terminal. Open statuses are derived from the date,
        so requesting one for an open deadline changes nothing.
        """

        now = now or self._clock()
        requested = str(status or "").strip().lower()
        record = await self._require(deadline_id)
        if requested not in KNOWN_STATUSES:
            current = COMPLETED if record.is_completed else self._view(record, now).status
            raise InvalidTransitionError(deadline_id, current, requested or "<empty>")

        async with self._project_guard(record.project_id):
            record = await self._require(deadline_id)
            if record.is_completed:
                if requested == COMPLETED:
                    return self._view(record, now)
                raise InvalidTransitionError(deadline_id, COMPLETED, requested)
            if requested != COMPLETED:
                return self._view(record, now)

            record = replace(record, completed_at=now, updated_at=now)
            record = await self._storage("update", deadline_id, self._repository.update(record))

        logger.info("deadline %s (%s, project %s) marked completed", deadline_id, record.category, record.project_id)
        return self._view(record, now)

    async def delete_deadline(self, deadline_id: str) -> None:
        record = await self._require(deadline_id)
        async with self._project_guard(record.project_id):
            deleted = await self._storage("delete", deadline_id, self._repository.delete(deadline_id))
        if not deleted:
            raise DeadlineNotFoundError(deadline_id)
        logger.info("deadline %s (%s, project %s) deleted", deadline_id, record.category, record.project_id)

    async def delete_project_deadlines(self, project_id: str) -> int:
        async with self._project_guard(project_id):
            return await self._storage("delete", project_id, self._repository.delete_by_project(project_id))

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._repository.reset()
        self._locks.clear()


def build_deadline_service(settings: Settings | None = None) -> DeadlineService:
    """Wire a service from settings (repository, rule table, windows)."""

    settings = settings or Settings.from_env()
    if settings.store == "duckdb":
        repository: DeadlineRepository = DuckDBDeadlineRepository(settings.duckdb_path, timeout=settings.storage_timeout)
    elif settings.store == "memory":
        repository = InMemoryDeadlineRepository()
    else:
        raise ValueError(f"unknown deadline store {settings.store!r}")
    logger.info("deadline store: %s, rules: %s", settings.store, settings.rules_path)
    return DeadlineService(
        repository,
        load_rule_book(str(settings.rules_path)),
        urgent_window=settings.urgent_window_days,
        reminder_window=settings.reminder_window_days,
    )


_service: DeadlineService | None = None


def configure_deadline_service(service: DeadlineService) -> None:
    """Install the service used by the HTTP layer."""

    global _service
    _service = service


def get_deadline_service() -> DeadlineService:
    """Return the singleton deadline service for the process."""

    global _service
    if _service is None:
        _service = build_deadline_service()
    return _service


def reset_deadline_state() -> None:
    """Reset the configured store (used in tests)."""

    if _service is not None:
        _service.reset()
