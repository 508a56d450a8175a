import asyncio
import gc
import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from lientrack.application import DeadlineService
from lientrack.core.errors import (
    DeadlineNotFoundError,
    InvalidTransitionError,
    PartialSyncError,
    StorageError,
    UnsupportedRuleError,
)
from lientrack.core.schema import ProjectFacts
from lientrack.exporters.reminder_queue_csv import REMINDER_COLUMNS, export_reminder_queue
from lientrack.infrastructure import InMemoryDeadlineRepository

# noon in Texas on 2024-02-10
NOW = datetime(2024, 2, 10, 18, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class CountingRepository(InMemoryDeadlineRepository):
    def __init__(self) -> None:
        super().__init__()
        self.writes = 0

    async def create(self, record):
        self.writes += 1
        return await super().create(record)

    async def update(self, record):
        self.writes += 1
        return await super().update(record)


class SlowRepository(InMemoryDeadlineRepository):
    async def create(self, record):
        await asyncio.sleep(0.01)
        return await super().create(record)


class FailingRepository(InMemoryDeadlineRepository):
    def __init__(self, category: str, error: Exception) -> None:
        super().__init__()
        self.category = category
        self.error = error

    async def create(self, record):
        if record.category == self.category:
            raise self.error
        return await super().create(record)


def _facts(**overrides) -> ProjectFacts:
    data = {
        "user_id": "user-1",
        "role": "subcontractor",
        "project_type": "commercial",
        "jurisdiction": "TX",
        "project_start_date": date(2024, 1, 2),
        "labor_start_date": date(2024, 1, 5),
        "last_work_date": date(2024, 3, 20),
        "completion_date": date(2024, 4, 1),
    }
    data.update(overrides)
    return ProjectFacts(**data)


@pytest.fixture()
def clock():
    return Clock(NOW)


@pytest.fixture()
def repository():
    return CountingRepository()


@pytest.fixture()
def service(repository, clock):
    return DeadlineService(repository, clock=clock)


def _by_category(views):
    return {view.category: view for view in views}


def test_create_project_deadlines(service):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts()))

    assert report.ok
    created = _by_category(report.created)
    assert set(created) == {
        "preliminary_notice",
        "mechanics_lien",
        "funds_trapping",
        "retention_release",
        "lawsuit_filing",
        "payment_demand",
    }
    assert created["preliminary_notice"].deadline_date == date(2024, 2, 15)
    assert created["mechanics_lien"].deadline_date == date(2024, 7, 1)
    assert created["funds_trapping"].deadline_date == date(2024, 2, 15)
    assert created["retention_release"].deadline_date == date(2024, 5, 1)
    assert created["lawsuit_filing"].deadline_date == date(2026, 7, 1)
    assert created["lawsuit_filing"].trigger_fact == "mechanics_lien"
    assert created["payment_demand"].deadline_date == date(2024, 3, 30)
    assert "bond_claim" in report.skipped
    assert "retainage_notice" in report.skipped

    notice = created["preliminary_notice"]
    assert notice.status == "upcoming"
    assert notice.urgency == "urgent"
    assert notice.days_remaining == 5
    assert notice.rule_version == "tx-2024.2"


def test_sync_is_idempotent(service, repository):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    writes = repository.writes

    report = asyncio.run(service.update_project_deadlines("P-1", _facts()))

    assert repository.writes == writes
    assert len(report.unchanged) == 6
    assert not report.created and not report.updated
    views = asyncio.run(service.fetch_deadlines_by_project("P-1"))
    assert len(views) == 6


def test_update_recomputes_changed_categories(service, clock):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    clock.now = datetime(2024, 2, 11, 18, 0, tzinfo=timezone.utc)

    report = asyncio.run(service.update_project_deadlines("P-1", _facts(completion_date=date(2024, 5, 15))))

    updated = _by_category(report.updated)
    assert set(updated) == {"mechanics_lien", "retention_release", "lawsuit_filing"}
    assert updated["mechanics_lien"].deadline_date == date(2024, 8, 15)
    assert updated["retention_release"].deadline_date == date(2024, 6, 14)
    assert updated["lawsuit_filing"].deadline_date == date(2026, 8, 15)
    assert updated["mechanics_lien"].updated_at == clock.now
    assert updated["mechanics_lien"].created_at == NOW
    assert {view.category for view in report.unchanged} == {"preliminary_notice", "funds_trapping", "payment_demand"}


def test_completed_deadline_survives_recompute(service):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts()))
    notice = _by_category(report.created)["preliminary_notice"]
    asyncio.run(service.update_deadline_status(notice.id, "completed"))

    report = asyncio.run(service.update_project_deadlines("P-1", _facts(labor_start_date=date(2024, 3, 3))))

    preserved = _by_category(report.preserved)
    assert preserved["preliminary_notice"].deadline_date == date(2024, 2, 15)
    assert preserved["preliminary_notice"].status == "completed"
    assert "preliminary_notice" not in _by_category(report.updated)


def test_removed_trigger_fact_keeps_existing_record(service):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))

    report = asyncio.run(service.update_project_deadlines("P-1", _facts(completion_date=None)))

    assert "existing deadline kept" in report.skipped["retention_release"]
    views = _by_category(asyncio.run(service.fetch_deadlines_by_project("P-1")))
    assert views["retention_release"].deadline_date == date(2024, 5, 1)


def test_missing_facts_are_skipped_not_defaulted(service):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts(completion_date=None, last_work_date=None)))

    assert set(_by_category(report.created)) == {"preliminary_notice", "funds_trapping"}
    assert report.skipped["mechanics_lien"] == "missing completion_date"
    assert report.skipped["retention_release"] == "missing completion_date"
    assert report.skipped["lawsuit_filing"] == "missing completion_date"
    assert report.skipped["payment_demand"] == "missing last_work_date"


def test_unknown_jurisdiction_is_rejected(service):
    with pytest.raises(UnsupportedRuleError):
        asyncio.run(service.create_project_deadlines("P-1", _facts(jurisdiction="ZZ")))


def test_partial_failure_reports_each_category(clock):
    repository = FailingRepository("mechanics_lien", StorageError("create", None, "disk full"))
    service = DeadlineService(repository, clock=clock)

    with pytest.raises(PartialSyncError) as excinfo:
        asyncio.run(service.create_project_deadlines("P-1", _facts()))

    report = excinfo.value.report
    assert set(report.failed) == {"mechanics_lien"}
    assert "disk full" in report.failed["mechanics_lien"]
    assert report.succeeded == [
        "funds_trapping",
        "lawsuit_filing",
        "payment_demand",
        "preliminary_notice",
        "retention_release",
    ]
    stored = asyncio.run(repository.list_by_project("P-1"))
    assert len(stored) == 5


def test_unexpected_repository_errors_become_storage_errors(clock):
    repository = FailingRepository("retention_release", RuntimeError("connection reset"))
    service = DeadlineService(repository, clock=clock)

    with pytest.raises(PartialSyncError) as excinfo:
        asyncio.run(service.create_project_deadlines("P-1", _facts()))

    assert isinstance(excinfo.value, StorageError)
    assert "connection reset" in excinfo.value.report.failed["retention_release"]


def test_concurrent_syncs_for_one_project_do_not_duplicate(service):
    async def run():
        return await asyncio.gather(
            service.create_project_deadlines("P-1", _facts()),
            service.create_project_deadlines("P-1", _facts()),
        )

    first, second = asyncio.run(run())
    assert len(first.created) + len(second.created) == 6
    assert len(asyncio.run(service.fetch_deadlines_by_project("P-1"))) == 6


def test_status_transitions(service):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts()))
    notice = _by_category(report.created)["preliminary_notice"]

    unchanged = asyncio.run(service.update_deadline_status(notice.id, "urgent"))
    assert unchanged.status == "upcoming"
    assert unchanged.completed_at is None

    completed = asyncio.run(service.update_deadline_status(notice.id, "completed"))
    assert completed.status == "completed"
    assert completed.completed_at == NOW

    again = asyncio.run(service.update_deadline_status(notice.id, "completed"))
    assert again.completed_at == NOW

    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.update_deadline_status(notice.id, "upcoming"))
    with pytest.raises(InvalidTransitionError):
        asyncio.run(service.update_deadline_status(notice.id, "done"))
    with pytest.raises(DeadlineNotFoundError):
        asyncio.run(service.update_deadline_status("missing", "completed"))


def test_status_is_derived_at_read_time(service, clock):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    clock.now = datetime(2024, 2, 20, 18, 0, tzinfo=timezone.utc)

    overdue = asyncio.run(service.get_overdue_deadlines("user-1"))

    assert {view.category for view in overdue} == {"preliminary_notice", "funds_trapping"}
    assert all(view.days_remaining == -5 for view in overdue)
    assert all(view.severity == "critical" for view in overdue)


def test_reminder_window_is_inclusive(service, clock):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts()))
    notice = _by_category(report.created)["preliminary_notice"]

    assert len(asyncio.run(service.get_deadlines_needing_reminders())) == 2
    assert len(asyncio.run(service.get_deadlines_needing_reminders(5))) == 2
    assert asyncio.run(service.get_deadlines_needing_reminders(4)) == []

    asyncio.run(service.update_deadline_status(notice.id, "completed"))
    reminders = asyncio.run(service.get_deadlines_needing_reminders(7))
    assert [view.category for view in reminders] == ["funds_trapping"]

    clock.now = datetime(2024, 2, 15, 18, 0, tzinfo=timezone.utc)
    assert [view.days_remaining for view in asyncio.run(service.get_deadlines_needing_reminders(0))] == [0]

    clock.now = datetime(2024, 2, 16, 18, 0, tzinfo=timezone.utc)
    assert asyncio.run(service.get_deadlines_needing_reminders(7)) == []

    with pytest.raises(ValueError):
        asyncio.run(service.get_deadlines_needing_reminders(-1))


def test_reminders_filter_by_user(service):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    asyncio.run(service.create_project_deadlines("P-2", _facts(user_id="user-2")))

    assert len(asyncio.run(service.get_deadlines_needing_reminders(7))) == 4
    mine = asyncio.run(service.get_deadlines_needing_reminders(7, user_id="user-2"))
    assert {view.project_id for view in mine} == {"P-2"}


def test_dashboard_stats(service):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    asyncio.run(service.create_project_deadlines("P-2", _facts(project_type="residential", completion_date=None)))

    stats = asyncio.run(service.get_dashboard_stats("user-1"))

    assert stats["total"] == 12
    assert stats["projects"] == 2
    assert stats["by_status"] == {"upcoming": 12, "overdue": 0, "completed": 0}
    assert stats["urgent"] == 4
    assert stats["by_severity"]["critical"] == 4
    assert stats["by_category"]["mechanics_lien"] == 2
    assert stats["by_category"]["retainage_notice"] == 1
    assert stats["next_deadline"]["category"] == "funds_trapping"


def test_upcoming_deadlines_respect_days_ahead(service):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))

    soon = asyncio.run(service.get_upcoming_deadlines("user-1", 30))
    assert {view.category for view in soon} == {"preliminary_notice", "funds_trapping"}
    assert len(asyncio.run(service.get_upcoming_deadlines("user-1", 365))) == 5


def test_delete_deadline_and_project(service):
    report = asyncio.run(service.create_project_deadlines("P-1", _facts()))
    notice = _by_category(report.created)["preliminary_notice"]

    asyncio.run(service.delete_deadline(notice.id))
    with pytest.raises(DeadlineNotFoundError):
        asyncio.run(service.get_deadline(notice.id))
    with pytest.raises(DeadlineNotFoundError):
        asyncio.run(service.delete_deadline(notice.id))

    assert asyncio.run(service.delete_project_deadlines("P-1")) == 5
    assert asyncio.run(service.fetch_deadlines_by_project("P-1")) == []
    assert asyncio.run(service.delete_project_deadlines("P-1")) == 0


def test_export_reminder_queue(service, tmp_path):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    reminders = asyncio.run(service.get_deadlines_needing_reminders(7))

    path = export_reminder_queue(tmp_path / "out" / "reminders.csv", reminders)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == ",".join(REMINDER_COLUMNS)
    assert len(lines) == 3
    assert "Due in 5 days" in lines[1]


def test_residential_projects_get_a_retainage_notice(service):
    facts = _facts(project_type="residential", completion_date=None)

    report = asyncio.run(service.create_project_deadlines("P-1", facts))

    created = _by_category(report.created)
    assert created["mechanics_lien"].deadline_date == date(2024, 7, 20)
    assert created["retainage_notice"].deadline_date == date(2024, 6, 20)
    assert created["lawsuit_filing"].deadline_date == date(2026, 7, 20)
    assert "retention_release" in report.skipped


def test_user_reads_never_see_half_a_sync(clock):
    service = DeadlineService(SlowRepository(), clock=clock)

    async def run():
        by_user: list[int] = []
        reminders: list[int] = []
        task = asyncio.create_task(service.create_project_deadlines("P-1", _facts()))
        while not task.done():
            by_user.append(len(await service.fetch_deadlines_by_user("user-1")))
            reminders.append(len(await service.get_deadlines_needing_reminders(365)))
            await asyncio.sleep(0.002)
        await task
        by_user.append(len(await service.fetch_deadlines_by_user("user-1")))
        return by_user, reminders

    by_user, reminders = asyncio.run(run())

    assert set(by_user) <= {0, 6}
    assert by_user[-1] == 6
    assert set(reminders) <= {0, 5}


def test_project_locks_are_not_retained(service):
    asyncio.run(service.create_project_deadlines("P-1", _facts()))
    asyncio.run(service.fetch_deadlines_by_project("P-unknown"))
    asyncio.run(service.delete_project_deadlines("P-1"))

    gc.collect()

    assert len(service._locks) == 0
