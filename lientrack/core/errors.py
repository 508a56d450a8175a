from __future__ import annotations

from typing import Any


class DeadlineError(Exception):
    """Base class for deadline computation and tracking failures."""


class MissingFactError(DeadlineError):
    """Raised when a date required by a deadline rule is absent."""

    def __init__(self, category: str, fact: str) -> None:
        super().__init__(f"{category} requires {fact}")
        self.category = category
        self.fact = fact


class UnsupportedRuleError(DeadlineError):
    """Raised for a category/jurisdiction combination the rule table does not cover."""

    def __init__(self, message: str, *, category: str | None = None, jurisdiction: str | None = None) -> None:
        super().__init__(message)
        self.category = category
        self.jurisdiction = jurisdiction


class InvalidTransitionError(DeadlineError):
    """Raised when a status change is not allowed."""

    def __init__(self, deadline_id: str, current: str, requested: str) -> None:
        super().__init__(f"cannot move deadline {deadline_id} from {current} to {requested}")
        self.deadline_id = deadline_id
        self.current = current
        self.requested = requested


class StorageError(DeadlineError):
    """Wraps any persistence failure with the attempted operation and record identity."""

    def __init__(self, operation: str, record_id: str | None = None, message: str | None = None) -> None:
        detail = message or "storage operation failed"
        target = f" ({record_id})" if record_id else ""
        super().__init__(f"{operation}{target}: {detail}")
        self.operation = operation
        self.record_id = record_id


class PartialSyncError(StorageError):
    """Raised when only some categories of a project sync were persisted."""

    def __init__(self, project_id: str, report: Any) -> None:
        failed = ", ".join(sorted(report.failed)) if report is not None else ""
        super().__init__("sync", project_id, f"failed categories: {failed}")
        self.report = report


class DeadlineNotFoundError(KeyError):
    """Raised when a deadline id does not exist."""

    def __init__(self, deadline_id: str) -> None:
        super().__init__(deadline_id)
        self.deadline_id = deadline_id

    def __str__(self) -> str:
        return f"deadline {self.deadline_id} not found"
