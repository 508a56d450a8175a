"""Domain entities for deadline tracking."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


@dataclass(slots=True)
class DeadlineRecord:
    """A computed deadline persisted for one project and category.

    ``(project_id, category)`` is the natural key. Status is not stored; it
    is derived from ``deadline_date`` and ``completed_at`` whenever the
    record is read.
    """

    id: str
    project_id: str
    user_id: str
    category: str
    deadline_date: date
    jurisdiction: str
    title: str
    trigger_fact: str
    trigger_date: date
    rule_version: str
    created_at: datetime
    updated_at: datetime
    legal_reference: str = ""
    facts_snapshot: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def natural_key(self) -> tuple[str, str]:
        return (self.project_id, self.category)
