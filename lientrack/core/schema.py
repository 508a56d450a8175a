from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DeadlineStatus = Literal["upcoming", "overdue", "completed"]
Urgency = Literal["urgent", "normal"]
Severity = Literal["critical", "high", "medium", "low"]

DATE_FACTS = ("project_start_date", "labor_start_date", "last_work_date", "completion_date")


class ProjectFacts(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str
    project_type: str
    jurisdiction: str = "TX"
    project_start_date: date | None = None
    labor_start_date: date | None = None
    last_work_date: date | None = None
    completion_date: date | None = None

    @field_validator("role", "project_type")
    @classmethod
    def _normalise_token(cls, value: str) -> str:
        token = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if not token:
            raise ValueError("must not be empty")
        return token

    @field_validator("jurisdiction")
    @classmethod
    def _normalise_jurisdiction(cls, value: str) -> str:
        code = str(value).strip().upper()
        if not code:
            raise ValueError("jurisdiction must not be empty")
        return code

    def fact(self, name: str) -> date | None:
        if name not in DATE_FACTS:
            raise AttributeError(f"unknown project fact {name!r}")
        return getattr(self, name)


class Classification(BaseModel):
    status: DeadlineStatus
    urgency: Urgency
    days_remaining: int
    severity: Severity | None = None
    label: str


class DeadlineResult(BaseModel):
    """Output of a single rule application."""

    deadline_type: str
    deadline_date: date
    status: DeadlineStatus
    urgency: Urgency
    days_remaining: int
    severity: Severity | None = None
    label: str
    jurisdiction: str
    trigger_fact: str
    trigger_date: date
    rule_version: str
    title: str
    description: str = ""
    legal_reference: str = ""
    action_items: list[str] = Field(default_factory=list)


class DeadlineView(BaseModel):
    """A persisted deadline plus the status derived at read time."""

    id: str
    project_id: str
    user_id: str
    category: str
    deadline_date: date
    jurisdiction: str
    title: str
    legal_reference: str = ""
    trigger_fact: str
    trigger_date: date
    rule_version: str
    status: DeadlineStatus
    urgency: Urgency
    days_remaining: int
    severity: Severity | None = None
    label: str
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CalculateRequest(BaseModel):
    category: str
    facts: ProjectFacts
    as_of: datetime | date | None = None


class StatusUpdate(BaseModel):
    status: str
