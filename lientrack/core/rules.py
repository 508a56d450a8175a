"""Table-driven statutory deadline rules.

The rule table maps ``jurisdiction -> category -> triggers``. A trigger names
the project fact that starts the clock, the roles / project types it applies
to, and the offset that turns the trigger date into the deadline date. New
jurisdictions are additions to ``config/deadline_rules.yaml``; nothing here
branches on a jurisdiction code.

Everything in this module is pure: callers pass ``now`` explicitly and the
loaded :class:`RuleBook` is never mutated.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from lientrack.core.dates import add_calendar_days, add_calendar_months, day_of_month_after, days_between, local_date
from lientrack.core.errors import MissingFactError, UnsupportedRuleError
from lientrack.core.schema import DATE_FACTS, Classification, DeadlineResult, ProjectFacts
from lientrack.core.settings import DEFAULT_RULES_PATH

DEFAULT_URGENT_WINDOW = 7
HIGH_WARNING_DAYS = 14
MEDIUM_WARNING_DAYS = 30

OFFSET_KINDS = ("day_of_month", "calendar_months", "calendar_days")

PRELIMINARY_NOTICE = "preliminary_notice"
MECHANICS_LIEN = "mechanics_lien"
FUNDS_TRAPPING = "funds_trapping"
RETENTION_RELEASE = "retention_release"
BOND_CLAIM = "bond_claim"
LAWSUIT_FILING = "lawsuit_filing"
PAYMENT_DEMAND = "payment_demand"
RETAINAGE_NOTICE = "retainage_notice"


@dataclass(frozen=True)
class Offset:
    kind: str
    months: int = 0
    days: int = 0
    day: int | None = None

    def apply(self, trigger: date) -> date:
        if self.kind == "day_of_month":
            return day_of_month_after(trigger, self.months, self.day or 1)
        if self.kind == "calendar_months":
            return add_calendar_months(trigger, self.months)
        return add_calendar_days(trigger, self.days)


@dataclass(frozen=True)
class Trigger:
    """Starts the clock from a project fact or from another category's deadline."""

    fact: str | None
    offset: Offset
    roles: frozenset[str] | None = None
    project_types: frozenset[str] | None = None
    relative_to: str | None = None

    @property
    def source(self) -> str:
        return self.relative_to or self.fact or ""

    def matches(self, facts: ProjectFacts) -> bool:
        if self.roles is not None and facts.role not in self.roles:
            return False
        if self.project_types is not None and facts.project_type not in self.project_types:
            return False
        return True


@dataclass(frozen=True)
class CategoryRule:
    category: str
    title: str
    triggers: tuple[Trigger, ...]
    description: str = ""
    legal_reference: str = ""
    action_items: tuple[str, ...] = ()

    def select(self, facts: ProjectFacts) -> Trigger | None:
        for trigger in self.triggers:
            if trigger.matches(facts):
                return trigger
        return None


@dataclass(frozen=True)
class Jurisdiction:
    code: str
    name: str
    rules: Mapping[str, CategoryRule]
    timezone: str | None = None


# ----------------------------------------------------------------------
# status derivation
# ----------------------------------------------------------------------
def severity_for(days_remaining: int, *, completed: bool = False, urgent_window: int = DEFAULT_URGENT_WINDOW) -> str | None:
    if completed:
        return None
    if days_remaining < 0 or days_remaining <= urgent_window:
        return "critical"
    if days_remaining <= HIGH_WARNING_DAYS:
        return "high"
    if days_remaining <= MEDIUM_WARNING_DAYS:
        return "medium"
    return "low"


def describe_deadline(
    deadline_date: date,
    days_remaining: int,
    *,
    completed: bool = False,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> str:
    """Short human phrase for a deadline relative to today."""

    if completed:
        return "Completed"
    if days_remaining < 0:
        overdue = abs(days_remaining)
        return f"Overdue by {overdue} day{'s' if overdue != 1 else ''}"
    if days_remaining == 0:
        return "Due today"
    if days_remaining == 1:
        return "Due tomorrow"
    if days_remaining <= urgent_window:
        return f"Due in {days_remaining} days"
    return f"Due {deadline_date:%b} {deadline_date.day}, {deadline_date.year}"


def classify(
    deadline_date: date,
    now: date | datetime,
    *,
    completed: bool = False,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
    timezone: str | None = None,
) -> Classification:
    """Derive status, urgency and severity of ``deadline_date`` as of ``now``."""

    days_remaining = days_between(local_date(now, timezone), deadline_date)
    if completed:
        status = "completed"
    elif days_remaining < 0:
        status = "overdue"
    else:
        status = "upcoming"
    urgency = "urgent" if status == "upcoming" and days_remaining <= urgent_window else "normal"
    return Classification(
        status=status,
        urgency=urgency,
        days_remaining=days_remaining,
        severity=severity_for(days_remaining, completed=completed, urgent_window=urgent_window),
        label=describe_deadline(deadline_date, days_remaining, completed=completed, urgent_window=urgent_window),
    )


# ----------------------------------------------------------------------
# rule table
# ----------------------------------------------------------------------
def _token_set(values: Any) -> frozenset[str] | None:
    if values is None:
        return None
    if isinstance(values, str):
        values = [values]
    return frozenset(str(value).strip().lower() for value in values)


def _parse_offset(raw: Mapping[str, Any], where: str) -> Offset:
    kind = str(raw.get("kind") or "")
    if kind not in OFFSET_KINDS:
        raise ValueError(f"{where}: unknown offset kind {kind!r}")
    offset = Offset(
        kind=kind,
        months=int(raw.get("months") or 0),
        days=int(raw.get("days") or 0),
        day=int(raw["day"]) if raw.get("day") is not None else None,
    )
    if kind == "day_of_month" and not (offset.day and 1 <= offset.day <= 31):
        raise ValueError(f"{where}: day_of_month offsets need a day between 1 and 31")
    return offset


def _parse_rule(category: str, raw: Mapping[str, Any], where: str) -> CategoryRule:
    triggers: list[Trigger] = []
    for index, item in enumerate(raw.get("triggers") or []):
        location = f"{where}.triggers[{index}]"
        fact = str(item.get("fact") or "") or None
        relative_to = str(item.get("relative_to") or "") or None
        if (fact is None) == (relative_to is None):
            raise ValueError(f"{location}: exactly one of fact or relative_to is required")
        if fact is not None and fact not in DATE_FACTS:
            raise ValueError(f"{location}: unknown trigger fact {fact!r}")
        if relative_to == category:
            raise ValueError(f"{location}: a category cannot be relative to itself")
        when = item.get("when") or {}
        triggers.append(
            Trigger(
                fact=fact,
                offset=_parse_offset(item.get("offset") or {}, location),
                roles=_token_set(when.get("role")),
                project_types=_token_set(when.get("project_type")),
                relative_to=relative_to,
            )
        )
    if not triggers:
        raise ValueError(f"{where}: at least one trigger is required")
    return CategoryRule(
        category=category,
        title=str(raw.get("title") or category.replace("_", " ").title()),
        triggers=tuple(triggers),
        description=str(raw.get("description") or ""),
        legal_reference=str(raw.get("legal_reference") or ""),
        action_items=tuple(str(item) for item in raw.get("action_items") or []),
    )


def _check_chains(code: str, rules: Mapping[str, CategoryRule]) -> None:
    """Reject ``relative_to`` references to unknown categories and cycles."""

    edges: dict[str, set[str]] = {}
    for category, rule in rules.items():
        for trigger in rule.triggers:
            if trigger.relative_to is None:
                continue
            if trigger.relative_to not in rules:
                raise ValueError(f"{code}.{category}: relative_to names unknown category {trigger.relative_to!r}")
            edges.setdefault(category, set()).add(trigger.relative_to)

    def visit(category: str, path: tuple[str, ...]) -> None:
        for target in edges.get(category, ()):
            if target in path:
                raise ValueError(f"{code}: circular relative_to chain {' -> '.join((*path, target))}")
            visit(target, (*path, target))

    for category in edges:
        visit(category, (category,))


class RuleBook:
    """Immutable, loaded rule table."""

    def __init__(self, version: str, jurisdictions: Mapping[str, Jurisdiction]) -> None:
        self.version = version
        self._jurisdictions = dict(jurisdictions)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RuleBook":
        jurisdictions: dict[str, Jurisdiction] = {}
        for code, body in (data.get("jurisdictions") or {}).items():
            code = str(code).strip().upper()
            timezone = body.get("timezone")
            if timezone:
                try:
                    ZoneInfo(timezone)
                except ZoneInfoNotFoundError as exc:
                    raise ValueError(f"{code}: unknown timezone {timezone!r}") from exc
            rules = {
                str(category): _parse_rule(str(category), raw, f"{code}.{category}")
                for category, raw in (body.get("rules") or {}).items()
            }
            _check_chains(code, rules)
            jurisdictions[code] = Jurisdiction(code=code, name=str(body.get("name") or code), rules=rules, timezone=timezone)
        return cls(version=str(data.get("version") or "unversioned"), jurisdictions=jurisdictions)

    @classmethod
    def load(cls, path: Path) -> "RuleBook":
        with Path(path).open("r", encoding="utf-8") as fp:
            return cls.from_mapping(yaml.safe_load(fp) or {})

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    @property
    def jurisdictions(self) -> list[str]:
        return sorted(self._jurisdictions)

    def jurisdiction(self, code: str) -> Jurisdiction:
        found = self._jurisdictions.get(code.strip().upper())
        if found is None:
            raise UnsupportedRuleError(f"no deadline rules for jurisdiction {code}", jurisdiction=code)
        return found

    def categories(self, jurisdiction: str) -> list[str]:
        return list(self.jurisdiction(jurisdiction).rules)

    def rule_for(self, category: str, jurisdiction: str) -> CategoryRule:
        rules = self.jurisdiction(jurisdiction).rules
        rule = rules.get(category)
        if rule is None:
            raise UnsupportedRuleError(
                f"{category} is not defined for jurisdiction {jurisdiction}",
                category=category,
                jurisdiction=jurisdiction,
            )
        return rule

    def applicable_categories(self, facts: ProjectFacts) -> list[str]:
        """Categories whose triggers cover the facts' role and project type.

        A category chained to another one applies only where its base does.
        """

        rules = self.jurisdiction(facts.jurisdiction).rules

        def applies(category: str) -> bool:
            trigger = rules[category].select(facts)
            if trigger is None:
                return False
            return trigger.relative_to is None or applies(trigger.relative_to)

        return [category for category in rules if applies(category)]

    # ------------------------------------------------------------------
    # computation
    # ------------------------------------------------------------------
    def resolve(self, category: str, facts: ProjectFacts) -> tuple[CategoryRule, Trigger, date]:
        """Return the rule, the selected trigger and the date its offset applies to.

        For a chained trigger that date is the base category's deadline.
        """

        rule = self.rule_for(category, facts.jurisdiction)
        trigger = rule.select(facts)
        if trigger is None:
            raise UnsupportedRuleError(
                f"{category} in {facts.jurisdiction} does not cover role {facts.role} "
                f"on {facts.project_type} projects",
                category=category,
                jurisdiction=facts.jurisdiction,
            )
        if trigger.relative_to is not None:
            try:
                return rule, trigger, self.deadline_date(trigger.relative_to, facts)
            except MissingFactError as exc:
                raise MissingFactError(category, exc.fact) from exc
        trigger_date = facts.fact(trigger.fact)
        if trigger_date is None:
            raise MissingFactError(category, trigger.fact)
        return rule, trigger, trigger_date

    def deadline_date(self, category: str, facts: ProjectFacts) -> date:
        _, trigger, trigger_date = self.resolve(category, facts)
        return trigger.offset.apply(trigger_date)

    def classify(
        self,
        jurisdiction: str,
        deadline_date: date,
        now: date | datetime,
        *,
        completed: bool = False,
        urgent_window: int = DEFAULT_URGENT_WINDOW,
    ) -> Classification:
        timezone = self.jurisdiction(jurisdiction).timezone
        return classify(deadline_date, now, completed=completed, urgent_window=urgent_window, timezone=timezone)

    def compute(
        self,
        category: str,
        facts: ProjectFacts,
        now: date | datetime,
        *,
        completed: bool = False,
        urgent_window: int = DEFAULT_URGENT_WINDOW,
    ) -> DeadlineResult:
        rule, trigger, trigger_date = self.resolve(category, facts)
        deadline_date = trigger.offset.apply(trigger_date)
        classification = self.classify(
            facts.jurisdiction,
            deadline_date,
            now,
            completed=completed,
            urgent_window=urgent_window,
        )
        return DeadlineResult(
            deadline_type=category,
            deadline_date=deadline_date,
            jurisdiction=facts.jurisdiction,
            trigger_fact=trigger.source,
            trigger_date=trigger_date,
            rule_version=self.version,
            title=rule.title,
            description=rule.description,
            legal_reference=rule.legal_reference,
            action_items=list(rule.action_items),
            **classification.model_dump(),
        )


@lru_cache(maxsize=8)
def load_rule_book(path: str | None = None) -> RuleBook:
    """Load (and cache) the rule table, defaulting to the bundled YAML."""

    return RuleBook.load(Path(path) if path else DEFAULT_RULES_PATH)


# ----------------------------------------------------------------------
# per-category entry points
# ----------------------------------------------------------------------
def _calculate(category: str, facts: ProjectFacts, now: date | datetime, rules: RuleBook | None, urgent_window: int) -> DeadlineResult:
    book = rules or load_rule_book()
    return book.compute(category, facts, now, urgent_window=urgent_window)


def calculate_preliminary_notice_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(PRELIMINARY_NOTICE, facts, now, rules, urgent_window)


def calculate_mechanics_lien_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(MECHANICS_LIEN, facts, now, rules, urgent_window)


def calculate_funds_trapping_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(FUNDS_TRAPPING, facts, now, rules, urgent_window)


def calculate_retention_release_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(RETENTION_RELEASE, facts, now, rules, urgent_window)


def calculate_bond_claim_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(BOND_CLAIM, facts, now, rules, urgent_window)


def calculate_lawsuit_filing_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(LAWSUIT_FILING, facts, now, rules, urgent_window)


def calculate_payment_demand_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(PAYMENT_DEMAND, facts, now, rules, urgent_window)


def calculate_retainage_notice_deadline(
    facts: ProjectFacts,
    now: date | datetime,
    *,
    rules: RuleBook | None = None,
    urgent_window: int = DEFAULT_URGENT_WINDOW,
) -> DeadlineResult:
    return _calculate(RETAINAGE_NOTICE, facts, now, rules, urgent_window)
