"""Calendar arithmetic used by the deadline rules.

Every helper works on whole calendar dates. Month arithmetic keeps the
day-of-month where the target month has it and clamps to the last day of
the month otherwise, so ``2024-01-31 + 1 month`` is ``2024-02-29`` and never
an invalid date.
"""
from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def add_calendar_months(value: date, months: int) -> date:
    """Add calendar months, clamping to the target month's last day."""

    return _as_date(value) + relativedelta(months=months)


def add_calendar_days(value: date, days: int) -> date:
    return _as_date(value) + timedelta(days=days)


def day_of_month_after(value: date, months: int, day: int) -> date:
    """Return ``day`` of the month lying ``months`` months after ``value``'s month."""

    if day < 1:
        raise ValueError("day must be at least 1")
    first = _as_date(value).replace(day=1) + relativedelta(months=months)
    last_day = calendar.monthrange(first.year, first.month)[1]
    return first.replace(day=min(day, last_day))


def days_between(start: date, end: date) -> int:
    """Whole days from ``start`` to ``end``; negative when ``end`` is earlier."""

    return (_as_date(end) - _as_date(start)).days


def local_date(moment: date | datetime, tz_name: str | None = None) -> date:
    """Calendar date of ``moment`` as seen in ``tz_name``.

    Plain dates and naive datetimes are taken as already local.
    """

    if not isinstance(moment, datetime):
        return moment
    if moment.tzinfo is None or not tz_name:
        return moment.date()
    return moment.astimezone(ZoneInfo(tz_name)).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
