"""Parser for project fact sheets (CSV or Excel).

One row per project. Headers are matched case-insensitively against a small
alias list so that exports from common spreadsheets work without editing,
e.g. ``Project ID`` / ``project``, ``Last Furnished`` / ``last_work_date``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import pandas as pd
from pydantic import ValidationError

from lientrack.core.schema import ProjectFacts

COLUMN_ALIASES: dict[str, list[str]] = {
    "project_id": ["project_id", "project", "project id", "job", "job number"],
    "user_id": ["user_id", "user", "owner", "claimant"],
    "role": ["role", "claimant role", "contract type"],
    "project_type": ["project_type", "project type", "type"],
    "jurisdiction": ["jurisdiction", "state"],
    "project_start_date": ["project_start_date", "project start", "start date", "contract date"],
    "labor_start_date": ["labor_start_date", "labor start", "first furnished", "first furnished date"],
    "last_work_date": ["last_work_date", "last work", "last furnished", "last furnished date"],
    "completion_date": ["completion_date", "completion", "project completion", "notice of completion"],
}

DATE_COLUMNS = ("project_start_date", "labor_start_date", "last_work_date", "completion_date")


@dataclass
class ProjectFactsParseResult:
    projects: list[tuple[str, ProjectFacts]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)


def _normalise_header(value: Any) -> str:
    return " ".join(str(value).strip().lower().replace("_", " ").split())


def _resolve_columns(dataframe: pd.DataFrame) -> dict[str, str]:
    lookup = {_normalise_header(column): column for column in dataframe.columns}
    resolved: dict[str, str] = {}
    for field_name, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            column = lookup.get(_normalise_header(alias))
            if column is not None:
                resolved[field_name] = column
                break
    return resolved


def _cell(value: Any) -> Any:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _to_date(value: Any) -> date | None:
    value = _cell(value)
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, pd.Timestamp):
        return value if type(value) is date else value.date()
    parsed = pd.to_datetime(value, errors="coerce")
    if pd.isna(parsed):
        raise ValueError(f"unrecognised date {value!r}")
    return parsed.date()


def _read(path: Path, sheet_name: str | int | None) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        dataframe = pd.read_csv(path, dtype=str, keep_default_na=True)
    else:
        dataframe = pd.read_excel(path, sheet_name=sheet_name or 0)
    return dataframe.dropna(how="all")


def parse(path: Path, *, default_user_id: str | None = None, sheet_name: str | int | None = None) -> ProjectFactsParseResult:
    dataframe = _read(path, sheet_name)
    columns = _resolve_columns(dataframe)
    result = ProjectFactsParseResult()

    if "project_id" not in columns:
        result.errors.append({"row": None, "error": "no project id column found"})
        return result

    for index, row in dataframe.iterrows():
        row_number = int(index) + 2  # header is row 1
        project_id = _cell(row.get(columns["project_id"]))
        if project_id is None:
            continue

        payload: dict[str, Any] = {}
        try:
            for field_name, column in columns.items():
                if field_name == "project_id":
                    continue
                value = row.get(column)
                payload[field_name] = _to_date(value) if field_name in DATE_COLUMNS else _cell(value)
            payload = {key: value for key, value in payload.items() if value is not None}
            if "user_id" not in payload and default_user_id:
                payload["user_id"] = default_user_id
            facts = ProjectFacts(**{key: str(value) if key not in DATE_COLUMNS else value for key, value in payload.items()})
        except (ValueError, ValidationError) as exc:
            result.errors.append({"row": row_number, "project_id": str(project_id), "error": str(exc)})
            continue

        result.projects.append((str(project_id), facts))

    return result
