from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd

from lientrack.core.schema import DeadlineView

REMINDER_COLUMNS = [
    "deadline_id",
    "user_id",
    "project_id",
    "category",
    "title",
    "deadline_date",
    "days_remaining",
    "urgency",
    "severity",
    "label",
    "legal_reference",
]


def reminder_frame(rows: Iterable[DeadlineView]) -> pd.DataFrame:
    records = []
    for row in rows:
        data = row.model_dump(mode="json")
        records.append({
            "deadline_id": data["id"],
            "user_id": data["user_id"],
            "project_id": data["project_id"],
            "category": data["category"],
            "title": data["title"],
            "deadline_date": data["deadline_date"],
            "days_remaining": data["days_remaining"],
            "urgency": data["urgency"],
            "severity": data["severity"],
            "label": data["label"],
            "legal_reference": data["legal_reference"],
        })
    return pd.DataFrame(records, columns=REMINDER_COLUMNS)


def reminders_to_csv(rows: Iterable[DeadlineView]) -> str:
    return reminder_frame(rows).to_csv(index=False)


def export_reminder_queue(path: Path, rows: Iterable[DeadlineView]) -> Path:
    df = reminder_frame(rows)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path
