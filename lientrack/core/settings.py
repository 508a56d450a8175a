from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
DEFAULT_RULES_PATH = CONFIG_DIR / "deadline_rules.yaml"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _default_duckdb_path() -> Path:
    return Path(__file__).resolve().parents[2] / "data" / "deadlines.duckdb"


@dataclass
class Settings:
    rules_path: Path = DEFAULT_RULES_PATH
    urgent_window_days: int = 7
    reminder_window_days: int = 7
    store: str = "memory"
    duckdb_path: Path = field(default_factory=_default_duckdb_path)
    storage_timeout: float = 5.0
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``LIENTRACK_*`` environment variables."""

        settings = cls()
        rules_path = os.getenv("LIENTRACK_RULES_PATH")
        if rules_path:
            settings.rules_path = Path(rules_path).expanduser().resolve()
        settings.urgent_window_days = _int_env("LIENTRACK_URGENT_WINDOW_DAYS", settings.urgent_window_days)
        settings.reminder_window_days = _int_env("LIENTRACK_REMINDER_WINDOW_DAYS", settings.reminder_window_days)
        settings.store = (os.getenv("LIENTRACK_STORE") or settings.store).strip().lower()
        duckdb_path = os.getenv("LIENTRACK_DUCKDB_PATH")
        if duckdb_path:
            settings.duckdb_path = Path(duckdb_path).expanduser().resolve()
        settings.storage_timeout = _float_env("LIENTRACK_STORAGE_TIMEOUT", settings.storage_timeout)
        settings.log_level = (os.getenv("LIENTRACK_LOG_LEVEL") or settings.log_level).upper()

        origins_env = os.getenv("API_CORS_ORIGINS", "")
        origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
        if origins:
            settings.cors_origins = origins
        return settings
