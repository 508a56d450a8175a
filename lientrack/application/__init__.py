"""Application services."""

from .deadlines import (
    DeadlineService,
    SyncReport,
    build_deadline_service,
    configure_deadline_service,
    get_deadline_service,
    reset_deadline_state,
)

__all__ = [
    "DeadlineService",
    "SyncReport",
    "build_deadline_service",
    "configure_deadline_service",
    "get_deadline_service",
    "reset_deadline_state",
]
