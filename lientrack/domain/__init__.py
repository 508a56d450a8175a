"""Domain layer definitions."""

from .deadlines import DeadlineRecord

__all__ = [
    "DeadlineRecord",
]
