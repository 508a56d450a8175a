"""Infrastructure layer exports."""

from .deadlines import DeadlineRepository, InMemoryDeadlineRepository
from .duckdb_deadlines import DuckDBDeadlineRepository

__all__ = [
    "DeadlineRepository",
    "DuckDBDeadlineRepository",
    "InMemoryDeadlineRepository",
]
