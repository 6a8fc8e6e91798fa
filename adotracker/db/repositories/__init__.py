"""Repository package for database access."""

from .work_items import SqliteWorkItemRepository
from .relations import SqliteRelationRepository
from .run_log import SqliteRunLogRepository

__all__ = [
    "SqliteWorkItemRepository",
    "SqliteRelationRepository",
    "SqliteRunLogRepository",
]
