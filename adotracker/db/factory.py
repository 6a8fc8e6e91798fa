"""Repository factory for the embedded store."""
from __future__ import annotations

from typing import Any

import aiosqlite

from adotracker.db.repositories.relations import SqliteRelationRepository
from adotracker.db.repositories.run_log import SqliteRunLogRepository
from adotracker.db.repositories.work_items import SqliteWorkItemRepository


def _require_sqlite(db: Any) -> aiosqlite.Connection:
    if not isinstance(db, aiosqlite.Connection):
        raise TypeError(f"Unsupported database connection: {type(db).__name__}")
    return db


def get_work_item_repository(db: Any):
    return SqliteWorkItemRepository(_require_sqlite(db))


def get_relation_repository(db: Any):
    return SqliteRelationRepository(_require_sqlite(db))


def get_run_log_repository(db: Any):
    return SqliteRunLogRepository(_require_sqlite(db))
