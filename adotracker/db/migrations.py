"""Database schema creation and versioning.

All CREATE TABLE statements for the local work-item mirror.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("adotracker.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Work items ──────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS work_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id     TEXT NOT NULL UNIQUE,
    title           TEXT NOT NULL DEFAULT '',
    description     TEXT DEFAULT '',
    work_item_type  TEXT DEFAULT '',
    state           TEXT DEFAULT '',
    area_path       TEXT DEFAULT '',
    iteration_path  TEXT DEFAULT '',
    assigned_to     TEXT DEFAULT '',
    created_by      TEXT DEFAULT '',
    created_at      TEXT DEFAULT '',
    modified_at     TEXT DEFAULT '',
    project_name    TEXT DEFAULT '',
    tags_json       TEXT DEFAULT '[]',
    confidence_json TEXT DEFAULT '{}',
    needs_tagging   INTEGER NOT NULL DEFAULT 1,
    extra_json      TEXT DEFAULT '{}',
    raw_data_json   TEXT DEFAULT '{}',
    synced_at       TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_items_type     ON work_items(work_item_type);
CREATE INDEX IF NOT EXISTS idx_items_state    ON work_items(state);
CREATE INDEX IF NOT EXISTS idx_items_area     ON work_items(area_path);
CREATE INDEX IF NOT EXISTS idx_items_modified ON work_items(modified_at);
CREATE INDEX IF NOT EXISTS idx_items_project  ON work_items(project_name);
CREATE INDEX IF NOT EXISTS idx_items_pending  ON work_items(needs_tagging);

-- ── 2. Typed relation edges ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS work_item_links (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id   TEXT NOT NULL,
    target_id   TEXT NOT NULL,
    link_type   TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_links_unique ON work_item_links(source_id, target_id, link_type);
CREATE INDEX IF NOT EXISTS idx_links_target ON work_item_links(target_id);

-- ── 3. Sync / tag / retag audit log ────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    kind            TEXT NOT NULL DEFAULT 'sync',
    run_date        TEXT NOT NULL,
    items_added     INTEGER DEFAULT 0,
    items_updated   INTEGER DEFAULT 0,
    items_skipped   INTEGER DEFAULT 0,
    items_processed INTEGER DEFAULT 0,
    items_failed    INTEGER DEFAULT 0,
    status          TEXT NOT NULL,
    errors_json     TEXT DEFAULT '[]',
    duration_ms     INTEGER DEFAULT 0,
    payload_json    TEXT DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_sync_log_kind ON sync_log(kind, run_date DESC);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # Re-tag bookkeeping (added after the first release).
    await _ensure_column(db, "work_items", "last_retagged_at", "TEXT")
    await _ensure_column(db, "work_items", "tags_backup_json", "TEXT")
    await _ensure_column(db, "work_items", "confidence_backup_json", "TEXT")
    await _ensure_column(db, "work_items", "backup_timestamp", "TEXT")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_items_retagged ON work_items(last_retagged_at)")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete (schema version %s)", SCHEMA_VERSION)
