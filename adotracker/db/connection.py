"""Database connection factory.

Provides a singleton async connection to the embedded SQLite store
with WAL mode.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from adotracker import config

logger = logging.getLogger("adotracker.db")

DB_PATH = Path(config.DB_PATH).expanduser()

_connection: aiosqlite.Connection | None = None


async def open_connection(path: str | Path) -> aiosqlite.Connection:
    """Open and configure a new SQLite connection."""
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    # WAL keeps dashboard reads from blocking on sync writes
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    _connection = await open_connection(DB_PATH)
    logger.info("Database connection established: %s", DB_PATH)
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
