"""SQLite implementation of RunLogRepository (append-only audit log)."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from adotracker.models import RunRecord

# Columns with a dedicated home in sync_log; everything else goes to payload_json.
_COUNTER_COLUMNS = {
    "itemsAdded": "items_added",
    "itemsUpdated": "items_updated",
    "itemsSkipped": "items_skipped",
    "itemsProcessed": "items_processed",
}
_FAILED_KEYS = ("itemsFailed", "failed")
_BASE_KEYS = {"id", "kind", "timestamp", "status", "errors", "durationMs"}


def _row_to_dict(row: aiosqlite.Row) -> dict:
    data = dict(row)
    try:
        payload = json.loads(data.get("payload_json") or "{}")
    except ValueError:
        payload = {}
    try:
        errors = json.loads(data.get("errors_json") or "[]")
    except ValueError:
        errors = []
    return {
        **payload,
        "id": data["id"],
        "kind": data["kind"],
        "timestamp": data["run_date"],
        "status": data["status"],
        "errors": errors,
        "durationMs": data.get("duration_ms") or 0,
    }


class SqliteRunLogRepository:
    """Sync / tag / retag run history. Rows are inserted once and never updated."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def record(self, run: RunRecord) -> int:
        data = run.model_dump()
        timestamp = data.get("timestamp") or datetime.now(timezone.utc).isoformat()
        counters = {column: int(data.get(key) or 0) for key, column in _COUNTER_COLUMNS.items()}
        failed = next((int(data[key]) for key in _FAILED_KEYS if key in data), 0)
        payload = {key: value for key, value in data.items() if key not in _BASE_KEYS}

        async with self.db.execute(
            """INSERT INTO sync_log (
                kind, run_date, items_added, items_updated, items_skipped,
                items_processed, items_failed, status, errors_json, duration_ms, payload_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                run.kind,
                timestamp,
                counters["items_added"],
                counters["items_updated"],
                counters["items_skipped"],
                counters["items_processed"],
                failed,
                run.status,
                json.dumps(data.get("errors") or []),
                int(run.durationMs or 0),
                json.dumps(payload, default=str),
            ),
        ) as cur:
            await self.db.commit()
            return cur.lastrowid or 0

    async def history(self, kind: str, limit: int = 10) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM sync_log WHERE kind = ? ORDER BY run_date DESC, id DESC LIMIT ?",
            (kind, max(1, int(limit))),
        ) as cur:
            return [_row_to_dict(r) for r in await cur.fetchall()]

    async def latest(self, kind: str) -> Optional[dict]:
        rows = await self.history(kind, limit=1)
        return rows[0] if rows else None
