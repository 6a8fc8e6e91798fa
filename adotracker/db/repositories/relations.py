"""SQLite implementation of RelationRepository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

import aiosqlite

from adotracker.models import RelationEdge


class SqliteRelationRepository:
    """Typed, directed work-item links. Duplicate edges are ignored."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def add_many(self, edges: Iterable[RelationEdge], *, commit: bool = True) -> int:
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (edge.sourceId, edge.targetId, edge.relationType, edge.createdAt or now)
            for edge in edges
        ]
        if not rows:
            return 0
        before = self.db.total_changes
        await self.db.executemany(
            """INSERT OR IGNORE INTO work_item_links (source_id, target_id, link_type, created_at)
               VALUES (?, ?, ?, ?)""",
            rows,
        )
        inserted = self.db.total_changes - before
        if commit:
            await self.db.commit()
        return inserted

    async def flush(self) -> None:
        await self.db.commit()

    async def links_for(self, external_id: str) -> list[RelationEdge]:
        async with self.db.execute(
            """SELECT source_id, target_id, link_type, created_at FROM work_item_links
               WHERE source_id = ? OR target_id = ?
               ORDER BY id""",
            (external_id, external_id),
        ) as cur:
            return [
                RelationEdge(
                    sourceId=r["source_id"],
                    targetId=r["target_id"],
                    relationType=r["link_type"],
                    createdAt=r["created_at"] or "",
                )
                for r in await cur.fetchall()
            ]

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM work_item_links") as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def delete_referencing(self, external_ids: Iterable[str], *, commit: bool = True) -> int:
        ids = list(external_ids)
        if not ids:
            return 0
        before = self.db.total_changes
        # Chunked to stay under SQLite's bound-parameter limit.
        for i in range(0, len(ids), 400):
            chunk = ids[i:i + 400]
            placeholders = ", ".join("?" for _ in chunk)
            await self.db.execute(
                f"""DELETE FROM work_item_links
                    WHERE source_id IN ({placeholders}) OR target_id IN ({placeholders})""",
                tuple(chunk) + tuple(chunk),
            )
        deleted = self.db.total_changes - before
        if commit:
            await self.db.commit()
        return deleted
