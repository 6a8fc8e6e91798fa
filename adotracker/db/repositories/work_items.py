"""SQLite implementation of WorkItemRepository."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import aiosqlite

from adotracker.db.selection import selection_predicate
from adotracker.hierarchy import ORPHAN_TAG, split_hierarchy_tags
from adotracker.models import (
    RetagCriteria,
    RetaggedItem,
    StoreStats,
    TagBackup,
    WorkItem,
)


def _load_json(value: Any, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _dump_tags(tags: Iterable[str]) -> str:
    return json.dumps(sorted(tags))


def _row_to_item(row: aiosqlite.Row) -> WorkItem:
    data = dict(row)
    return WorkItem(
        externalId=data["external_id"],
        title=data.get("title") or "",
        description=data.get("description") or "",
        type=data.get("work_item_type") or "",
        state=data.get("state") or "",
        areaPath=data.get("area_path") or "",
        iterationPath=data.get("iteration_path") or "",
        assignedTo=data.get("assigned_to") or "",
        createdBy=data.get("created_by") or "",
        createdAt=data.get("created_at") or "",
        modifiedAt=data.get("modified_at") or "",
        projectName=data.get("project_name") or "",
        tags=set(_load_json(data.get("tags_json"), [])),
        confidenceScores=_load_json(data.get("confidence_json"), {}),
        needsTagging=bool(data.get("needs_tagging")),
        fields=_load_json(data.get("extra_json"), {}),
        rawData=_load_json(data.get("raw_data_json"), {}),
        syncedAt=data.get("synced_at") or "",
        lastRetaggedAt=data.get("last_retagged_at"),
    )


class SqliteWorkItemRepository:
    """SQLite-backed work-item storage keyed by external id."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert_many(self, items: Iterable[WorkItem], *, commit: bool = True) -> int:
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (
                item.externalId,
                item.title,
                item.description,
                item.type,
                item.state,
                item.areaPath,
                item.iterationPath,
                item.assignedTo,
                item.createdBy,
                item.createdAt,
                item.modifiedAt,
                item.projectName,
                _dump_tags(item.tags),
                json.dumps(item.confidenceScores),
                1 if item.needsTagging else 0,
                json.dumps(item.fields, default=str),
                json.dumps(item.rawData, default=str),
                now,
            )
            for item in items
        ]
        if not rows:
            return 0
        await self.db.executemany(
            """INSERT INTO work_items (
                external_id, title, description, work_item_type, state,
                area_path, iteration_path, assigned_to, created_by,
                created_at, modified_at, project_name,
                tags_json, confidence_json, needs_tagging,
                extra_json, raw_data_json, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(external_id) DO UPDATE SET
                title=excluded.title, description=excluded.description,
                work_item_type=excluded.work_item_type, state=excluded.state,
                area_path=excluded.area_path, iteration_path=excluded.iteration_path,
                assigned_to=excluded.assigned_to, created_by=excluded.created_by,
                created_at=excluded.created_at, modified_at=excluded.modified_at,
                project_name=excluded.project_name,
                tags_json=excluded.tags_json, confidence_json=excluded.confidence_json,
                needs_tagging=excluded.needs_tagging,
                extra_json=excluded.extra_json, raw_data_json=excluded.raw_data_json,
                synced_at=excluded.synced_at
            """,
            rows,
        )
        if commit:
            await self.db.commit()
        return len(rows)

    async def flush(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def get(self, external_id: str) -> Optional[WorkItem]:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE external_id = ?", (external_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_item(row) if row else None

    async def get_many(self, external_ids: Iterable[str]) -> dict[str, WorkItem]:
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        async with self.db.execute(
            f"SELECT * FROM work_items WHERE external_id IN ({placeholders})", ids
        ) as cur:
            return {item.externalId: item for item in map(_row_to_item, await cur.fetchall())}

    async def snapshot(self) -> dict[str, WorkItem]:
        async with self.db.execute("SELECT * FROM work_items") as cur:
            return {item.externalId: item for item in map(_row_to_item, await cur.fetchall())}

    async def list_needing_tags(self, limit: int) -> list[WorkItem]:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE needs_tagging = 1 ORDER BY id LIMIT ?",
            (max(1, int(limit)),),
        ) as cur:
            return [_row_to_item(r) for r in await cur.fetchall()]

    async def pending_count(self) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM work_items WHERE needs_tagging = 1"
        ) as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def count_by_criteria(self, criteria: RetagCriteria) -> int:
        where, params = selection_predicate(criteria)
        async with self.db.execute(
            f"SELECT COUNT(*) FROM work_items WHERE {where}", params
        ) as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def list_by_criteria(self, criteria: RetagCriteria) -> list[WorkItem]:
        where, params = selection_predicate(criteria)
        async with self.db.execute(
            f"SELECT * FROM work_items WHERE {where} ORDER BY id", params
        ) as cur:
            return [_row_to_item(r) for r in await cur.fetchall()]

    async def backup_tags(self, items: Iterable[WorkItem], *, commit: bool = True) -> str:
        """Snapshot current tags/scores into the backup columns (overwriting)."""
        now = datetime.now(timezone.utc).isoformat()
        rows = [
            (_dump_tags(item.tags), json.dumps(item.confidenceScores), now, item.externalId)
            for item in items
        ]
        if rows:
            await self.db.executemany(
                """UPDATE work_items
                   SET tags_backup_json = ?, confidence_backup_json = ?, backup_timestamp = ?
                   WHERE external_id = ?""",
                rows,
            )
            if commit:
                await self.db.commit()
        return now

    async def apply_tags(
        self,
        items: Iterable[WorkItem],
        *,
        retagged_at: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        rows = [
            (
                _dump_tags(item.tags),
                json.dumps(item.confidenceScores),
                retagged_at,
                item.externalId,
            )
            for item in items
        ]
        if not rows:
            return 0
        await self.db.executemany(
            """UPDATE work_items
               SET tags_json = ?, confidence_json = ?, needs_tagging = 0,
                   last_retagged_at = COALESCE(?, last_retagged_at)
               WHERE external_id = ?""",
            rows,
        )
        if commit:
            await self.db.commit()
        return len(rows)

    async def get_backup(self, external_id: str) -> Optional[TagBackup]:
        async with self.db.execute(
            """SELECT external_id, tags_backup_json, confidence_backup_json, backup_timestamp
               FROM work_items WHERE external_id = ? AND backup_timestamp IS NOT NULL""",
            (external_id,),
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return TagBackup(
            externalId=row["external_id"],
            tags=set(_load_json(row["tags_backup_json"], [])),
            confidenceScores=_load_json(row["confidence_backup_json"], {}),
            backupTimestamp=row["backup_timestamp"] or "",
        )

    async def restore_backup(self, external_id: str) -> bool:
        backup = await self.get_backup(external_id)
        if backup is None:
            return False
        _, content_tags = split_hierarchy_tags(backup.tags)
        await self.db.execute(
            """UPDATE work_items
               SET tags_json = ?, confidence_json = ?, needs_tagging = ?
               WHERE external_id = ?""",
            (
                _dump_tags(backup.tags),
                json.dumps(backup.confidenceScores),
                0 if content_tags else 1,
                external_id,
            ),
        )
        await self.db.commit()
        return True

    async def retagged_items(self, limit: int = 20) -> list[RetaggedItem]:
        async with self.db.execute(
            """SELECT external_id, title, work_item_type, tags_backup_json, tags_json,
                      backup_timestamp, last_retagged_at
               FROM work_items
               WHERE last_retagged_at IS NOT NULL
               ORDER BY last_retagged_at DESC
               LIMIT ?""",
            (max(1, int(limit)),),
        ) as cur:
            rows = await cur.fetchall()
        return [
            RetaggedItem(
                externalId=r["external_id"],
                title=r["title"] or "",
                type=r["work_item_type"] or "",
                oldTags=set(_load_json(r["tags_backup_json"], [])),
                newTags=set(_load_json(r["tags_json"], [])),
                backupTimestamp=r["backup_timestamp"],
                lastRetaggedAt=r["last_retagged_at"],
            )
            for r in rows
        ]

    async def delete_by_types(self, types: Iterable[str], *, commit: bool = True) -> list[str]:
        type_list = [t for t in types if t]
        if not type_list:
            return []
        placeholders = ", ".join("?" for _ in type_list)
        async with self.db.execute(
            f"SELECT external_id FROM work_items WHERE work_item_type IN ({placeholders})",
            tuple(type_list),
        ) as cur:
            external_ids = [r[0] for r in await cur.fetchall()]
        if external_ids:
            await self.db.execute(
                f"DELETE FROM work_items WHERE work_item_type IN ({placeholders})",
                tuple(type_list),
            )
            if commit:
                await self.db.commit()
        return external_ids

    async def stats(self) -> StoreStats:
        async with self.db.execute(
            """SELECT COUNT(*),
                      SUM(CASE WHEN needs_tagging = 1 THEN 1 ELSE 0 END),
                      SUM(CASE WHEN needs_tagging = 0 THEN 1 ELSE 0 END)
               FROM work_items"""
        ) as cur:
            row = await cur.fetchone()
        total, pending, tagged = (row[0] or 0, row[1] or 0, row[2] or 0) if row else (0, 0, 0)

        async with self.db.execute(
            """SELECT COUNT(*) FROM work_items
               WHERE EXISTS (SELECT 1 FROM json_each(work_items.tags_json) t WHERE t.value = ?)""",
            (ORPHAN_TAG,),
        ) as cur:
            orphan_row = await cur.fetchone()

        async with self.db.execute("SELECT COUNT(*) FROM work_item_links") as cur:
            link_row = await cur.fetchone()

        async with self.db.execute(
            "SELECT work_item_type, COUNT(*) FROM work_items GROUP BY work_item_type"
        ) as cur:
            by_type = {(r[0] or ""): r[1] for r in await cur.fetchall()}

        async with self.db.execute(
            "SELECT state, COUNT(*) FROM work_items GROUP BY state"
        ) as cur:
            by_state = {(r[0] or ""): r[1] for r in await cur.fetchall()}

        return StoreStats(
            totalItems=int(total),
            pendingTagging=int(pending),
            taggedItems=int(tagged),
            orphanItems=int(orphan_row[0]) if orphan_row else 0,
            totalLinks=int(link_row[0]) if link_row else 0,
            byType=by_type,
            byState=by_state,
        )

    async def tag_usage(self, limit: int = 200) -> list[dict]:
        async with self.db.execute(
            """SELECT t.value AS tag, COUNT(*) AS usage_count
               FROM work_items, json_each(work_items.tags_json) t
               GROUP BY t.value
               ORDER BY usage_count DESC, tag
               LIMIT ?""",
            (max(1, int(limit)),),
        ) as cur:
            return [{"tagName": r["tag"], "usageCount": r["usage_count"]} for r in await cur.fetchall()]
