"""Append-only audit log of sync / tag / retag runs."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from adotracker.db.repositories.base import RunLogRepository
from adotracker.models import RunRecord, SyncRun, SyncStatus

logger = logging.getLogger("adotracker.audit")

NEVER_RUN = "never"


class AuditLog:
    def __init__(self, repo: RunLogRepository):
        self.repo = repo

    async def record(self, run: RunRecord) -> RunRecord:
        """Persist a terminal run and return a copy carrying its log id."""
        if run.status == "running":
            raise ValueError("Only terminal runs can be recorded")
        stored = run.model_copy(deep=True)
        if not stored.timestamp:
            stored.timestamp = datetime.now(timezone.utc).isoformat()
        stored.id = await self.repo.record(stored)
        logger.info(
            "Audit %s run #%s recorded (status=%s, errors=%d, %dms)",
            stored.kind, stored.id, stored.status, len(stored.errors), stored.durationMs,
        )
        return stored

    async def history(self, kind: str, limit: int = 10) -> list[dict]:
        return await self.repo.history(kind, limit)

    async def latest(self, kind: str) -> Optional[dict]:
        return await self.repo.latest(kind)

    async def sync_status(self, *, in_progress: bool = False) -> SyncStatus:
        latest = await self.repo.latest("sync")
        if latest is None:
            return SyncStatus(lastSync=None, status=NEVER_RUN, inProgress=in_progress)
        return SyncStatus(
            lastSync=SyncRun.model_validate(latest),
            status=latest.get("status") or NEVER_RUN,
            inProgress=in_progress,
        )
