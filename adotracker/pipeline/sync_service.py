"""Incremental Azure DevOps → local store sync.

Fetches the remote snapshot once, reconciles it batch by batch against the
local store and flushes each batch (items + relation edges) as one commit.
Only one sync runs at a time; a concurrent request gets the in-flight run.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional

from adotracker import config
from adotracker.connectors.base import RemoteSource
from adotracker.db.repositories.base import RelationRepository, WorkItemRepository
from adotracker.models import ItemError, SyncRun, SyncStatus
from adotracker.observability import record_item_failure, record_sync_run, start_span
from adotracker.pipeline.audit_log import AuditLog
from adotracker.pipeline.coordinator import PipelineCoordinator
from adotracker.pipeline.reconcile import build_type_index, reconcile

logger = logging.getLogger("adotracker.sync")


def _changed_date(raw: dict) -> str:
    return str((raw.get("fields") or {}).get("System.ChangedDate") or "")


class SyncService:
    def __init__(
        self,
        items: WorkItemRepository,
        relations: RelationRepository,
        audit: AuditLog,
        source: RemoteSource,
        coordinator: PipelineCoordinator,
        *,
        default_project: Optional[str] = None,
        batch_size: Optional[int] = None,
        max_items: Optional[int] = None,
        excluded_types: Optional[Iterable[str]] = None,
    ):
        self.items = items
        self.relations = relations
        self.audit = audit
        self.source = source
        self.coordinator = coordinator
        self.default_project = default_project if default_project is not None else config.ADO_PROJECT
        self.batch_size = max(1, batch_size or config.SYNC_BATCH_SIZE)
        self.max_items = max_items if max_items is not None else config.SYNC_MAX_ITEMS
        self.excluded_types = set(
            excluded_types if excluded_types is not None else config.EXCLUDED_WORK_ITEM_TYPES
        )
        self._current: Optional[SyncRun] = None
        self._last_result: Optional[SyncRun] = None

    @property
    def in_progress(self) -> bool:
        return self.coordinator.sync_gate.in_progress

    @property
    def last_result(self) -> Optional[SyncRun]:
        return self._last_result

    async def sync(
        self,
        project: Optional[str] = None,
        *,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        max_items: Optional[int] = None,
        trigger: str = "api",
    ) -> SyncRun:
        gate = self.coordinator.sync_gate
        if not gate.try_acquire():
            logger.info("Sync already in progress; returning the in-flight run")
            current = self._current or self._last_result or SyncRun(status="running")
            return current.model_copy(deep=True)
        try:
            return await self._run(
                project or self.default_project,
                from_date=from_date,
                to_date=to_date,
                max_items=max_items if max_items is not None else self.max_items,
                trigger=trigger,
            )
        finally:
            self._current = None
            gate.release()

    async def import_historical(
        self,
        project: Optional[str] = None,
        *,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        batch_size: int = 500,
    ) -> SyncRun:
        """One-off backfill: a sync bounded by ``from_date`` and ``batch_size`` items."""
        return await self.sync(
            project,
            from_date=from_date,
            to_date=to_date,
            max_items=batch_size,
            trigger="import",
        )

    async def get_status(self) -> SyncStatus:
        return await self.audit.sync_status(in_progress=self.in_progress)

    async def get_history(self, limit: int = 10) -> list[dict]:
        return await self.audit.history("sync", limit)

    async def _run(
        self,
        project: str,
        *,
        from_date: Optional[str],
        to_date: Optional[str],
        max_items: int,
        trigger: str,
    ) -> SyncRun:
        started = time.monotonic()
        run = SyncRun(
            status="running",
            projectName=project,
            trigger=trigger,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        self._current = run
        progress = self.coordinator.sync_progress
        progress.begin("sync", phase="fetching")
        op_id = await self.coordinator.start_operation(
            "sync", trigger, {"project": project, "fromDate": from_date or "", "maxItems": max_items}
        )
        logger.info("Sync started (project=%s from=%s max=%s)", project, from_date or "-", max_items)

        try:
            with start_span("adotracker.sync", {"project": project, "trigger": trigger}):
                await self._fetch_and_reconcile(run, project, from_date, to_date, max_items, op_id)
            run.status = "success"
        except Exception as exc:
            # Batches flushed before the failure stay committed; the failing one was rolled back.
            logger.error("Sync failed (project=%s): %s", project, exc)
            run.status = "failed"
            run.errors.append(ItemError(error=str(exc)))

        run.durationMs = int((time.monotonic() - started) * 1000)
        try:
            async with self.coordinator.store_lock:
                stored = await self.audit.record(run)
        finally:
            progress.finish(run.model_dump())
            await self.coordinator.finish_operation(
                op_id,
                status="completed" if run.status == "success" else "failed",
                stats={
                    "itemsFetched": run.itemsFetched,
                    "itemsAdded": run.itemsAdded,
                    "itemsUpdated": run.itemsUpdated,
                    "itemsSkipped": run.itemsSkipped,
                    "itemsFailed": run.itemsFailed,
                    "edgesRecorded": run.edgesRecorded,
                },
                error=run.errors[-1].error if run.status == "failed" and run.errors else "",
            )
        self._last_result = stored
        record_sync_run(
            stored.status, stored.itemsAdded, stored.itemsUpdated, stored.itemsSkipped,
            stored.durationMs, project,
        )
        logger.info(
            "Sync finished status=%s fetched=%d added=%d updated=%d skipped=%d failed=%d edges=%d (%dms)",
            stored.status, stored.itemsFetched, stored.itemsAdded, stored.itemsUpdated,
            stored.itemsSkipped, stored.itemsFailed, stored.edgesRecorded, stored.durationMs,
        )
        return stored

    async def _fetch_and_reconcile(
        self,
        run: SyncRun,
        project: str,
        from_date: Optional[str],
        to_date: Optional[str],
        max_items: int,
        op_id: str,
    ) -> None:
        progress = self.coordinator.sync_progress
        remote = await self.source.fetch_remote_items(project, from_date=from_date, max_items=max_items)
        if to_date:
            remote = [raw for raw in remote if not _changed_date(raw) or _changed_date(raw) <= to_date]
        run.itemsFetched = len(remote)

        snapshot = await self.items.snapshot()
        type_index = build_type_index(remote, snapshot)
        progress.set_phase("processing", total=len(remote))
        await self.coordinator.update_operation(
            op_id, phase="processing", counters={"itemsFetched": len(remote)}
        )

        def on_item(label: str, ok: bool) -> None:
            progress.advance(label, succeeded=ok)
            if not ok:
                record_item_failure("reconcile")

        for start in range(0, len(remote), self.batch_size):
            batch = remote[start:start + self.batch_size]
            async with self.coordinator.store_lock:
                # A tagging run may have written these rows since the previous batch.
                snapshot.update(
                    await self.items.get_many(str(raw["id"]) for raw in batch if raw.get("id") is not None)
                )
                result = reconcile(
                    batch,
                    snapshot,
                    excluded_types=self.excluded_types,
                    type_index=type_index,
                    on_item=on_item,
                )
                try:
                    await self.items.upsert_many(result.to_upsert, commit=False)
                    inserted = await self.relations.add_many(result.edges, commit=False)
                    await self.items.flush()
                    await self.relations.flush()
                except Exception:
                    await self.items.rollback()
                    raise

            for item in result.to_upsert:
                snapshot[item.externalId] = item
            run.itemsAdded += result.stats.added
            run.itemsUpdated += result.stats.updated
            run.itemsSkipped += result.stats.skipped
            run.itemsFailed += result.stats.failed
            run.edgesRecorded += inserted
            run.errors.extend(result.errors)

            await self.coordinator.update_operation(
                op_id,
                counters={
                    "processed": min(start + len(batch), len(remote)),
                    "itemsAdded": run.itemsAdded,
                    "itemsUpdated": run.itemsUpdated,
                    "itemsSkipped": run.itemsSkipped,
                    "itemsFailed": run.itemsFailed,
                },
            )
            logger.debug(
                "Flushed batch %d-%d (%d upserts, %d new edges)",
                start + 1, start + len(batch), len(result.to_upsert), inserted,
            )
