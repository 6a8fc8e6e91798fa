"""Facade over the sync service, tagging engine and store.

This is the surface consumed by the API routers and the CLI scripts.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

import aiosqlite

from adotracker.connectors.base import RemoteSource
from adotracker.db.factory import (
    get_relation_repository,
    get_run_log_repository,
    get_work_item_repository,
)
from adotracker.models import (
    PipelineProgress,
    RelationEdge,
    RetagCriteria,
    RetagEstimate,
    RetaggedItem,
    StoreStats,
    SyncRun,
    SyncStatus,
    TagBackup,
    TagRunResult,
)
from adotracker.pipeline.audit_log import AuditLog
from adotracker.pipeline.coordinator import PipelineCoordinator
from adotracker.pipeline.maintenance import purge_excluded_types
from adotracker.pipeline.sync_service import SyncService
from adotracker.tagging.engine import TaggingEngine
from adotracker.tagging.generators import TagGenerator, categorize_tag

logger = logging.getLogger("adotracker.pipeline")


class TrackerService:
    def __init__(
        self,
        sync_service: SyncService,
        tagging: TaggingEngine,
        coordinator: PipelineCoordinator,
    ):
        self.sync_service = sync_service
        self.tagging = tagging
        self.coordinator = coordinator
        self.items = sync_service.items
        self.relations = sync_service.relations
        self.audit = sync_service.audit

    @classmethod
    def build(
        cls,
        db: aiosqlite.Connection,
        source: RemoteSource,
        generator: TagGenerator,
        *,
        coordinator: Optional[PipelineCoordinator] = None,
        **overrides,
    ) -> "TrackerService":
        """Wire repositories, audit log, sync service and tagging engine on one connection.

        ``overrides`` may carry ``sync_batch_size``, ``max_items``,
        ``excluded_types``, ``default_project``, ``tag_batch_size``,
        ``tag_concurrency``, ``confidence_threshold`` and
        ``background_delay_seconds``.
        """
        coordinator = coordinator or PipelineCoordinator()
        items = get_work_item_repository(db)
        relations = get_relation_repository(db)
        audit = AuditLog(get_run_log_repository(db))
        sync_service = SyncService(
            items,
            relations,
            audit,
            source,
            coordinator,
            default_project=overrides.get("default_project"),
            batch_size=overrides.get("sync_batch_size"),
            max_items=overrides.get("max_items"),
            excluded_types=overrides.get("excluded_types"),
        )
        tagging = TaggingEngine(
            items,
            audit,
            generator,
            coordinator,
            batch_size=overrides.get("tag_batch_size"),
            concurrency=overrides.get("tag_concurrency"),
            confidence_threshold=overrides.get("confidence_threshold"),
            background_delay_seconds=overrides.get("background_delay_seconds"),
        )
        return cls(sync_service, tagging, coordinator)

    # ── Sync ───────────────────────────────────────────────────────

    async def sync(
        self,
        project: Optional[str] = None,
        *,
        from_date: Optional[str] = None,
        max_items: Optional[int] = None,
        trigger: str = "api",
    ) -> SyncRun:
        return await self.sync_service.sync(project, from_date=from_date, max_items=max_items, trigger=trigger)

    async def import_historical(
        self,
        project: Optional[str] = None,
        *,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        batch_size: int = 500,
    ) -> SyncRun:
        return await self.sync_service.import_historical(
            project, from_date=from_date, to_date=to_date, batch_size=batch_size
        )

    async def get_sync_status(self) -> SyncStatus:
        return await self.sync_service.get_status()

    async def get_sync_history(self, limit: int = 10) -> list[dict]:
        return await self.sync_service.get_history(limit)

    # ── Tagging ────────────────────────────────────────────────────

    async def drain_pending_tags(
        self,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
    ) -> TagRunResult:
        return await self.tagging.drain_pending(
            batch_size=batch_size,
            concurrency=concurrency,
            confidence_threshold=confidence_threshold,
        )

    def start_background_tagging(
        self,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        delay_seconds: Optional[float] = None,
    ) -> bool:
        return self.tagging.start_background(
            batch_size=batch_size,
            concurrency=concurrency,
            confidence_threshold=confidence_threshold,
            delay_seconds=delay_seconds,
        )

    def cancel_background_tagging(self) -> bool:
        return self.tagging.cancel_background()

    async def get_pending_count(self) -> int:
        return await self.items.pending_count()

    # ── Re-tag ─────────────────────────────────────────────────────

    async def estimate_retag(self, criteria: RetagCriteria) -> RetagEstimate:
        return await self.tagging.estimate(criteria)

    async def execute_retag(self, criteria: RetagCriteria) -> TagRunResult:
        return await self.tagging.retag(criteria)

    def cancel_retag(self) -> bool:
        return self.tagging.cancel_retag()

    async def get_retag_history(self, limit: int = 20) -> list[dict]:
        return await self.audit.history("retag", limit)

    async def get_retagged_items(self, limit: int = 20) -> list[RetaggedItem]:
        return await self.items.retagged_items(limit)

    async def get_tag_backup(self, external_id: str) -> Optional[TagBackup]:
        return await self.items.get_backup(external_id)

    async def restore_tag_backup(self, external_id: str) -> bool:
        async with self.coordinator.store_lock:
            restored = await self.items.restore_backup(external_id)
        if restored:
            logger.info("Restored tag backup for #%s", external_id)
        return restored

    # ── Progress / store views ─────────────────────────────────────

    async def get_progress(self) -> PipelineProgress:
        return await self.coordinator.progress()

    async def get_stats(self) -> StoreStats:
        return await self.items.stats()

    async def get_tag_usage(self, limit: int = 200) -> list[dict]:
        usage = await self.items.tag_usage(limit)
        return [{**row, "category": categorize_tag(row["tagName"])} for row in usage]

    async def get_links(self, external_id: str) -> list[RelationEdge]:
        return await self.relations.links_for(external_id)

    async def purge_excluded_types(self, types: Optional[Iterable[str]] = None) -> dict[str, int]:
        return await purge_excluded_types(self.items, self.relations, self.coordinator, types)

    async def shutdown(self) -> None:
        await self.tagging.stop()
