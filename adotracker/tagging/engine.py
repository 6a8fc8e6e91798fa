"""Tagging engine: pending-queue drain, criteria-driven re-tag and background drain.

Items are processed in windows of ``concurrency``. Each window is gathered to
completion, then its results are written in one flush before the next window
starts. Cancellation is checked between windows only.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from adotracker import config
from adotracker.db.repositories.base import WorkItemRepository
from adotracker.errors import OperationInProgressError
from adotracker.hierarchy import split_hierarchy_tags
from adotracker.models import ItemError, RetagCriteria, RetagEstimate, TagRunResult, WorkItem
from adotracker.observability import record_item_failure, record_tagging, start_span
from adotracker.pipeline.audit_log import AuditLog
from adotracker.pipeline.coordinator import PipelineCoordinator
from adotracker.tagging.generators import TagGenerator

logger = logging.getLogger("adotracker.tagging")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class _WindowOutcome:
    tagged: list[WorkItem] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)


class TaggingEngine:
    def __init__(
        self,
        items: WorkItemRepository,
        audit: AuditLog,
        generator: TagGenerator,
        coordinator: PipelineCoordinator,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        retag_confidence_threshold: Optional[float] = None,
        background_delay_seconds: Optional[float] = None,
    ):
        self.items = items
        self.audit = audit
        self.generator = generator
        self.coordinator = coordinator
        self.batch_size = max(1, batch_size or config.TAG_BATCH_SIZE)
        self.concurrency = max(1, concurrency or config.TAG_CONCURRENCY)
        self.confidence_threshold = (
            confidence_threshold if confidence_threshold is not None else config.TAG_CONFIDENCE_THRESHOLD
        )
        self.retag_confidence_threshold = (
            retag_confidence_threshold
            if retag_confidence_threshold is not None
            else config.RETAG_CONFIDENCE_THRESHOLD
        )
        self.background_delay_seconds = (
            background_delay_seconds
            if background_delay_seconds is not None
            else config.BACKGROUND_TAG_DELAY_SECONDS
        )
        self._cancel_requested = False
        self._active_mode: Optional[str] = None
        self._background_task: Optional[asyncio.Task] = None

    # ── State ──────────────────────────────────────────────────────

    @property
    def in_progress(self) -> bool:
        return self.coordinator.tagging_gate.in_progress

    @property
    def active_mode(self) -> Optional[str]:
        return self._active_mode

    @property
    def background_running(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    def _acquire(self, mode: str) -> None:
        if not self.coordinator.tagging_gate.try_acquire():
            raise OperationInProgressError("retag" if mode != "pending" else "tagging")
        self._cancel_requested = False
        self._active_mode = mode

    def _release(self) -> None:
        self._active_mode = None
        self._cancel_requested = False
        self.coordinator.tagging_gate.release()

    async def _write(self, write, *args, **kwargs):
        async with self.coordinator.store_lock:
            try:
                return await write(*args, **kwargs)
            except Exception:
                await self.items.rollback()
                raise

    # ── Per-item step ──────────────────────────────────────────────

    async def _tag_one(
        self,
        item: WorkItem,
        *,
        confidence_threshold: float,
        preserve_hierarchy: bool,
    ) -> WorkItem:
        generated = (
            await self.generator.generate(item, confidence_threshold=confidence_threshold)
        ).normalized()
        hierarchy, _ = split_hierarchy_tags(item.tags)
        if preserve_hierarchy:
            tags = hierarchy | generated.tags
            scores = {tag: item.confidenceScores[tag] for tag in hierarchy if tag in item.confidenceScores}
            scores.update(generated.confidenceScores)
        else:
            tags = set(generated.tags)
            scores = dict(generated.confidenceScores)
        return item.model_copy(
            update={
                "tags": tags,
                "confidenceScores": {tag: score for tag, score in scores.items() if tag in tags},
                "needsTagging": False,
            }
        )

    async def _guarded_tag_one(
        self,
        item: WorkItem,
        *,
        confidence_threshold: float,
        preserve_hierarchy: bool,
    ) -> WorkItem | ItemError:
        try:
            return await self._tag_one(
                item,
                confidence_threshold=confidence_threshold,
                preserve_hierarchy=preserve_hierarchy,
            )
        except Exception as exc:
            logger.warning("Tagging failed for #%s: %s", item.externalId, exc)
            record_item_failure("tagging")
            return ItemError(externalId=item.externalId, error=str(exc))

    async def _process_window(
        self,
        window: list[WorkItem],
        *,
        confidence_threshold: float,
        preserve_hierarchy: bool,
        backup: bool,
    ) -> _WindowOutcome:
        outcome = _WindowOutcome()
        if backup:
            try:
                await self._write(self.items.backup_tags, window)
            except Exception as exc:
                logger.error("Tag backup failed for a window of %d items: %s", len(window), exc)
                outcome.errors = [
                    ItemError(externalId=item.externalId, error=f"backup failed: {exc}") for item in window
                ]
                return outcome

        results = await asyncio.gather(
            *(
                self._guarded_tag_one(
                    item,
                    confidence_threshold=confidence_threshold,
                    preserve_hierarchy=preserve_hierarchy,
                )
                for item in window
            )
        )
        tagged = [r for r in results if isinstance(r, WorkItem)]
        outcome.errors = [r for r in results if isinstance(r, ItemError)]

        if tagged:
            try:
                await self._write(self.items.apply_tags, tagged, retagged_at=_now() if backup else None)
            except Exception as exc:
                logger.error("Persisting tags failed for a window of %d items: %s", len(tagged), exc)
                outcome.errors.extend(
                    ItemError(externalId=item.externalId, error=f"persist failed: {exc}") for item in tagged
                )
                tagged = []
        outcome.tagged = tagged
        return outcome

    async def _process_items(
        self,
        items: list[WorkItem],
        run: TagRunResult,
        *,
        concurrency: int,
        confidence_threshold: float,
        preserve_hierarchy: bool,
        backup: bool,
        op_id: Optional[str],
    ) -> None:
        progress = self.coordinator.tagging_progress
        for start in range(0, len(items), concurrency):
            if self._cancel_requested:
                run.cancelled = True
                logger.info("Tagging cancelled after %d of %d items", start, len(items))
                return
            window = items[start:start + concurrency]
            outcome = await self._process_window(
                window,
                confidence_threshold=confidence_threshold,
                preserve_hierarchy=preserve_hierarchy,
                backup=backup,
            )
            failed_ids = {error.externalId for error in outcome.errors}
            for item in window:
                progress.advance(item.label, succeeded=item.externalId not in failed_ids)

            run.itemsProcessed += len(window)
            run.tagged += len(outcome.tagged)
            run.failed += len(outcome.errors)
            run.errors.extend(outcome.errors)
            await self.coordinator.update_operation(
                op_id,
                counters={"processed": run.itemsProcessed, "tagged": run.tagged, "failed": run.failed},
            )

    async def _finish_run(self, run: TagRunResult, started: float, op_id: Optional[str]) -> TagRunResult:
        run.durationMs = int((time.monotonic() - started) * 1000)
        try:
            async with self.coordinator.store_lock:
                stored = await self.audit.record(run)
        finally:
            self.coordinator.tagging_progress.finish(run.model_dump())
            await self.coordinator.finish_operation(
                op_id,
                status="cancelled" if run.cancelled else ("completed" if run.status == "success" else "failed"),
                stats={"tagged": run.tagged, "failed": run.failed, "itemsProcessed": run.itemsProcessed},
                error=run.errors[-1].error if run.status == "failed" and run.errors else "",
            )
        record_tagging(run.mode, run.tagged, run.failed, run.durationMs)
        logger.info(
            "%s run finished status=%s selected=%d tagged=%d failed=%d cancelled=%s (%dms)",
            run.kind, run.status, run.itemsSelected, run.tagged, run.failed, run.cancelled, run.durationMs,
        )
        return stored

    # ── Pending drain ──────────────────────────────────────────────

    async def drain_pending(
        self,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        trigger: str = "api",
    ) -> TagRunResult:
        """Tag one batch of the pending queue."""
        self._acquire("pending")
        try:
            return await self._run_pending(
                batch_size=batch_size or self.batch_size,
                concurrency=concurrency or self.concurrency,
                confidence_threshold=(
                    confidence_threshold if confidence_threshold is not None else self.confidence_threshold
                ),
                trigger=trigger,
                continuous=False,
            )
        finally:
            self._release()

    async def _run_pending(
        self,
        *,
        batch_size: int,
        concurrency: int,
        confidence_threshold: float,
        trigger: str,
        continuous: bool,
        delay_seconds: float = 0.0,
    ) -> TagRunResult:
        started = time.monotonic()
        run = TagRunResult(kind="tag", mode="pending", status="running", trigger=trigger, timestamp=_now())
        progress = self.coordinator.tagging_progress
        progress.begin("tag", phase="tagging")
        op_id = await self.coordinator.start_operation(
            "tag", trigger, {"batchSize": batch_size, "continuous": continuous}
        )
        try:
            with start_span("adotracker.tag", {"trigger": trigger, "continuous": continuous}):
                while not self._cancel_requested:
                    batch = await self.items.list_needing_tags(batch_size)
                    if not batch:
                        break
                    run.itemsSelected += len(batch)
                    progress.add_total(len(batch))
                    tagged_before = run.tagged
                    await self._process_items(
                        batch,
                        run,
                        concurrency=concurrency,
                        confidence_threshold=confidence_threshold,
                        preserve_hierarchy=True,
                        backup=False,
                        op_id=op_id,
                    )
                    if not continuous or run.cancelled:
                        break
                    if run.tagged == tagged_before:
                        # Every item failed; the same rows would come back next time.
                        logger.warning("Background tagging made no progress on %d items; stopping", len(batch))
                        break
                    await asyncio.sleep(delay_seconds)
            if self._cancel_requested:
                run.cancelled = True
            run.status = "success"
        except Exception as exc:
            logger.error("Tagging run failed: %s", exc)
            run.status = "failed"
            run.errors.append(ItemError(error=str(exc)))
        return await self._finish_run(run, started, op_id)

    # ── Background drain ───────────────────────────────────────────

    def start_background(
        self,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        confidence_threshold: Optional[float] = None,
        delay_seconds: Optional[float] = None,
    ) -> bool:
        """Start draining the pending queue in the background. Returns False if tagging is busy."""
        if self.background_running:
            return False
        try:
            self._acquire("background")
        except OperationInProgressError:
            return False

        async def _loop() -> None:
            try:
                await self._run_pending(
                    batch_size=batch_size or self.batch_size,
                    concurrency=concurrency or self.concurrency,
                    confidence_threshold=(
                        confidence_threshold if confidence_threshold is not None else self.confidence_threshold
                    ),
                    trigger="background",
                    continuous=True,
                    delay_seconds=(
                        delay_seconds if delay_seconds is not None else self.background_delay_seconds
                    ),
                )
            except Exception:
                logger.exception("Background tagging crashed")
            finally:
                self._release()

        self._background_task = asyncio.create_task(_loop())
        logger.info("Background tagging started")
        return True

    def cancel_background(self) -> bool:
        if not self.background_running:
            return False
        self._cancel_requested = True
        logger.info("Background tagging cancellation requested")
        return True

    async def stop(self) -> None:
        """Cancel background draining and wait for the in-flight window to settle."""
        task = self._background_task
        if task is None or task.done():
            return
        self._cancel_requested = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=30)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Re-tag ─────────────────────────────────────────────────────

    def _effective_criteria(self, criteria: RetagCriteria) -> RetagCriteria:
        if criteria.mode == "lowConfidence" and criteria.confidenceThreshold is None:
            return criteria.model_copy(update={"confidenceThreshold": self.retag_confidence_threshold})
        return criteria

    async def estimate(self, criteria: RetagCriteria) -> RetagEstimate:
        effective = self._effective_criteria(criteria)
        count = await self.items.count_by_criteria(effective)
        return RetagEstimate(estimatedCount=count, mode=effective.mode, criteria=effective)

    async def retag(self, criteria: RetagCriteria, *, trigger: str = "api") -> TagRunResult:
        effective = self._effective_criteria(criteria)
        # Selection runs before the gate so malformed criteria fail fast.
        selected = await self.items.list_by_criteria(effective)
        self._acquire(effective.mode)
        try:
            return await self._run_retag(effective, selected, trigger)
        finally:
            self._release()

    async def _run_retag(
        self,
        criteria: RetagCriteria,
        selected: list[WorkItem],
        trigger: str,
    ) -> TagRunResult:
        started = time.monotonic()
        batch_size = criteria.batchSize or self.batch_size
        concurrency = criteria.concurrency or self.concurrency
        run = TagRunResult(
            kind="retag",
            mode=criteria.mode,
            status="running",
            trigger=trigger,
            timestamp=_now(),
            itemsSelected=len(selected),
        )
        self.coordinator.tagging_progress.begin("retag", phase="tagging", total=len(selected))
        op_id = await self.coordinator.start_operation(
            "retag", trigger, {"criteria": criteria.model_dump(exclude_none=True)}
        )
        logger.info("Retag started (mode=%s, %d items)", criteria.mode, len(selected))
        try:
            with start_span("adotracker.retag", {"mode": criteria.mode, "selected": len(selected)}):
                for start in range(0, len(selected), batch_size):
                    await self._process_items(
                        selected[start:start + batch_size],
                        run,
                        concurrency=concurrency,
                        confidence_threshold=self.confidence_threshold,
                        preserve_hierarchy=criteria.preserveHierarchyTags,
                        backup=True,
                        op_id=op_id,
                    )
                    if run.cancelled:
                        break
            run.status = "success"
        except Exception as exc:
            logger.error("Retag run failed: %s", exc)
            run.status = "failed"
            run.errors.append(ItemError(error=str(exc)))
        return await self._finish_run(run, started, op_id)

    def cancel(self) -> bool:
        """Request cancellation of the active tag/retag run; it stops after the current window."""
        if not self.in_progress:
            return False
        self._cancel_requested = True
        logger.info("Cancellation requested for %s run", self._active_mode or "tagging")
        return True

    def cancel_retag(self) -> bool:
        if self._active_mode in (None, "pending", "background"):
            return False
        return self.cancel()
