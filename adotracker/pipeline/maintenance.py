"""Store maintenance outside the hot sync path."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from adotracker import config
from adotracker.db.repositories.base import RelationRepository, WorkItemRepository
from adotracker.errors import OperationInProgressError
from adotracker.pipeline.coordinator import PipelineCoordinator

logger = logging.getLogger("adotracker.db")


async def purge_excluded_types(
    items: WorkItemRepository,
    relations: RelationRepository,
    coordinator: PipelineCoordinator,
    types: Optional[Iterable[str]] = None,
) -> dict[str, int]:
    """Delete local rows whose type is excluded, plus every edge touching them.

    Holds the sync gate so it never interleaves with a sync run.
    """
    excluded = sorted(set(types if types is not None else config.EXCLUDED_WORK_ITEM_TYPES))
    gate = coordinator.sync_gate
    if not gate.try_acquire():
        raise OperationInProgressError("sync")
    try:
        async with coordinator.store_lock:
            try:
                deleted_ids = await items.delete_by_types(excluded, commit=False)
                links_deleted = await relations.delete_referencing(deleted_ids, commit=False)
                await items.flush()
                await relations.flush()
            except Exception:
                await items.rollback()
                raise
    finally:
        gate.release()

    logger.info(
        "Purged %d work items of excluded types %s and %d links",
        len(deleted_ids), ", ".join(excluded) or "-", links_deleted,
    )
    return {"itemsDeleted": len(deleted_ids), "linksDeleted": links_deleted}
