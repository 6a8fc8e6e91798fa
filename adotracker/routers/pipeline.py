"""Sync, tagging, re-tag and progress API."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from adotracker.errors import InvalidCriteriaError, OperationInProgressError
from adotracker.models import RetagCriteria

logger = logging.getLogger("adotracker.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])
tags_router = APIRouter(prefix="/api/tags", tags=["tags"])
retag_router = APIRouter(prefix="/api/retag", tags=["retag"])
progress_router = APIRouter(prefix="/api/progress", tags=["progress"])


class SyncRequest(BaseModel):
    projectName: Optional[str] = None
    fromDate: Optional[str] = None
    maxItems: Optional[int] = Field(default=None, ge=1)
    background: bool = False


class ImportRequest(BaseModel):
    projectName: Optional[str] = None
    fromDate: Optional[str] = None
    toDate: Optional[str] = None
    batchSize: int = Field(default=500, ge=1)


class DrainRequest(BaseModel):
    batchSize: Optional[int] = Field(default=None, ge=1)
    concurrency: Optional[int] = Field(default=None, ge=1)
    confidenceThreshold: Optional[float] = Field(default=None, ge=0, le=1)


class BackgroundTaggingRequest(DrainRequest):
    delaySeconds: Optional[float] = Field(default=None, ge=0)


class PurgeRequest(BaseModel):
    types: Optional[list[str]] = None


def _get_service(request: Request):
    service = getattr(request.app.state, "tracker", None)
    if not service:
        raise HTTPException(status_code=503, detail="Tracker service not initialized")
    return service


# ── Sync ───────────────────────────────────────────────────────────


@sync_router.post("")
async def trigger_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Run an incremental sync; a sync already in flight is returned as-is."""
    service = _get_service(request)
    if body.background:
        background_tasks.add_task(
            service.sync,
            body.projectName,
            from_date=body.fromDate,
            max_items=body.maxItems,
            trigger="api",
        )
        return {"status": "accepted", "inProgress": True}
    run = await service.sync(body.projectName, from_date=body.fromDate, max_items=body.maxItems)
    return run.model_dump()


@sync_router.post("/import")
async def import_historical(request: Request, body: ImportRequest):
    service = _get_service(request)
    run = await service.import_historical(
        body.projectName,
        from_date=body.fromDate,
        to_date=body.toDate,
        batch_size=body.batchSize,
    )
    return run.model_dump()


@sync_router.get("/status")
async def get_sync_status(request: Request):
    service = _get_service(request)
    return (await service.get_sync_status()).model_dump()


@sync_router.get("/history")
async def get_sync_history(request: Request, limit: int = Query(10, ge=1, le=200)):
    service = _get_service(request)
    items = await service.get_sync_history(limit)
    return {"count": len(items), "items": items}


@sync_router.post("/purge-excluded")
async def purge_excluded(request: Request, body: PurgeRequest):
    service = _get_service(request)
    try:
        return await service.purge_excluded_types(body.types)
    except OperationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ── Tags ───────────────────────────────────────────────────────────


@tags_router.post("/drain")
async def drain_pending(request: Request, body: DrainRequest):
    service = _get_service(request)
    try:
        run = await service.drain_pending_tags(
            batch_size=body.batchSize,
            concurrency=body.concurrency,
            confidence_threshold=body.confidenceThreshold,
        )
    except OperationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return run.model_dump()


@tags_router.post("/background")
async def start_background_tagging(request: Request, body: BackgroundTaggingRequest):
    service = _get_service(request)
    started = service.start_background_tagging(
        batch_size=body.batchSize,
        concurrency=body.concurrency,
        confidence_threshold=body.confidenceThreshold,
        delay_seconds=body.delaySeconds,
    )
    if not started:
        raise HTTPException(status_code=409, detail="tagging operation already in progress")
    return {"success": True, "message": "Background tagging started"}


@tags_router.post("/background/cancel")
async def cancel_background_tagging(request: Request):
    service = _get_service(request)
    if service.cancel_background_tagging():
        return {"success": True, "message": "Background tagging will stop after the current window"}
    return {"success": False, "message": "No background tagging in progress"}


@tags_router.get("/pending")
async def get_pending_count(request: Request):
    service = _get_service(request)
    return {"pending": await service.get_pending_count()}


@tags_router.get("/usage")
async def get_tag_usage(request: Request, limit: int = Query(200, ge=1, le=1000)):
    service = _get_service(request)
    items = await service.get_tag_usage(limit)
    return {"count": len(items), "items": items}


@tags_router.get("/stats")
async def get_store_stats(request: Request):
    service = _get_service(request)
    return (await service.get_stats()).model_dump()


@tags_router.get("/links/{external_id}")
async def get_links(request: Request, external_id: str):
    service = _get_service(request)
    edges = await service.get_links(external_id)
    return {"count": len(edges), "items": [edge.model_dump() for edge in edges]}


# ── Re-tag ─────────────────────────────────────────────────────────


@retag_router.post("/estimate")
async def estimate_retag(request: Request, criteria: RetagCriteria):
    service = _get_service(request)
    try:
        return (await service.estimate_retag(criteria)).model_dump()
    except InvalidCriteriaError as e:
        raise HTTPException(status_code=400, detail=str(e))


@retag_router.post("/execute")
async def execute_retag(request: Request, criteria: RetagCriteria):
    service = _get_service(request)
    try:
        run = await service.execute_retag(criteria)
    except InvalidCriteriaError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OperationInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return run.model_dump()


@retag_router.post("/cancel")
async def cancel_retag(request: Request):
    service = _get_service(request)
    if service.cancel_retag():
        return {"success": True, "message": "Re-tagging will stop after the current window"}
    return {"success": False, "message": "No re-tagging operation in progress"}


@retag_router.get("/history")
async def get_retag_history(request: Request, limit: int = Query(20, ge=1, le=200)):
    service = _get_service(request)
    items = await service.get_retag_history(limit)
    return {"count": len(items), "items": items}


@retag_router.get("/items")
async def get_retagged_items(request: Request, limit: int = Query(20, ge=1, le=200)):
    service = _get_service(request)
    items = await service.get_retagged_items(limit)
    return {"count": len(items), "items": [item.model_dump() for item in items]}


@retag_router.get("/backup/{external_id}")
async def get_tag_backup(request: Request, external_id: str):
    service = _get_service(request)
    backup = await service.get_tag_backup(external_id)
    if backup is None:
        raise HTTPException(status_code=404, detail=f"No tag backup for work item {external_id}")
    return backup.model_dump()


@retag_router.post("/restore/{external_id}")
async def restore_tag_backup(request: Request, external_id: str):
    service = _get_service(request)
    if not await service.restore_tag_backup(external_id):
        raise HTTPException(status_code=404, detail=f"No tag backup for work item {external_id}")
    return {"success": True, "externalId": external_id}


# ── Progress ───────────────────────────────────────────────────────


@progress_router.get("")
async def get_progress(request: Request):
    service = _get_service(request)
    return (await service.get_progress()).model_dump()
