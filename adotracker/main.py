"""ADO Tracker FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adotracker import __version__, config
from adotracker.connectors import AzureDevOpsClient
from adotracker.db import connection, migrations
from adotracker.observability import initialize as initialize_observability, shutdown as shutdown_observability
from adotracker.pipeline.service import TrackerService
from adotracker.routers.pipeline import progress_router, retag_router, sync_router, tags_router
from adotracker.tagging import build_tag_generator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("adotracker")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ADO Tracker backend starting up")
    initialize_observability(app)

    db = await connection.get_connection()
    await migrations.run_migrations(db)

    source = AzureDevOpsClient()
    tracker = TrackerService.build(db, source, build_tag_generator())
    app.state.tracker = tracker

    if config.STARTUP_SYNC_ENABLED and source.is_configured and config.ADO_PROJECT:
        async def _run_startup_pipeline() -> None:
            delay = max(0, config.STARTUP_SYNC_DELAY_SECONDS)
            if delay > 0:
                await asyncio.sleep(delay)
            await tracker.sync(trigger="startup")
            if config.STARTUP_BACKGROUND_TAGGING:
                tracker.start_background_tagging()

        # Run in background so startup is not blocked; keep the reference to cancel on shutdown.
        app.state.startup_task = asyncio.create_task(_run_startup_pipeline())
    elif config.STARTUP_BACKGROUND_TAGGING:
        tracker.start_background_tagging()

    yield

    logger.info("ADO Tracker backend shutting down")

    if hasattr(app.state, "startup_task"):
        app.state.startup_task.cancel()
        try:
            await app.state.startup_task
        except asyncio.CancelledError:
            pass

    await tracker.shutdown()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="ADO Tracker API",
    description="Azure DevOps work-item mirror with sync, tagging and re-tagging",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)
app.include_router(tags_router)
app.include_router(retag_router)
app.include_router(progress_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    tracker = getattr(app.state, "tracker", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "syncInProgress": bool(tracker and tracker.sync_service.in_progress),
        "taggingInProgress": bool(tracker and tracker.tagging.in_progress),
    }
