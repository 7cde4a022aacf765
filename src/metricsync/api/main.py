"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from metricsync.config import get_settings
from metricsync.api.routes import jobs, projects
from metricsync.sync.service import SyncService


def create_app(service: Optional[SyncService] = None) -> FastAPI:
    """
    Build and return the FastAPI app.

    Args:
        service: Pre-built SyncService (tests pass one bound to an in-memory
            engine). Built from get_engine() at startup when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        sync_service = service
        if sync_service is None:
            from metricsync.db.engine import get_engine
            sync_service = SyncService(get_engine())
        app.state.sync_service = sync_service

        if settings.run_scheduler_in_api:
            await sync_service.restore_jobs()
            sync_service.scheduler.start()
        try:
            yield
        finally:
            sync_service.scheduler.stop()

    app = FastAPI(
        title="Metricsync API",
        description="Scheduled Google Sheets metric sync",
        version="0.1.0",
        lifespan=lifespan,
    )
    if service is not None:
        app.state.sync_service = service

    app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
    app.include_router(projects.router, prefix="/projects", tags=["projects"])

    return app

# Module-level app instance for uvicorn
app = create_app()
