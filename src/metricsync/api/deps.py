"""Shared FastAPI dependencies."""
from fastapi import Request

from metricsync.sync.service import SyncService


def get_sync_service(request: Request) -> SyncService:
    """The SyncService the app was started with."""
    return request.app.state.sync_service
