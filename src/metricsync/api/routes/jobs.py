"""Scheduled job routes: inspect, arm and disarm recurring syncs."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from metricsync.api.deps import get_sync_service
from metricsync.models.sync import ScopeType
from metricsync.sync.errors import JobNotFoundError, SchedulerError
from metricsync.sync.service import SyncService

router = APIRouter()


class JobStatusResponse(BaseModel):
    project_id: str
    scope_type: ScopeType
    interval_minutes: int
    state: str
    running: bool
    next_fire_at: Optional[datetime]
    last_run_at: Optional[datetime]
    last_success: Optional[bool]
    last_error: Optional[str]
    consecutive_failures: int


class UpsertJobRequest(BaseModel):
    interval_minutes: int = Field(gt=0)


@router.get("", response_model=List[JobStatusResponse])
def list_jobs(service: SyncService = Depends(get_sync_service)):
    """Every armed job, ordered by project."""
    return service.list_jobs()


@router.get("/{project_id}/{scope_type}", response_model=JobStatusResponse)
def get_job(project_id: str, scope_type: ScopeType, service: SyncService = Depends(get_sync_service)):
    try:
        return service.get_job_status(project_id, scope_type)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.put("/{project_id}/{scope_type}", response_model=JobStatusResponse)
async def upsert_job(
    project_id: str,
    scope_type: ScopeType,
    request: UpsertJobRequest,
    service: SyncService = Depends(get_sync_service),
):
    """Arm a job, or change its interval (next fire becomes now + interval)."""
    try:
        return await service.register_or_update_job(project_id, scope_type, request.interval_minutes)
    except SchedulerError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/{project_id}/{scope_type}")
async def remove_job(project_id: str, scope_type: ScopeType, service: SyncService = Depends(get_sync_service)):
    try:
        await service.remove_job(project_id, scope_type)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"message": "Job removed", "project_id": project_id, "scope_type": scope_type.value}
