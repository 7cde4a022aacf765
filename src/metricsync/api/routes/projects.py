"""Per-project routes: sync configs, manual sync trigger and run history."""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from metricsync.api.deps import get_sync_service
from metricsync.models.sync import (
    HistoryStatus,
    ScopeType,
    SheetConfig,
    SpreadsheetEntry,
    SyncConfig,
    SyncMode,
    SyncStatus,
    SyncType,
)
from metricsync.sync.errors import ConfigError, ConfigNotFoundError, JobAlreadyRunningError
from metricsync.sync.service import SyncService

router = APIRouter()


# ─── Schemas ──────────────────────────────────────────────────────────────────

class ColumnMapping(BaseModel):
    metricKey: str = ""
    metricName: str = ""
    isCustom: bool = False
    valueType: Optional[Literal["number", "text", "date"]] = None


class SheetConfigBody(BaseModel):
    sheet_id: str = ""
    sheet_name: str
    is_selected: bool = True
    column_mappings: Dict[str, ColumnMapping] = {}


class SheetConfigResponse(SheetConfigBody):
    column_headers: List[str] = []
    last_synced_at: Optional[datetime] = None


class SpreadsheetBody(BaseModel):
    spreadsheet_id: str
    spreadsheet_name: str = ""
    is_active: bool = True
    sync_mode: SyncMode = SyncMode.DAILY_AGGREGATE
    record_type: Optional[str] = None
    sheets: List[SheetConfigBody] = []


class SpreadsheetResponse(SpreadsheetBody):
    sheets: List[SheetConfigResponse] = []


class SyncConfigBody(BaseModel):
    name: str = ""
    auto_sync_enabled: bool = False
    sync_interval: int = 24  # hours for single, minutes for multi
    spreadsheets: List[SpreadsheetBody] = []

    def to_model(self, project_id: str, scope_type: ScopeType) -> SyncConfig:
        config = SyncConfig(
            project_id=project_id,
            scope_type=scope_type,
            name=self.name,
            auto_sync_enabled=self.auto_sync_enabled,
            sync_interval=self.sync_interval,
        )
        entries = []
        for i, body in enumerate(self.spreadsheets):
            entry = SpreadsheetEntry(
                position=i,
                spreadsheet_id=body.spreadsheet_id,
                spreadsheet_name=body.spreadsheet_name,
                is_active=body.is_active,
                sync_mode=body.sync_mode,
                record_type=body.record_type,
            )
            entry.sheets = [
                SheetConfig(
                    position=j,
                    sheet_id=sheet.sheet_id,
                    sheet_name=sheet.sheet_name,
                    is_selected=sheet.is_selected,
                    column_mappings={
                        col: m.model_dump(exclude_none=True) for col, m in sheet.column_mappings.items()
                    },
                )
                for j, sheet in enumerate(body.sheets)
            ]
            entries.append(entry)
        config.entries = entries
        return config


class SyncConfigResponse(BaseModel):
    project_id: str
    scope_type: ScopeType
    name: str
    auto_sync_enabled: bool
    sync_interval: int
    interval_minutes: int
    sync_status: SyncStatus
    last_sync_at: Optional[datetime]
    next_sync_at: Optional[datetime]
    last_sync_error: Optional[str]
    spreadsheets: List[SpreadsheetResponse]

    @classmethod
    def from_model(cls, config: SyncConfig) -> "SyncConfigResponse":
        return cls(
            project_id=config.project_id,
            scope_type=config.scope_type,
            name=config.name,
            auto_sync_enabled=config.auto_sync_enabled,
            sync_interval=config.sync_interval,
            interval_minutes=config.interval_minutes,
            sync_status=config.sync_status,
            last_sync_at=config.last_sync_at,
            next_sync_at=config.next_sync_at,
            last_sync_error=config.last_sync_error,
            spreadsheets=[
                SpreadsheetResponse(
                    spreadsheet_id=e.spreadsheet_id,
                    spreadsheet_name=e.spreadsheet_name,
                    is_active=e.is_active,
                    sync_mode=e.sync_mode,
                    record_type=e.record_type,
                    sheets=[
                        SheetConfigResponse(
                            sheet_id=s.sheet_id,
                            sheet_name=s.sheet_name,
                            is_selected=s.is_selected,
                            column_mappings=s.column_mappings or {},
                            column_headers=s.column_headers or [],
                            last_synced_at=s.last_synced_at,
                        )
                        for s in e.sheets
                    ],
                )
                for e in config.entries
            ],
        )


class SheetResultResponse(BaseModel):
    spreadsheet_id: str
    sheet_name: str
    ok: bool
    rows_processed: int
    inserted: int
    updated: int
    skipped: int
    field_errors: int
    error: Optional[str]
    error_kind: Optional[str]
    fatal: bool


class SyncResultResponse(BaseModel):
    project_id: str
    scope_type: ScopeType
    sync_type: SyncType
    success: bool
    error: Optional[str]
    started_at: datetime
    completed_at: datetime
    sheets_synced: int
    rows_processed: int
    rows_inserted: int
    rows_updated: int
    rows_skipped: int
    history_id: Optional[int]
    sheets: List[SheetResultResponse]


class HistoryResponse(BaseModel):
    id: int
    scope_type: ScopeType
    sync_type: SyncType
    status: HistoryStatus
    started_at: datetime
    completed_at: Optional[datetime]
    sheets_synced: int
    rows_processed: int
    rows_inserted: int
    rows_updated: int
    rows_skipped: int
    error_message: Optional[str]
    details: Dict[str, Any] = {}


# ─── Configs ──────────────────────────────────────────────────────────────────

@router.get("/{project_id}/configs/{scope_type}", response_model=SyncConfigResponse)
def get_config(project_id: str, scope_type: ScopeType, service: SyncService = Depends(get_sync_service)):
    try:
        return SyncConfigResponse.from_model(service.get_config(project_id, scope_type))
    except ConfigNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.put("/{project_id}/configs/{scope_type}", response_model=SyncConfigResponse)
async def save_config(
    project_id: str,
    scope_type: ScopeType,
    body: SyncConfigBody,
    service: SyncService = Depends(get_sync_service),
):
    """Create or replace a sync config; arms or disarms its job to match auto_sync_enabled."""
    try:
        saved = await service.save_config(body.to_model(project_id, scope_type))
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return SyncConfigResponse.from_model(saved)


@router.delete("/{project_id}/configs/{scope_type}")
async def delete_config(project_id: str, scope_type: ScopeType, service: SyncService = Depends(get_sync_service)):
    if not await service.delete_config(project_id, scope_type):
        raise HTTPException(status_code=404, detail="Sync config not found")
    return {"message": "Sync config deleted", "project_id": project_id, "scope_type": scope_type.value}


# ─── Sync runs ────────────────────────────────────────────────────────────────

@router.post("/{project_id}/sync/{scope_type}", response_model=SyncResultResponse)
async def trigger_sync(project_id: str, scope_type: ScopeType, service: SyncService = Depends(get_sync_service)):
    """
    Run a sync now and wait for its result.

    409 while a run for the same (project, scope) is in flight, scheduled or manual.
    """
    try:
        result = await service.trigger_manual_sync(project_id, scope_type)
    except JobAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ConfigNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return result.to_dict()


@router.get("/{project_id}/history", response_model=List[HistoryResponse])
def sync_history(
    project_id: str,
    scope_type: Optional[ScopeType] = None,
    limit: Optional[int] = None,
    service: SyncService = Depends(get_sync_service),
):
    """Most recent runs first."""
    return [HistoryResponse.model_validate(h, from_attributes=True)
            for h in service.get_history(project_id, scope_type, limit=limit)]
