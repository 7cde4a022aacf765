"""
SyncOrchestrator: run every selected sheet of one SyncConfig in order.

Sheets run sequentially in the config's (spreadsheet, sheet) order so a
project never has two writers racing on the same dedup keys. A failing sheet
is recorded and the run moves on; the run as a whole is a failure when any
sheet hit a fatal error or when every attempted sheet failed.

Each run writes exactly one SyncHistory row and leaves the config in
success or error, with last_sync_at and next_sync_at set.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from metricsync.models.sync import (
    HistoryStatus,
    ScopeType,
    SyncConfig,
    SyncHistory,
    SyncStatus,
    SyncType,
    utcnow,
)
from metricsync.sync.executor import ERROR_UNEXPECTED, SheetRef, SheetResult, SheetSyncExecutor
from metricsync.sync.store import ConfigStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    project_id: str
    scope_type: ScopeType
    sync_type: SyncType
    success: bool
    started_at: datetime
    completed_at: datetime
    per_sheet_results: List[SheetResult] = field(default_factory=list)
    error: Optional[str] = None
    history_id: Optional[int] = None

    @property
    def ok_results(self) -> List[SheetResult]:
        return [r for r in self.per_sheet_results if r.ok]

    @property
    def sheets_synced(self) -> int:
        return len(self.ok_results)

    @property
    def rows_processed(self) -> int:
        return sum(r.rows_processed for r in self.ok_results)

    @property
    def rows_inserted(self) -> int:
        return sum(r.inserted for r in self.ok_results)

    @property
    def rows_updated(self) -> int:
        return sum(r.updated for r in self.ok_results)

    @property
    def rows_skipped(self) -> int:
        return sum(r.skipped for r in self.ok_results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "scope_type": ScopeType(self.scope_type).value,
            "sync_type": SyncType(self.sync_type).value,
            "success": self.success,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "sheets_synced": self.sheets_synced,
            "rows_processed": self.rows_processed,
            "rows_inserted": self.rows_inserted,
            "rows_updated": self.rows_updated,
            "rows_skipped": self.rows_skipped,
            "history_id": self.history_id,
            "sheets": [r.to_dict() for r in self.per_sheet_results],
        }


def run_succeeded(results: List[SheetResult]) -> bool:
    """No selected sheets is a successful no-op."""
    if any(r.fatal for r in results):
        return False
    if results and all(not r.ok for r in results):
        return False
    return True


def summarize_errors(results: List[SheetResult]) -> Optional[str]:
    failed = [r for r in results if not r.ok]
    if not failed:
        return None
    return "; ".join(f"{r.sheet_name}: {r.error}" for r in failed)


class SyncOrchestrator:
    def __init__(
        self,
        config_store: ConfigStore,
        executor: SheetSyncExecutor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config_store = config_store
        self.executor = executor
        self._clock = clock

    async def run(self, config: SyncConfig, credentials, sync_type: SyncType = SyncType.MANUAL) -> SyncResult:
        """
        Sync every selected sheet of `config` and record the outcome.

        Args:
            config: A fully loaded config (entries and sheets eager-loaded).
            credentials: google-auth credentials for the project, or None.
            sync_type: manual or scheduled, copied into the history row.

        If recording the outcome fails, the config is moved to error with the
        failure text before the exception propagates.
        """
        started = self._clock()
        self.config_store.update_status(config.id, SyncStatus.SYNCING)
        logger.info(
            "Sync %s/%s starting (%s)", config.project_id, ScopeType(config.scope_type).value,
            SyncType(sync_type).value,
        )
        try:
            return await self._run(config, credentials, sync_type, started)
        except Exception as exc:
            logger.warning("Sync %s/%s aborted: %s", config.project_id, ScopeType(config.scope_type).value, exc)
            self._abort(config, exc)
            raise

    async def _run(self, config: SyncConfig, credentials, sync_type: SyncType, started: datetime) -> SyncResult:
        results: List[SheetResult] = []
        for entry, sheet in config.selected_sheets():
            ref = SheetRef(
                spreadsheet_id=entry.spreadsheet_id,
                sheet_name=sheet.sheet_name,
                spreadsheet_name=entry.spreadsheet_name,
                sheet_config_id=sheet.id,
                record_type=entry.record_type,
            )
            result = await self._run_sheet(config.project_id, ref, sheet.column_mappings, entry.sync_mode, credentials)
            results.append(result)
            if result.ok and sheet.id is not None:
                try:
                    self.config_store.mark_sheet_synced(sheet.id, result.headers, self._clock())
                except Exception:
                    logger.exception("Could not record sync time for sheet %s", sheet.sheet_name)

        success = run_succeeded(results)
        error = None if success else summarize_errors(results)
        completed = self._clock()

        sync_result = SyncResult(
            project_id=config.project_id,
            scope_type=config.scope_type,
            sync_type=sync_type,
            success=success,
            started_at=started,
            completed_at=completed,
            per_sheet_results=results,
            error=error,
        )

        history = self.config_store.append_history(SyncHistory(
            config_id=config.id,
            project_id=config.project_id,
            scope_type=config.scope_type,
            sync_type=sync_type,
            started_at=started,
            completed_at=completed,
            status=HistoryStatus.SUCCESS if success else HistoryStatus.ERROR,
            sheets_synced=sync_result.sheets_synced,
            rows_processed=sync_result.rows_processed,
            rows_inserted=sync_result.rows_inserted,
            rows_updated=sync_result.rows_updated,
            rows_skipped=sync_result.rows_skipped,
            error_message=error,
            details={"sheets": [r.to_dict() for r in results]},
        ))
        sync_result.history_id = history.id

        self.config_store.update_status(
            config.id,
            SyncStatus.SUCCESS if success else SyncStatus.ERROR,
            last_sync_at=completed,
            next_sync_at=completed + timedelta(minutes=config.interval_minutes),
            error=error,
        )
        logger.info(
            "Sync %s/%s finished: success=%s, %d/%d sheets, %d inserted, %d updated",
            config.project_id, ScopeType(config.scope_type).value, success,
            sync_result.sheets_synced, len(results), sync_result.rows_inserted, sync_result.rows_updated,
        )
        return sync_result

    async def _run_sheet(self, project_id, ref: SheetRef, mapping, mode, credentials) -> SheetResult:
        try:
            return await self.executor.execute(project_id, ref, mapping or {}, mode, credentials)
        except Exception as exc:
            logger.exception("Executor raised for %s/%s", ref.spreadsheet_id, ref.sheet_name)
            return SheetResult(
                spreadsheet_id=ref.spreadsheet_id,
                sheet_name=ref.sheet_name,
                error=str(exc) or type(exc).__name__,
                error_kind=ERROR_UNEXPECTED,
            )

    def _abort(self, config: SyncConfig, exc: Exception) -> None:
        try:
            self.config_store.update_status(config.id, SyncStatus.ERROR, error=str(exc) or type(exc).__name__)
        except Exception:
            logger.exception("Could not reset sync status for config %s", config.id)
