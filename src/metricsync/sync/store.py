"""
SQLModel-backed stores: sync configuration/status/history and metric rows.

Sessions are opened per call and closed before returning. Objects handed
back are detached but fully loaded (configs come with their spreadsheet
entries and sheets), so callers can read them freely without a session.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Hashable, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from metricsync.models.metrics import DailyMetric, IndividualRecord
from metricsync.models.sync import (
    ScopeType,
    SheetConfig,
    SpreadsheetEntry,
    SyncConfig,
    SyncHistory,
    SyncMode,
    SyncStatus,
    utcnow,
)
from metricsync.sync.errors import PersistError
from metricsync.sync.reconciler import CanonicalRecord, MetricValue, RecordValue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RowOrigin:
    """Where a batch of rows came from; stamped onto every stored row."""

    spreadsheet_id: str
    sheet_name: str
    source: str = "google_sheets"


# ─── Config store ─────────────────────────────────────────────────────────────

class ConfigStore:
    """Persists SyncConfig trees, their status transitions and run history."""

    def __init__(self, engine):
        self.engine = engine

    def _config_query(self):
        return select(SyncConfig).options(
            selectinload(SyncConfig.entries).selectinload(SpreadsheetEntry.sheets)
        )

    def get_config(self, project_id: str, scope_type: ScopeType) -> Optional[SyncConfig]:
        with Session(self.engine) as s:
            return s.exec(
                self._config_query().where(
                    SyncConfig.project_id == project_id,
                    SyncConfig.scope_type == ScopeType(scope_type),
                )
            ).first()

    def list_configs(self, auto_sync_only: bool = False) -> List[SyncConfig]:
        query = self._config_query()
        if auto_sync_only:
            query = query.where(SyncConfig.auto_sync_enabled == True)  # noqa: E712
        with Session(self.engine) as s:
            return list(s.exec(query.order_by(SyncConfig.id)).all())

    def save_config(self, config: SyncConfig) -> SyncConfig:
        """
        Insert or replace the config for (project_id, scope_type).

        The spreadsheet/sheet tree is replaced wholesale. Status fields and
        timestamps of an existing row are preserved, since only sync runs
        move those.
        """
        entries = [_clone_entry(e, position=i) for i, e in enumerate(config.entries)]

        with Session(self.engine) as s:
            existing = s.exec(
                select(SyncConfig).where(
                    SyncConfig.project_id == config.project_id,
                    SyncConfig.scope_type == ScopeType(config.scope_type),
                )
            ).first()

            if existing:
                existing.name = config.name
                existing.auto_sync_enabled = config.auto_sync_enabled
                existing.sync_interval = config.sync_interval
                existing.updated_at = utcnow()
                existing.entries = []
                s.flush()
                existing.entries = entries
                target = existing
            else:
                target = SyncConfig(
                    project_id=config.project_id,
                    scope_type=ScopeType(config.scope_type),
                    name=config.name,
                    auto_sync_enabled=config.auto_sync_enabled,
                    sync_interval=config.sync_interval,
                )
                target.entries = entries
                s.add(target)
            s.commit()

        logger.info(
            "Saved %s sync config for project %s (%d spreadsheet(s))",
            ScopeType(config.scope_type).value, config.project_id, len(entries),
        )
        return self.get_config(config.project_id, config.scope_type)

    def delete_config(self, project_id: str, scope_type: ScopeType) -> bool:
        with Session(self.engine) as s:
            existing = s.exec(
                select(SyncConfig).where(
                    SyncConfig.project_id == project_id,
                    SyncConfig.scope_type == ScopeType(scope_type),
                )
            ).first()
            if not existing:
                return False
            s.delete(existing)
            s.commit()
        return True

    def update_status(
        self,
        config_id: int,
        status: SyncStatus,
        *,
        last_sync_at: Optional[datetime] = None,
        next_sync_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Move a config to `status`.

        success clears last_sync_error; error records `error`; syncing and
        idle leave the previous error text in place.
        """
        with Session(self.engine) as s:
            cfg = s.get(SyncConfig, config_id)
            if cfg is None:
                logger.warning("update_status: sync config %s no longer exists", config_id)
                return
            cfg.sync_status = SyncStatus(status)
            if last_sync_at is not None:
                cfg.last_sync_at = last_sync_at
            if next_sync_at is not None:
                cfg.next_sync_at = next_sync_at
            if cfg.sync_status == SyncStatus.SUCCESS:
                cfg.last_sync_error = None
            elif cfg.sync_status == SyncStatus.ERROR:
                cfg.last_sync_error = error or "Unknown error"
            cfg.updated_at = utcnow()
            s.add(cfg)
            s.commit()

    def mark_sheet_synced(self, sheet_config_id: int, headers: Sequence[str], at: datetime) -> None:
        with Session(self.engine) as s:
            sheet = s.get(SheetConfig, sheet_config_id)
            if sheet is None:
                return
            sheet.last_synced_at = at
            if headers:
                sheet.column_headers = [str(h) for h in headers]
            s.add(sheet)
            s.commit()

    def append_history(self, row: SyncHistory) -> SyncHistory:
        with Session(self.engine) as s:
            s.add(row)
            s.commit()
            s.refresh(row)
        return row

    def list_history(
        self,
        project_id: str,
        scope_type: Optional[ScopeType] = None,
        limit: int = 10,
    ) -> List[SyncHistory]:
        query = select(SyncHistory).where(SyncHistory.project_id == project_id)
        if scope_type is not None:
            query = query.where(SyncHistory.scope_type == ScopeType(scope_type))
        query = query.order_by(SyncHistory.started_at.desc(), SyncHistory.id.desc()).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(query).all())


def _clone_entry(entry: SpreadsheetEntry, position: int) -> SpreadsheetEntry:
    """Fresh, session-free copy of an entry tree (ids dropped, positions fixed)."""
    clone = SpreadsheetEntry(
        position=position,
        spreadsheet_id=entry.spreadsheet_id,
        spreadsheet_name=entry.spreadsheet_name,
        is_active=entry.is_active,
        sync_mode=SyncMode(entry.sync_mode),
        record_type=entry.record_type,
    )
    clone.sheets = [
        SheetConfig(
            position=j,
            sheet_id=sheet.sheet_id,
            sheet_name=sheet.sheet_name,
            is_selected=sheet.is_selected,
            column_headers=list(sheet.column_headers or []),
            column_mappings=dict(sheet.column_mappings or {}),
            last_synced_at=sheet.last_synced_at,
        )
        for j, sheet in enumerate(entry.sheets)
    ]
    return clone


# ─── Metrics store ────────────────────────────────────────────────────────────

class MetricsStore:
    """Reads dedup keys and applies reconciled inserts/updates, row by row."""

    def __init__(self, engine):
        self.engine = engine

    def read_existing_keys(
        self,
        project_id: str,
        mode: SyncMode,
        date_range: Optional[Tuple[date, date]] = None,
        record_ids: Optional[Iterable[str]] = None,
    ) -> Set[Hashable]:
        """
        Return the dedup keys already stored for `project_id`.

        daily_aggregate keys are (metric_date, metric_key), narrowed to
        `date_range` when given. individual_records keys are record ids,
        narrowed to `record_ids` when given. Individual records are never
        narrowed by date, because a record whose date was edited in the sheet
        must still be found.
        """
        mode = SyncMode(mode)
        with Session(self.engine) as s:
            if mode == SyncMode.DAILY_AGGREGATE:
                query = select(DailyMetric.metric_date, DailyMetric.metric_key).where(
                    DailyMetric.project_id == project_id
                )
                if date_range is not None:
                    start, end = date_range
                    query = query.where(DailyMetric.metric_date >= start, DailyMetric.metric_date <= end)
                return {(d, k) for d, k in s.exec(query).all()}

            query = select(IndividualRecord.record_id).where(IndividualRecord.project_id == project_id)
            if record_ids is not None:
                ids = list(record_ids)
                if not ids:
                    return set()
                query = query.where(IndividualRecord.record_id.in_(ids))
            return set(s.exec(query).all())

    def insert_rows(self, project_id: str, records: Sequence[CanonicalRecord], origin: RowOrigin) -> int:
        """Insert `records` in order. Raises PersistError carrying the committed count."""
        return self._apply(project_id, records, origin, update=False)

    def update_rows(self, project_id: str, records: Sequence[CanonicalRecord], origin: RowOrigin) -> int:
        """Overwrite stored rows by dedup key. Raises PersistError carrying the committed count."""
        return self._apply(project_id, records, origin, update=True)

    def _apply(self, project_id, records, origin, *, update: bool) -> int:
        committed = 0
        with Session(self.engine) as s:
            for record in records:
                try:
                    row = self._find(s, project_id, record) if update else None
                    s.add(_to_row(project_id, record, origin, row))
                    s.commit()
                except SQLAlchemyError as exc:
                    s.rollback()
                    verb = "update" if update else "insert"
                    raise PersistError(
                        f"Failed to {verb} row {committed + 1} of {len(records)}: {exc}",
                        committed_inserted=0 if update else committed,
                        committed_updated=committed if update else 0,
                    ) from exc
                committed += 1
        return committed

    @staticmethod
    def _find(s: Session, project_id: str, record: CanonicalRecord):
        if isinstance(record, MetricValue):
            return s.exec(
                select(DailyMetric).where(
                    DailyMetric.project_id == project_id,
                    DailyMetric.metric_date == record.metric_date,
                    DailyMetric.metric_key == record.metric_key,
                )
            ).first()
        return s.exec(
            select(IndividualRecord).where(
                IndividualRecord.project_id == project_id,
                IndividualRecord.record_id == record.record_id,
            )
        ).first()


def _to_row(project_id: str, record: CanonicalRecord, origin: RowOrigin, row=None):
    """Build (row is None) or overwrite (row given) the stored row for `record`."""
    now = utcnow()
    if isinstance(record, MetricValue):
        row = row or DailyMetric(
            project_id=project_id, metric_date=record.metric_date, metric_key=record.metric_key
        )
        row.metric_name = record.metric_name
        row.value = record.value
        row.is_custom = record.is_custom
    elif isinstance(record, RecordValue):
        row = row or IndividualRecord(
            project_id=project_id, record_id=record.record_id, record_date=record.record_date
        )
        row.record_date = record.record_date
        row.record_type = record.record_type
        row.amount = record.amount
        row.status = record.status
        row.record_data = dict(record.record_data)
    else:
        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    row.source = origin.source
    row.spreadsheet_id = origin.spreadsheet_id
    row.sheet_name = origin.sheet_name
    row.synced_at = now
    return row
