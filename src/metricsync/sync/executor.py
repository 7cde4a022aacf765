"""
SheetSyncExecutor: sync one worksheet into the metrics store.

Flow for a single sheet:
  1. Check the mapping is usable for the mode (config error otherwise)
  2. Fetch raw rows through the fetcher (bounded by its timeout)
  3. Map every data row (row 1 is the header)
  4. Read existing dedup keys for the batch and reconcile
  5. Persist inserts, then updates, one committed row at a time

Every expected failure comes back as a SheetResult with `error` set. A
fetch failure leaves storage untouched. A persist failure reports exactly
the rows committed before it.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from metricsync.models.sync import SyncMode
from metricsync.sync.errors import FetchError, PersistError
from metricsync.sync.mapper import map_rows, mapping_problems
from metricsync.sync.reconciler import reconcile
from metricsync.sync.store import MetricsStore, RowOrigin

logger = logging.getLogger(__name__)

ERROR_CONFIG = "config"
ERROR_PERSIST = "persist"
ERROR_UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class SheetRef:
    spreadsheet_id: str
    sheet_name: str
    spreadsheet_name: str = ""
    sheet_config_id: Optional[int] = None
    record_type: Optional[str] = None


@dataclass
class SheetResult:
    spreadsheet_id: str
    sheet_name: str
    rows_processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    field_errors: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    fatal: bool = False
    headers: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("headers")
        data["ok"] = self.ok
        return data


class SheetSyncExecutor:
    """Runs fetch, map, reconcile and persist for one (spreadsheet, sheet)."""

    def __init__(self, fetcher, metrics_store: MetricsStore, source: str = "google_sheets"):
        """
        Args:
            fetcher: Anything with `async fetch_rows(spreadsheet_id, sheet_name, credentials)`
                (GoogleSheetsFetcher, or an AsyncMock in tests).
            metrics_store: Where reconciled rows are written.
            source: Value stamped into every stored row's `source` column.
        """
        self.fetcher = fetcher
        self.metrics_store = metrics_store
        self.source = source

    async def execute(
        self,
        project_id: str,
        sheet: SheetRef,
        mapping: Mapping[str, Mapping[str, Any]],
        mode: SyncMode,
        credentials,
    ) -> SheetResult:
        result = SheetResult(spreadsheet_id=sheet.spreadsheet_id, sheet_name=sheet.sheet_name)
        mode = SyncMode(mode)

        problems = mapping_problems(mapping, mode)
        if problems:
            # Saved configs are validated, so this only happens when storage was edited by hand
            return self._fail(result, "; ".join(problems), ERROR_CONFIG, fatal=True)

        try:
            raw = await self.fetcher.fetch_rows(sheet.spreadsheet_id, sheet.sheet_name, credentials)
        except FetchError as exc:
            return self._fail(result, str(exc), exc.kind.value, fatal=exc.fatal)

        if not raw:
            logger.info("Sheet %s/%s is empty", sheet.spreadsheet_id, sheet.sheet_name)
            return result

        result.headers = [str(h) for h in raw[0]]
        data_rows = raw[1:]
        mapped = map_rows(data_rows, mapping, mode)
        result.rows_processed = len(data_rows)
        result.skipped = mapped.skipped
        result.field_errors = len(mapped.field_errors)
        for err in mapped.field_errors[:5]:
            logger.debug("%s column %s: %s", sheet.sheet_name, err.column, err.message)

        origin = RowOrigin(sheet.spreadsheet_id, sheet.sheet_name, self.source)
        try:
            existing = self._existing_keys(project_id, mode, mapped.rows)
            plan = reconcile(mapped.rows, existing, mode, record_type=sheet.record_type)
            result.inserted = self.metrics_store.insert_rows(project_id, plan.to_insert, origin)
            result.updated = self.metrics_store.update_rows(project_id, plan.to_update, origin)
        except PersistError as exc:
            result.inserted += exc.committed_inserted
            result.updated += exc.committed_updated
            return self._fail(result, str(exc), ERROR_PERSIST)
        except SQLAlchemyError as exc:
            return self._fail(result, f"Could not read stored keys: {exc}", ERROR_PERSIST)
        except Exception as exc:
            logger.exception("Unexpected failure syncing %s/%s", sheet.spreadsheet_id, sheet.sheet_name)
            return self._fail(result, str(exc) or type(exc).__name__, ERROR_UNEXPECTED)

        logger.info(
            "Synced %s/%s: %d rows, %d inserted, %d updated, %d skipped",
            sheet.spreadsheet_id, sheet.sheet_name,
            result.rows_processed, result.inserted, result.updated, result.skipped,
        )
        return result

    def _existing_keys(self, project_id: str, mode: SyncMode, rows):
        if mode == SyncMode.INDIVIDUAL_RECORDS:
            return self.metrics_store.read_existing_keys(
                project_id, mode, record_ids={r.unique_id for r in rows}
            )
        dates = [r.date for r in rows]
        date_range = (min(dates), max(dates)) if dates else None
        if date_range is None:
            return set()
        return self.metrics_store.read_existing_keys(project_id, mode, date_range=date_range)

    @staticmethod
    def _fail(result: SheetResult, message: str, kind: str, fatal: bool = False) -> SheetResult:
        result.error = message
        result.error_kind = kind
        result.fatal = fatal
        logger.warning("Sheet %s/%s failed (%s): %s", result.spreadsheet_id, result.sheet_name, kind, message)
        return result
