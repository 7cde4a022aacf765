"""
Reconciler: split freshly mapped rows into inserts and updates.

Mapped rows are first expanded into canonical records, which depends on the
mode:

  daily_aggregate     one MetricValue per mapped metric per row,
                      dedup key (metric_date, metric_key)
  individual_records  one RecordValue per row, dedup key record_id

The project id is implied: every key handled here belongs to the project
being synced.

Inside one batch the last occurrence of a key wins. A key that already
exists in storage becomes an update (overwrite, last sync wins), and any
other key becomes an insert. Nothing is ever staged for deletion.

`existing_keys` is a snapshot the caller read before the pass. Nothing here
touches storage.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Set, Union

from metricsync.models.sync import SyncMode
from metricsync.sync.mapper import AMOUNT_KEY, RECORD_TYPE_KEY, STATUS_KEY, MappedRow


@dataclass(frozen=True)
class MetricValue:
    metric_date: date
    metric_key: str
    metric_name: str
    value: Optional[float]
    is_custom: bool = False


@dataclass
class RecordValue:
    record_id: str
    record_date: date
    record_type: Optional[str] = None
    amount: Optional[float] = None
    status: Optional[str] = None
    record_data: Dict[str, Any] = field(default_factory=dict)


CanonicalRecord = Union[MetricValue, RecordValue]


@dataclass
class ReconcilePlan:
    to_insert: List[CanonicalRecord] = field(default_factory=list)
    to_update: List[CanonicalRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.to_insert) + len(self.to_update)

    def date_range(self):
        """(min, max) date over every staged record, or None when empty."""
        dates = [record_date(r) for r in self.to_insert + self.to_update]
        if not dates:
            return None
        return min(dates), max(dates)


def dedup_key(record: CanonicalRecord) -> Hashable:
    if isinstance(record, MetricValue):
        return (record.metric_date, record.metric_key)
    return record.record_id


def record_date(record: CanonicalRecord) -> date:
    if isinstance(record, MetricValue):
        return record.metric_date
    return record.record_date


def _expand_aggregate(rows: Iterable[MappedRow], record_type: Optional[str]) -> List[CanonicalRecord]:
    out: List[CanonicalRecord] = []
    for row in rows:
        for key, value in row.values.items():
            if value is not None and not isinstance(value, (int, float)):
                # Text in an aggregate sheet (a notes column, say) has no numeric slot
                continue
            out.append(
                MetricValue(
                    metric_date=row.date,
                    metric_key=key,
                    metric_name=row.names.get(key, key),
                    value=value,
                    is_custom=key in row.custom_keys,
                )
            )
    return out


def _expand_individual(rows: Iterable[MappedRow], record_type: Optional[str]) -> List[CanonicalRecord]:
    out: List[CanonicalRecord] = []
    for row in rows:
        data = dict(row.values)
        amount = data.pop(AMOUNT_KEY, None)
        status = data.pop(STATUS_KEY, None)
        row_type = data.pop(RECORD_TYPE_KEY, None)
        data = {k: v.isoformat() if isinstance(v, date) else v for k, v in data.items()}
        out.append(
            RecordValue(
                record_id=row.unique_id,
                record_date=row.date,
                record_type=row_type or record_type,
                amount=amount if isinstance(amount, (int, float)) else None,
                status=str(status) if status is not None else None,
                record_data=data,
            )
        )
    return out


_EXPANDERS: Dict[SyncMode, Callable[[Iterable[MappedRow], Optional[str]], List[CanonicalRecord]]] = {
    SyncMode.DAILY_AGGREGATE: _expand_aggregate,
    SyncMode.INDIVIDUAL_RECORDS: _expand_individual,
}


def expand(rows: Iterable[MappedRow], mode: SyncMode, record_type: Optional[str] = None) -> List[CanonicalRecord]:
    """Turn mapped rows into canonical records, in row order, duplicates kept."""
    return _EXPANDERS[SyncMode(mode)](rows, record_type)


def reconcile(
    fresh_rows: Iterable[MappedRow],
    existing_keys: Set[Hashable],
    mode: SyncMode,
    record_type: Optional[str] = None,
) -> ReconcilePlan:
    """
    Stage every fresh record as an insert or an update.

    Args:
        fresh_rows: Mapped, non-skipped rows in sheet order.
        existing_keys: Dedup keys already stored for this project and mode.
        mode: Selects the expansion and the dedup key.
        record_type: Default record type for individual_records rows that
            don't carry their own.

    Returns:
        ReconcilePlan whose keys are unique across both lists.
    """
    latest: Dict[Hashable, CanonicalRecord] = {}
    for record in expand(fresh_rows, mode, record_type):
        key = dedup_key(record)
        # Re-inserting moves the key to its last position in row order
        latest.pop(key, None)
        latest[key] = record

    plan = ReconcilePlan()
    for key, record in latest.items():
        if key in existing_keys:
            plan.to_update.append(record)
        else:
            plan.to_insert.append(record)
    return plan
