"""
Column mapper: raw sheet rows to named metric fields.

A ColumnMapping is the per-sheet dict stored on SheetConfig.column_mappings:

    {
        "A": {"metricKey": "date",         "metricName": "Date",         "isCustom": False},
        "B": {"metricKey": "amount_spent", "metricName": "Amount Spent", "isCustom": False},
        "F": {"metricKey": "booked_calls", "metricName": "Booked Calls", "isCustom": True},
    }

Each mapped cell is parsed against its value type ("number", "text" or
"date"). The type is read from an optional "valueType" key and otherwise
inferred from the metric key. A cell that fails to parse becomes a FieldError
on the row and the rest of the row is still mapped. A row missing a required
field (the date, plus the unique id in individual_records mode) is marked
skipped and never reaches the reconciler.

Nothing here touches the network or the database.
"""
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from metricsync.models.sync import SyncMode

DATE_KEY = "date"
UNIQUE_ID_KEY = "unique_id"
AMOUNT_KEY = "amount"
STATUS_KEY = "status"
RECORD_TYPE_KEY = "record_type"

NUMBER = "number"
TEXT = "text"
DATE = "date"
VALUE_TYPES = (NUMBER, TEXT, DATE)

_TEXT_KEYS = {UNIQUE_ID_KEY, STATUS_KEY, RECORD_TYPE_KEY}

_REQUIRED_KEYS = {
    SyncMode.DAILY_AGGREGATE: (DATE_KEY,),
    SyncMode.INDIVIDUAL_RECORDS: (DATE_KEY, UNIQUE_ID_KEY),
}

# Tried in order. US month-first formats come before day-first ones because
# that is how Sheets renders dates for en-US spreadsheets.
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)

# Sheets serial dates count days from 1899-12-30
_SHEETS_EPOCH = date(1899, 12, 30)

_COLUMN_RE = re.compile(r"^[A-Z]+$")
_NUMBER_JUNK_RE = re.compile(r"[,$%\s]")


@dataclass
class FieldError:
    column: str
    metric_key: str
    raw: Any
    message: str


@dataclass
class MappedRow:
    """One sheet row after mapping; the reconciler's input record."""

    row_number: int
    date: Optional[date] = None
    unique_id: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)
    names: Dict[str, str] = field(default_factory=dict)
    custom_keys: Set[str] = field(default_factory=set)
    errors: List[FieldError] = field(default_factory=list)
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


@dataclass
class MappingResult:
    rows: List[MappedRow]
    skipped: int = 0
    field_errors: List[FieldError] = field(default_factory=list)


# ─── Helpers ──────────────────────────────────────────────────────────────────

def column_index(letter: str) -> int:
    """Convert a column letter to a zero-based index: A → 0, Z → 25, AA → 26."""
    letter = (letter or "").strip().upper()
    if not _COLUMN_RE.match(letter):
        raise ValueError(f"Invalid column letter: {letter!r}")
    result = 0
    for ch in letter:
        result = result * 26 + (ord(ch) - ord("A") + 1)
    return result - 1


def metric_key_for(entry: Mapping[str, Any]) -> str:
    """Return the metric key of a mapping entry, deriving one for unnamed custom metrics."""
    key = (entry.get("metricKey") or "").strip()
    if key:
        return key
    name = (entry.get("metricName") or "").strip().lower()
    slug = re.sub(r"[^a-z0-9]+", "_", name).strip("_")
    return f"custom_{slug}" if slug else ""


def value_type(entry: Mapping[str, Any]) -> str:
    declared = entry.get("valueType")
    if declared:
        return declared
    key = metric_key_for(entry)
    if key == DATE_KEY:
        return DATE
    if key in _TEXT_KEYS:
        return TEXT
    return NUMBER


def required_keys(mode: SyncMode) -> Sequence[str]:
    return _REQUIRED_KEYS[SyncMode(mode)]


def _is_empty(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def parse_number(raw: Any) -> float:
    """Parse "1,234.50", "$99", "12%" and plain numbers. Raises ValueError."""
    if isinstance(raw, bool):
        raise ValueError(f"Not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    cleaned = _NUMBER_JUNK_RE.sub("", str(raw))
    try:
        return float(cleaned)
    except ValueError:
        raise ValueError(f"Not a number: {raw!r}") from None


def parse_date(raw: Any) -> date:
    """Parse the date formats Sheets commonly renders. Raises ValueError."""
    if isinstance(raw, bool):
        raise ValueError(f"Not a date: {raw!r}")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, (int, float)):
        return _SHEETS_EPOCH + timedelta(days=int(raw))

    s = str(raw).strip()
    if "T" in s:
        # ISO datetime; drop fractional seconds and any offset
        try:
            return datetime.strptime(s[:19], "%Y-%m-%dT%H:%M:%S").date()
        except ValueError:
            pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Not a date: {raw!r}")


def parse_value(raw: Any, vtype: str) -> Any:
    if vtype == NUMBER:
        return parse_number(raw)
    if vtype == DATE:
        return parse_date(raw)
    return str(raw).strip()


# ─── Validation ───────────────────────────────────────────────────────────────

def mapping_problems(mapping: Mapping[str, Mapping[str, Any]], mode: SyncMode) -> List[str]:
    """
    Return every reason `mapping` cannot be used in `mode` (empty if it can).

    Used at config save time so that a broken mapping is a ConfigError for
    the person editing it rather than a silent row-dropping fault later.
    """
    if not mapping:
        return ["no columns are mapped"]

    problems: List[str] = []
    seen: Dict[str, str] = {}
    for letter, entry in mapping.items():
        try:
            column_index(letter)
        except ValueError as exc:
            problems.append(str(exc))
            continue
        key = metric_key_for(entry)
        if not key:
            problems.append(f"column {letter} has no metric key")
            continue
        if key in seen:
            problems.append(f"metric {key!r} is mapped to both {seen[key]} and {letter}")
        seen[key] = letter
        if entry.get("valueType") and entry["valueType"] not in VALUE_TYPES:
            problems.append(f"column {letter} has unknown value type {entry['valueType']!r}")

    for key in required_keys(mode):
        if key not in seen:
            problems.append(f"a {key!r} column is required for {SyncMode(mode).value} mode")
    return problems


# ─── Mapping ──────────────────────────────────────────────────────────────────

def map_row(
    raw_row: Sequence[Any],
    mapping: Mapping[str, Mapping[str, Any]],
    mode: SyncMode,
    row_number: int = 0,
) -> MappedRow:
    """
    Map one raw row through `mapping`.

    Args:
        raw_row: Cell values in column order (Sheets trims trailing empties,
            so rows may be shorter than the mapping expects).
        mapping: Column letter → mapping entry.
        mode: Decides which fields are required.
        row_number: 1-based sheet row, carried through for error reporting.
    """
    row = MappedRow(row_number=row_number)

    for letter, entry in mapping.items():
        idx = column_index(letter)
        raw = raw_row[idx] if idx < len(raw_row) else None
        if _is_empty(raw):
            continue

        key = metric_key_for(entry)
        try:
            value = parse_value(raw, value_type(entry))
        except ValueError as exc:
            row.errors.append(FieldError(letter, key, raw, str(exc)))
            continue

        if key == DATE_KEY:
            row.date = value
        elif key == UNIQUE_ID_KEY:
            row.unique_id = value or None
        else:
            row.values[key] = value
            row.names[key] = entry.get("metricName") or key
            if entry.get("isCustom"):
                row.custom_keys.add(key)

    for key in required_keys(mode):
        present = row.date if key == DATE_KEY else row.unique_id
        if present is None:
            row.skip_reason = f"missing {key}"
            break

    return row


def map_rows(
    rows: Iterable[Sequence[Any]],
    mapping: Mapping[str, Mapping[str, Any]],
    mode: SyncMode,
    first_row_number: int = 2,
) -> MappingResult:
    """Map data rows (header already removed). Skipped rows are counted, not returned."""
    result = MappingResult(rows=[])
    for offset, raw_row in enumerate(rows):
        mapped = map_row(raw_row, mapping, mode, row_number=first_row_number + offset)
        result.field_errors.extend(mapped.errors)
        if mapped.skipped:
            result.skipped += 1
            continue
        result.rows.append(mapped)
    return result
