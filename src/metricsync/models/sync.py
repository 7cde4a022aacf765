"""Sync configuration, sheet selection and audit history models."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScopeType(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class SyncMode(str, Enum):
    DAILY_AGGREGATE = "daily_aggregate"
    INDIVIDUAL_RECORDS = "individual_records"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    ERROR = "error"


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class HistoryStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class SyncConfig(SQLModel, table=True):
    """
    One sync scope of a project: a single spreadsheet or an ordered set of them.

    `sync_interval` is stored in the unit the scope has always used: hours for
    single-spreadsheet configs, minutes for multi-spreadsheet configs. Use
    `interval_minutes` whenever a duration is needed.
    """

    __table_args__ = (UniqueConstraint("project_id", "scope_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(index=True)
    scope_type: ScopeType = ScopeType.SINGLE
    name: str = ""

    auto_sync_enabled: bool = False
    sync_interval: int = 24

    sync_status: SyncStatus = SyncStatus.IDLE
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    entries: List["SpreadsheetEntry"] = Relationship(
        back_populates="config",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "order_by": "SpreadsheetEntry.position",
        },
    )

    @property
    def interval_minutes(self) -> int:
        if self.scope_type == ScopeType.SINGLE:
            return self.sync_interval * 60
        return self.sync_interval

    def selected_sheets(self):
        """Yield (entry, sheet) pairs in the order they must be synced."""
        for entry in self.entries:
            if not entry.is_active:
                continue
            for sheet in entry.sheets:
                if sheet.is_selected:
                    yield entry, sheet


class SpreadsheetEntry(SQLModel, table=True):
    """One spreadsheet inside a SyncConfig, with its own mode and sheet selection."""

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: Optional[int] = Field(default=None, foreign_key="syncconfig.id", index=True)
    position: int = 0
    spreadsheet_id: str
    spreadsheet_name: str = ""
    is_active: bool = True
    sync_mode: SyncMode = SyncMode.DAILY_AGGREGATE
    record_type: Optional[str] = None  # "sale", "lead", "call" (individual_records only)

    config: Optional[SyncConfig] = Relationship(back_populates="entries")
    sheets: List["SheetConfig"] = Relationship(
        back_populates="entry",
        sa_relationship_kwargs={
            "cascade": "all, delete-orphan",
            "order_by": "SheetConfig.position",
        },
    )


class SheetConfig(SQLModel, table=True):
    """A worksheet tab, its selection flag and its column mapping."""

    id: Optional[int] = Field(default=None, primary_key=True)
    entry_id: Optional[int] = Field(default=None, foreign_key="spreadsheetentry.id", index=True)
    position: int = 0
    sheet_id: str = ""
    sheet_name: str
    is_selected: bool = True

    # Header row as seen on the last successful fetch
    column_headers: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    # {"B": {"metricKey": "amount_spent", "metricName": "Amount Spent", "isCustom": false}}
    column_mappings: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    last_synced_at: Optional[datetime] = None

    entry: Optional[SpreadsheetEntry] = Relationship(back_populates="sheets")


class SyncHistory(SQLModel, table=True):
    """One row per orchestrator run, manual or scheduled. Never updated."""

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: Optional[int] = Field(default=None, index=True)
    project_id: str = Field(index=True)
    scope_type: ScopeType = ScopeType.SINGLE
    sync_type: SyncType = SyncType.MANUAL

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: HistoryStatus = HistoryStatus.RUNNING

    sheets_synced: int = 0
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
