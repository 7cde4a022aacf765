"""Reconciled metric rows: daily aggregates and individual dated records."""
from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from metricsync.models.sync import utcnow


class DailyMetric(SQLModel, table=True):
    """
    One metric value for one day, long format.

    Dedup key is (project_id, metric_date, metric_key): a sheet row with five
    mapped metrics becomes five DailyMetric rows.
    """

    __table_args__ = (UniqueConstraint("project_id", "metric_date", "metric_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(index=True)
    metric_date: date = Field(index=True)
    metric_key: str = Field(index=True)
    metric_name: str = ""
    value: Optional[float] = None
    is_custom: bool = False

    source: str = "google_sheets"
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    synced_at: datetime = Field(default_factory=utcnow)


class IndividualRecord(SQLModel, table=True):
    """A single dated event (a sale, a lead, a call) keyed by its sheet-side id."""

    __table_args__ = (UniqueConstraint("project_id", "record_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(index=True)
    record_id: str = Field(index=True)
    record_date: date = Field(index=True)
    record_type: Optional[str] = None
    amount: Optional[float] = None
    status: Optional[str] = None
    record_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    source: str = "google_sheets"
    spreadsheet_id: Optional[str] = None
    sheet_name: Optional[str] = None
    synced_at: datetime = Field(default_factory=utcnow)
