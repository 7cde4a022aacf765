"""Shared test fixtures."""
import copy
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest
from google.oauth2.credentials import Credentials
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from metricsync.models.credentials import ProjectCredential  # noqa: F401
from metricsync.models.metrics import DailyMetric, IndividualRecord  # noqa: F401
from metricsync.models.sync import (  # noqa: F401
    ScopeType,
    SheetConfig,
    SpreadsheetEntry,
    SyncConfig,
    SyncHistory,
    SyncMode,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"

ADS_MAPPING = {
    "A": {"metricKey": "date", "metricName": "Date", "isCustom": False},
    "B": {"metricKey": "amount_spent", "metricName": "Amount Spent", "isCustom": False},
    "C": {"metricKey": "leads", "metricName": "Leads", "isCustom": False},
    "E": {"metricKey": "", "metricName": "ROAS", "isCustom": True},
}

SALES_MAPPING = {
    "A": {"metricKey": "unique_id", "metricName": "Order ID"},
    "B": {"metricKey": "date", "metricName": "Date"},
    "C": {"metricKey": "amount", "metricName": "Amount"},
    "D": {"metricKey": "status", "metricName": "Status"},
    "E": {"metricKey": "customer", "metricName": "Customer", "valueType": "text"},
}


def _make_config(
    project_id: str = "p1",
    scope_type: ScopeType = ScopeType.SINGLE,
    sheets=(("sheet-1", "Ads", ADS_MAPPING),),
    mode: SyncMode = SyncMode.DAILY_AGGREGATE,
    auto_sync_enabled: bool = False,
    sync_interval: int = 24,
    record_type=None,
) -> SyncConfig:
    """
    Build an unsaved config. `sheets` is a sequence of
    (spreadsheet_id, sheet_name, mapping); consecutive sheets with the same
    spreadsheet id share one entry.
    """
    config = SyncConfig(
        project_id=project_id,
        scope_type=scope_type,
        name=f"{project_id} {scope_type.value}",
        auto_sync_enabled=auto_sync_enabled,
        sync_interval=sync_interval,
    )
    entries = []
    for spreadsheet_id, sheet_name, mapping in sheets:
        if not entries or entries[-1].spreadsheet_id != spreadsheet_id:
            entry = SpreadsheetEntry(
                position=len(entries),
                spreadsheet_id=spreadsheet_id,
                spreadsheet_name=spreadsheet_id.title(),
                sync_mode=mode,
                record_type=record_type,
            )
            entry.sheets = []
            entries.append(entry)
        entry = entries[-1]
        entry.sheets = entry.sheets + [
            SheetConfig(position=len(entry.sheets), sheet_name=sheet_name, column_mappings=dict(mapping))
        ]
    config.entries = entries
    return config


class FakeClock:
    """Naive-UTC clock the tests move by hand."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="credentials")
def credentials_fixture() -> Credentials:
    """A live-looking access token that never expires during a test."""
    return Credentials(token="test-token", expiry=datetime.utcnow() + timedelta(hours=1))


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="make_config")
def make_config_fixture():
    """Factory for unsaved SyncConfig trees (see _make_config)."""
    return _make_config


@pytest.fixture(name="ads_mapping")
def ads_mapping_fixture():
    return copy.deepcopy(ADS_MAPPING)


@pytest.fixture(name="sales_mapping")
def sales_mapping_fixture():
    return copy.deepcopy(SALES_MAPPING)


@pytest.fixture(name="ads_rows")
def ads_rows_fixture():
    """Raw values of an ad-spend sheet: header, mixed formats, a duplicate date."""
    return json.loads((FIXTURES_DIR / "sheet_values_ads.json").read_text())


@pytest.fixture(name="sales_rows")
def sales_rows_fixture():
    """Raw values of a sales log: one row per order, keyed by Order ID."""
    return json.loads((FIXTURES_DIR / "sheet_values_sales.json").read_text())
