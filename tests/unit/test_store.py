"""Tests for ConfigStore and MetricsStore against in-memory SQLite."""
from datetime import date, datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from metricsync.models.metrics import DailyMetric, IndividualRecord
from metricsync.models.sync import (
    HistoryStatus,
    ScopeType,
    SheetConfig,
    SyncHistory,
    SyncMode,
    SyncStatus,
    SyncType,
)
from metricsync.sync.errors import PersistError
from metricsync.sync.reconciler import MetricValue, RecordValue
from metricsync.sync.store import ConfigStore, MetricsStore, RowOrigin

ORIGIN = RowOrigin("sheet-1", "Ads")


def _metric(d, key, value, name=None):
    return MetricValue(metric_date=d, metric_key=key, metric_name=name or key, value=value)


# ─── ConfigStore ──────────────────────────────────────────────────────────────

class TestConfigStore:
    def test_save_and_get_roundtrip(self, engine, make_config, ads_mapping):
        store = ConfigStore(engine)
        saved = store.save_config(make_config(sheets=[("sheet-1", "Ads", ads_mapping), ("sheet-1", "Q2", ads_mapping)]))
        assert saved.id is not None
        loaded = store.get_config("p1", ScopeType.SINGLE)
        assert [e.spreadsheet_id for e in loaded.entries] == ["sheet-1"]
        assert [s.sheet_name for s in loaded.entries[0].sheets] == ["Ads", "Q2"]
        assert loaded.entries[0].sheets[0].column_mappings == ads_mapping

    def test_get_missing(self, engine):
        assert ConfigStore(engine).get_config("nope", ScopeType.SINGLE) is None

    def test_scopes_are_independent(self, engine, make_config):
        store = ConfigStore(engine)
        store.save_config(make_config(scope_type=ScopeType.SINGLE))
        store.save_config(make_config(scope_type=ScopeType.MULTI, sync_interval=30))
        assert store.get_config("p1", ScopeType.SINGLE).sync_interval == 24
        assert store.get_config("p1", ScopeType.MULTI).sync_interval == 30

    def test_save_replaces_tree_keeps_status(self, engine, make_config, ads_mapping, test_session):
        store = ConfigStore(engine)
        first = store.save_config(make_config(sheets=[("sheet-1", "Ads", ads_mapping), ("sheet-2", "Leads", ads_mapping)]))
        store.update_status(first.id, SyncStatus.ERROR, error="boom")

        second = store.save_config(make_config(sheets=[("sheet-3", "New", ads_mapping)], sync_interval=6))
        assert second.id == first.id
        assert second.sync_interval == 6
        assert [e.spreadsheet_id for e in second.entries] == ["sheet-3"]
        assert second.sync_status == SyncStatus.ERROR
        assert second.last_sync_error == "boom"
        # Orphaned sheets are gone
        assert len(test_session.exec(select(SheetConfig)).all()) == 1

    def test_list_configs_auto_only(self, engine, make_config):
        store = ConfigStore(engine)
        store.save_config(make_config(project_id="a", auto_sync_enabled=True))
        store.save_config(make_config(project_id="b", auto_sync_enabled=False))
        assert [c.project_id for c in store.list_configs(auto_sync_only=True)] == ["a"]
        assert len(store.list_configs()) == 2

    def test_delete(self, engine, make_config):
        store = ConfigStore(engine)
        store.save_config(make_config())
        assert store.delete_config("p1", ScopeType.SINGLE) is True
        assert store.get_config("p1", ScopeType.SINGLE) is None
        assert store.delete_config("p1", ScopeType.SINGLE) is False

    def test_status_transitions(self, engine, make_config):
        store = ConfigStore(engine)
        cfg = store.save_config(make_config())
        store.update_status(cfg.id, SyncStatus.ERROR, error="bad token")
        assert store.get_config("p1", ScopeType.SINGLE).last_sync_error == "bad token"

        store.update_status(cfg.id, SyncStatus.SYNCING)
        loaded = store.get_config("p1", ScopeType.SINGLE)
        assert loaded.sync_status == SyncStatus.SYNCING
        assert loaded.last_sync_error == "bad token"

        at = datetime(2024, 1, 1, 12, 0)
        store.update_status(cfg.id, SyncStatus.SUCCESS, last_sync_at=at, next_sync_at=datetime(2024, 1, 2, 12, 0))
        loaded = store.get_config("p1", ScopeType.SINGLE)
        assert loaded.sync_status == SyncStatus.SUCCESS
        assert loaded.last_sync_error is None
        assert loaded.last_sync_at == at

    def test_error_without_message(self, engine, make_config):
        store = ConfigStore(engine)
        cfg = store.save_config(make_config())
        store.update_status(cfg.id, SyncStatus.ERROR)
        assert store.get_config("p1", ScopeType.SINGLE).last_sync_error == "Unknown error"

    def test_update_status_missing_config_is_noop(self, engine):
        ConfigStore(engine).update_status(999, SyncStatus.SUCCESS)

    def test_mark_sheet_synced(self, engine, make_config):
        store = ConfigStore(engine)
        cfg = store.save_config(make_config())
        sheet = cfg.entries[0].sheets[0]
        at = datetime(2024, 1, 1, 9, 0)
        store.mark_sheet_synced(sheet.id, ["Date", "Spend"], at)
        reloaded = store.get_config("p1", ScopeType.SINGLE).entries[0].sheets[0]
        assert reloaded.last_synced_at == at
        assert reloaded.column_headers == ["Date", "Spend"]

    def test_history_newest_first(self, engine):
        store = ConfigStore(engine)
        for hour in (1, 3, 2):
            store.append_history(SyncHistory(
                project_id="p1",
                scope_type=ScopeType.SINGLE,
                sync_type=SyncType.SCHEDULED,
                started_at=datetime(2024, 1, 1, hour),
                status=HistoryStatus.SUCCESS,
            ))
        store.append_history(SyncHistory(project_id="p1", scope_type=ScopeType.MULTI, started_at=datetime(2024, 1, 1, 5)))
        rows = store.list_history("p1", ScopeType.SINGLE)
        assert [r.started_at.hour for r in rows] == [3, 2, 1]
        assert len(store.list_history("p1", limit=2)) == 2
        assert store.list_history("other") == []


# ─── MetricsStore ─────────────────────────────────────────────────────────────

class TestMetricsStore:
    def test_insert_and_read_keys(self, engine):
        store = MetricsStore(engine)
        n = store.insert_rows("p1", [_metric(date(2024, 1, 1), "spend", 100.0), _metric(date(2024, 1, 2), "spend", 50.0)], ORIGIN)
        assert n == 2
        keys = store.read_existing_keys("p1", SyncMode.DAILY_AGGREGATE)
        assert keys == {(date(2024, 1, 1), "spend"), (date(2024, 1, 2), "spend")}

    def test_keys_scoped_by_project_and_range(self, engine):
        store = MetricsStore(engine)
        store.insert_rows("p1", [_metric(date(2024, 1, 1), "spend", 1.0), _metric(date(2024, 1, 9), "spend", 1.0)], ORIGIN)
        store.insert_rows("p2", [_metric(date(2024, 1, 1), "spend", 1.0)], ORIGIN)
        keys = store.read_existing_keys(
            "p1", SyncMode.DAILY_AGGREGATE, date_range=(date(2024, 1, 1), date(2024, 1, 5))
        )
        assert keys == {(date(2024, 1, 1), "spend")}

    def test_update_overwrites(self, engine, test_session):
        store = MetricsStore(engine)
        store.insert_rows("p1", [_metric(date(2024, 1, 1), "spend", 100.0)], ORIGIN)
        n = store.update_rows("p1", [_metric(date(2024, 1, 1), "spend", 120.0, name="Spend")], RowOrigin("sheet-2", "B"))
        assert n == 1
        [row] = test_session.exec(select(DailyMetric)).all()
        assert row.value == 120.0
        assert row.metric_name == "Spend"
        assert row.spreadsheet_id == "sheet-2"

    def test_individual_records(self, engine, test_session):
        store = MetricsStore(engine)
        record = RecordValue("A-1", date(2024, 2, 1), "sale", 49.0, "paid", {"customer": "Ada"})
        store.insert_rows("p1", [record], ORIGIN)
        assert store.read_existing_keys("p1", SyncMode.INDIVIDUAL_RECORDS, record_ids=["A-1", "A-2"]) == {"A-1"}
        assert store.read_existing_keys("p1", SyncMode.INDIVIDUAL_RECORDS, record_ids=[]) == set()

        moved = RecordValue("A-1", date(2024, 2, 9), "sale", 55.0, "refunded", {})
        store.update_rows("p1", [moved], ORIGIN)
        [row] = test_session.exec(select(IndividualRecord)).all()
        assert row.record_date == date(2024, 2, 9)
        assert row.status == "refunded"
        assert row.record_data == {}

    def test_persist_error_reports_committed(self, engine, test_session):
        store = MetricsStore(engine)
        records = [_metric(date(2024, 1, d), "spend", 1.0) for d in (1, 2, 3)]
        real_commit = test_session.__class__.commit
        calls = {"n": 0}

        def flaky_commit(self):
            calls["n"] += 1
            if calls["n"] == 3:
                raise OperationalError("INSERT", {}, Exception("disk full"))
            return real_commit(self)

        with patch("metricsync.sync.store.Session.commit", flaky_commit):
            with pytest.raises(PersistError) as exc_info:
                store.insert_rows("p1", records, ORIGIN)

        assert exc_info.value.committed_inserted == 2
        assert exc_info.value.committed_updated == 0
        assert len(test_session.exec(select(DailyMetric)).all()) == 2
