"""Tests for the in-memory job registry: arming, claims, backoff and removal."""
from datetime import datetime, timedelta

import pytest

from metricsync.models.sync import ScopeType
from metricsync.scheduler.registry import JobRegistry, backoff_minutes, job_key
from metricsync.sync.errors import JobNotFoundError, SchedulerError

T0 = datetime(2024, 1, 1, 12, 0)
TICK = timedelta(seconds=60)


class TestBackoff:
    def test_doubles(self):
        assert backoff_minutes(60, 1440) == 120

    def test_capped(self):
        assert backoff_minutes(1440, 1440) == 1440
        assert backoff_minutes(900, 1440) == 1440


class TestUpsert:
    @pytest.mark.asyncio
    async def test_arms_at_now_plus_interval(self):
        registry = JobRegistry()
        job = await registry.upsert("p1", "single", 60, T0)
        assert job.next_fire_at == T0 + timedelta(minutes=60)
        assert job.state == "armed"
        assert job.key == ("p1", ScopeType.SINGLE)

    @pytest.mark.asyncio
    async def test_explicit_next_fire(self):
        registry = JobRegistry()
        job = await registry.upsert("p1", ScopeType.MULTI, 15, T0, next_fire_at=T0 + timedelta(minutes=3))
        assert job.next_fire_at == T0 + timedelta(minutes=3)

    @pytest.mark.asyncio
    async def test_replaces_interval(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0)
        job = await registry.upsert("p1", ScopeType.SINGLE, 30, T0 + timedelta(minutes=10))
        assert len(registry) == 1
        assert job.interval_minutes == 30
        assert job.next_fire_at == T0 + timedelta(minutes=40)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("interval", [0, -5, None])
    async def test_rejects_non_positive_interval(self, interval):
        registry = JobRegistry()
        with pytest.raises(SchedulerError):
            await registry.upsert("p1", ScopeType.SINGLE, interval, T0)
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_scopes_are_separate_jobs(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0)
        await registry.upsert("p1", ScopeType.MULTI, 15, T0)
        assert [j.scope_type for j in registry.all()] == [ScopeType.MULTI, ScopeType.SINGLE]


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0)
        await registry.remove("p1", ScopeType.SINGLE)
        assert registry.get("p1", ScopeType.SINGLE) is None

    @pytest.mark.asyncio
    async def test_remove_unknown(self):
        with pytest.raises(JobNotFoundError):
            await JobRegistry().remove("p1", ScopeType.SINGLE)


class TestClaims:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self):
        registry = JobRegistry()
        assert await registry.claim("p1", ScopeType.SINGLE) is True
        assert await registry.claim("p1", ScopeType.SINGLE) is False
        assert await registry.claim("p1", ScopeType.MULTI) is True
        assert registry.is_running("p1", "single")

    @pytest.mark.asyncio
    async def test_claim_due_only_due_jobs(self):
        registry = JobRegistry()
        await registry.upsert("due", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        await registry.upsert("later", ScopeType.SINGLE, 60, T0)
        fired = await registry.claim_due(T0, TICK)
        assert [j.project_id for j in fired] == ["due"]
        assert fired[0].state == "running"

    @pytest.mark.asyncio
    async def test_running_job_skipped_and_pushed_one_tick(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        assert await registry.claim("p1", ScopeType.SINGLE)
        fired = await registry.claim_due(T0, TICK)
        assert fired == []
        assert registry.get("p1", ScopeType.SINGLE).next_fire_at == T0 + TICK

    @pytest.mark.asyncio
    async def test_release_success_rearms(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        await registry.claim_due(T0, TICK)
        done = T0 + timedelta(minutes=2)
        job = await registry.release("p1", ScopeType.SINGLE, now=done, success=True)
        assert job.next_fire_at == done + timedelta(minutes=60)
        assert job.state == "armed"
        assert job.last_success is True
        assert not registry.is_running("p1", ScopeType.SINGLE)

    @pytest.mark.asyncio
    async def test_release_failure_backs_off(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        await registry.claim_due(T0, TICK)
        job = await registry.release("p1", ScopeType.SINGLE, now=T0, success=False, error="bad token")
        assert job.next_fire_at == T0 + timedelta(minutes=120)
        assert job.consecutive_failures == 1
        assert job.last_error == "bad token"

    @pytest.mark.asyncio
    async def test_backoff_respects_cap(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 1000, T0)
        await registry.claim("p1", ScopeType.SINGLE)
        job = await registry.release("p1", ScopeType.SINGLE, now=T0, success=False, max_backoff_minutes=1440)
        assert job.next_fire_at == T0 + timedelta(minutes=1440)

    @pytest.mark.asyncio
    async def test_success_resets_failures(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0)
        for success in (False, False, True):
            await registry.claim("p1", ScopeType.SINGLE)
            job = await registry.release("p1", ScopeType.SINGLE, now=T0, success=success)
        assert job.consecutive_failures == 0
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_removed_while_running_stays_removed(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        await registry.claim_due(T0, TICK)
        await registry.remove("p1", ScopeType.SINGLE)
        assert await registry.release("p1", ScopeType.SINGLE, now=T0, success=True) is None
        assert registry.get("p1", ScopeType.SINGLE) is None
        assert not registry.is_running("p1", ScopeType.SINGLE)

    @pytest.mark.asyncio
    async def test_upsert_during_run_keeps_running_flag(self):
        registry = JobRegistry()
        await registry.upsert("p1", ScopeType.SINGLE, 60, T0, next_fire_at=T0)
        await registry.claim_due(T0, TICK)
        job = await registry.upsert("p1", ScopeType.SINGLE, 30, T0)
        assert job.running

    def test_job_key_normalizes_scope(self):
        assert job_key("p1", "multi") == ("p1", ScopeType.MULTI)
