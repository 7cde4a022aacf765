"""
APScheduler-driven job scheduler for recurring syncs.

A single interval job ("sync_tick") wakes every `sync_tick_seconds` and fires
the registry jobs that are due. Each fire runs as its own asyncio task, so a
slow project never delays another. Job runs never overlap per
(project, scope): the registry's in-flight claim is taken before a run and
released after it, for scheduled and manual runs alike.

The scheduler runs inside whichever process hosts it: the API (see
api/main.py) or the standalone worker (`python -m metricsync`).
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from metricsync.config import get_settings
from metricsync.models.sync import ScopeType, SyncConfig, SyncType, utcnow
from metricsync.scheduler.registry import JobKey, JobRegistry, job_key
from metricsync.sync.errors import JobAlreadyRunningError, JobNotFoundError

logger = logging.getLogger(__name__)

TICK_JOB_ID = "sync_tick"

# (project_id, scope_type, sync_type) -> SyncResult
Runner = Callable[[str, ScopeType, SyncType], Awaitable[Any]]


def initial_fire_at(interval_minutes: int, last_sync_at: Optional[datetime], now: datetime) -> datetime:
    """First fire for a restored job: one interval after the last sync, never in the past."""
    if last_sync_at is not None:
        candidate = last_sync_at + timedelta(minutes=interval_minutes)
        if candidate > now:
            return candidate
    return now + timedelta(minutes=interval_minutes)


class JobScheduler:
    def __init__(
        self,
        registry: JobRegistry,
        runner: Runner,
        *,
        tick_seconds: Optional[int] = None,
        max_backoff_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            registry: Shared job registry (also read by the API).
            runner: Coroutine that runs one sync and returns an object with `success` and `error`.
            tick_seconds: Polling interval; defaults to settings.sync_tick_seconds.
            max_backoff_minutes: Cap on the post-failure delay; defaults to settings.max_backoff_minutes.
            clock: Returns naive UTC now. Tests pass a fake.
        """
        settings = get_settings()
        self.registry = registry
        self._runner = runner
        self._tick_seconds = tick_seconds or settings.sync_tick_seconds
        self._max_backoff = max_backoff_minutes or settings.max_backoff_minutes
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start ticking. Calling start on a running scheduler does nothing."""
        if self.running:
            return
        self._stopping = False
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self._tick_seconds,
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (tick every %ss, %d jobs)", self._tick_seconds, len(self.registry))

    def stop(self) -> None:
        """Stop firing new runs. Runs already in flight finish on their own."""
        self._stopping = True
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped (%d runs in flight)", len(self._tasks))

    async def wait_for_running(self) -> None:
        """Wait for every fired run to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─── Job management ───────────────────────────────────────────────────────

    async def upsert_job(self, project_id: str, scope_type, interval_minutes: int,
                         next_fire_at: Optional[datetime] = None) -> Dict[str, Any]:
        job = await self.registry.upsert(
            project_id, scope_type, interval_minutes, self._clock(), next_fire_at=next_fire_at
        )
        return job.snapshot()

    async def remove_job(self, project_id: str, scope_type) -> None:
        await self.registry.remove(project_id, scope_type)

    def get_job_status(self, project_id: str, scope_type) -> Dict[str, Any]:
        job = self.registry.get(project_id, scope_type)
        if job is None:
            raise JobNotFoundError(f"No sync job for {project_id}/{ScopeType(scope_type).value}")
        return job.snapshot()

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [job.snapshot() for job in self.registry.all()]

    async def load_jobs(self, configs: Iterable[SyncConfig]) -> int:
        """Arm a job for every auto-sync config, resuming from its last sync time."""
        now = self._clock()
        count = 0
        for cfg in configs:
            if not cfg.auto_sync_enabled or cfg.interval_minutes <= 0:
                continue
            fire_at = initial_fire_at(cfg.interval_minutes, cfg.last_sync_at, now)
            await self.registry.upsert(cfg.project_id, cfg.scope_type, cfg.interval_minutes, now, next_fire_at=fire_at)
            count += 1
        logger.info("Restored %d sync jobs", count)
        return count

    # ─── Firing ───────────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> List[JobKey]:
        """Fire every due job as a background task; returns the keys fired."""
        if self._stopping:
            return []
        now = now or self._clock()
        due = await self.registry.claim_due(now, timedelta(seconds=self._tick_seconds))
        for job in due:
            task = asyncio.create_task(self._execute(job.project_id, job.scope_type, SyncType.SCHEDULED))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return [job.key for job in due]

    async def trigger_manual_sync(self, project_id: str, scope_type):
        """
        Run a sync now and return its result.

        Raises:
            JobAlreadyRunningError: a run for this (project, scope) is in flight.
        """
        if not await self.registry.claim(project_id, scope_type):
            raise JobAlreadyRunningError(
                f"A sync for {project_id}/{ScopeType(scope_type).value} is already running"
            )
        return await self._execute(project_id, ScopeType(scope_type), SyncType.MANUAL, reraise=True)

    async def _execute(self, project_id: str, scope_type: ScopeType, sync_type: SyncType, reraise: bool = False):
        """Run one claimed sync. Always releases the claim and re-arms the job."""
        key = job_key(project_id, scope_type)
        success = False
        error = None
        try:
            result = await self._runner(project_id, scope_type, sync_type)
            success = bool(getattr(result, "success", False))
            error = getattr(result, "error", None)
            return result
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            if reraise:
                raise
            # Never let one project's failure kill the scheduler task
            logger.exception("Scheduled sync %s/%s crashed", key[0], key[1].value)
        finally:
            job = await self.registry.release(
                project_id, scope_type,
                now=self._clock(), success=success, error=error,
                max_backoff_minutes=self._max_backoff,
            )
            if job is not None:
                logger.info(
                    "Job %s/%s %s; next run at %s",
                    key[0], key[1].value, "succeeded" if success else "failed", job.next_fire_at,
                )
