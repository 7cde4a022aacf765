"""
In-memory job registry: one SyncJob per (project_id, scope_type).

All mutations go through an asyncio.Lock so the tick loop, API handlers and
run completions never interleave. The in-flight set is the single-flight
guard: a key is claimed before its runner starts and released when the
runner returns, whatever happened in between.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from metricsync.models.sync import ScopeType, utcnow
from metricsync.sync.errors import JobNotFoundError, SchedulerError

logger = logging.getLogger(__name__)

JobKey = Tuple[str, ScopeType]


def job_key(project_id: str, scope_type) -> JobKey:
    return (project_id, ScopeType(scope_type))


@dataclass
class SyncJob:
    project_id: str
    scope_type: ScopeType
    interval_minutes: int
    next_fire_at: Optional[datetime] = None
    running: bool = False
    last_run_at: Optional[datetime] = None
    last_success: Optional[bool] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> JobKey:
        return (self.project_id, self.scope_type)

    @property
    def state(self) -> str:
        if self.running:
            return "running"
        return "armed" if self.next_fire_at is not None else "idle"

    def snapshot(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "scope_type": self.scope_type.value,
            "interval_minutes": self.interval_minutes,
            "state": self.state,
            "running": self.running,
            "next_fire_at": self.next_fire_at,
            "last_run_at": self.last_run_at,
            "last_success": self.last_success,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }


def backoff_minutes(interval_minutes: int, max_backoff_minutes: int) -> int:
    """After a failed run the next fire waits twice the interval, capped."""
    return min(interval_minutes * 2, max_backoff_minutes)


class JobRegistry:
    def __init__(self):
        self._jobs: Dict[JobKey, SyncJob] = {}
        self._in_flight: Set[JobKey] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, project_id: str, scope_type) -> Optional[SyncJob]:
        return self._jobs.get(job_key(project_id, scope_type))

    def all(self) -> List[SyncJob]:
        return sorted(self._jobs.values(), key=lambda j: (j.project_id, j.scope_type.value))

    def is_running(self, project_id: str, scope_type) -> bool:
        return job_key(project_id, scope_type) in self._in_flight

    async def upsert(
        self,
        project_id: str,
        scope_type,
        interval_minutes: int,
        now: datetime,
        next_fire_at: Optional[datetime] = None,
    ) -> SyncJob:
        """
        Register a job or replace its interval.

        The next fire defaults to now + interval. A job that is mid-run keeps
        running; its completion re-arms it from the new interval.
        """
        if interval_minutes is None or interval_minutes <= 0:
            raise SchedulerError(f"Interval must be a positive number of minutes, got {interval_minutes!r}")
        key = job_key(project_id, scope_type)
        fire_at = next_fire_at or now + timedelta(minutes=interval_minutes)
        async with self._lock:
            job = self._jobs.get(key)
            if job is None:
                job = SyncJob(project_id=key[0], scope_type=key[1], interval_minutes=interval_minutes)
                self._jobs[key] = job
            job.interval_minutes = interval_minutes
            job.next_fire_at = fire_at
            job.running = key in self._in_flight
        logger.info("Job %s/%s armed every %d min, next at %s", key[0], key[1].value, interval_minutes, fire_at)
        return job

    async def remove(self, project_id: str, scope_type) -> SyncJob:
        key = job_key(project_id, scope_type)
        async with self._lock:
            job = self._jobs.pop(key, None)
        if job is None:
            raise JobNotFoundError(f"No sync job for {key[0]}/{key[1].value}")
        logger.info("Job %s/%s removed", key[0], key[1].value)
        return job

    async def claim(self, project_id: str, scope_type) -> bool:
        """Mark a key in flight. False when a run for it is already going."""
        key = job_key(project_id, scope_type)
        async with self._lock:
            if key in self._in_flight:
                return False
            self._in_flight.add(key)
            job = self._jobs.get(key)
            if job is not None:
                job.running = True
        return True

    async def claim_due(self, now: datetime, retry_after: timedelta) -> List[SyncJob]:
        """
        Claim every job whose next fire is at or before `now`.

        A due job that is still running is not fired; its next fire moves to
        now + retry_after.
        """
        fired = []
        async with self._lock:
            for job in self._jobs.values():
                if job.next_fire_at is None or job.next_fire_at > now:
                    continue
                if job.key in self._in_flight:
                    job.next_fire_at = now + retry_after
                    logger.info(
                        "Job %s/%s still running, skipping this fire", job.project_id, job.scope_type.value
                    )
                    continue
                self._in_flight.add(job.key)
                job.running = True
                fired.append(job)
        return fired

    async def release(
        self,
        project_id: str,
        scope_type,
        *,
        now: datetime,
        success: bool,
        error: Optional[str] = None,
        max_backoff_minutes: int = 24 * 60,
    ) -> Optional[SyncJob]:
        """
        Clear the in-flight mark and re-arm the job.

        Success re-arms at now + interval; failure at now + the backoff. A job
        removed while it ran stays removed and None is returned.
        """
        key = job_key(project_id, scope_type)
        async with self._lock:
            self._in_flight.discard(key)
            job = self._jobs.get(key)
            if job is None:
                return None
            job.running = False
            job.last_run_at = now
            job.last_success = success
            if success:
                job.consecutive_failures = 0
                job.last_error = None
                delay = job.interval_minutes
            else:
                job.consecutive_failures += 1
                job.last_error = error
                delay = backoff_minutes(job.interval_minutes, max_backoff_minutes)
            job.next_fire_at = now + timedelta(minutes=delay)
        return job
