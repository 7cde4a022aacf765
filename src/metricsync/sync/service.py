"""
SyncService: the entry point the API and the worker talk to.

Wires the config store, credential provider, fetcher, executor, orchestrator
and job scheduler together, and keeps stored configs and armed jobs in step:
saving an auto-sync config arms its job, disabling or deleting it disarms it.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from metricsync.config import Settings, get_settings
from metricsync.models.sync import ScopeType, SyncConfig, SyncHistory, SyncStatus, SyncType, utcnow
from metricsync.scheduler.jobs import JobScheduler
from metricsync.scheduler.registry import JobRegistry
from metricsync.sheets.client import GoogleSheetsFetcher
from metricsync.sheets.credentials import CredentialProvider
from metricsync.sync.errors import ConfigError, ConfigNotFoundError, JobNotFoundError
from metricsync.sync.executor import SheetSyncExecutor
from metricsync.sync.mapper import mapping_problems
from metricsync.sync.orchestrator import SyncOrchestrator, SyncResult
from metricsync.sync.store import ConfigStore, MetricsStore

logger = logging.getLogger(__name__)


def config_problems(config: SyncConfig) -> List[str]:
    """Everything wrong with a config before it may be saved, or [] if it is usable."""
    problems = []
    if not (config.project_id or "").strip():
        problems.append("project_id is required")
    if config.sync_interval is None or config.sync_interval <= 0:
        problems.append(f"sync_interval must be positive, got {config.sync_interval!r}")

    scope = ScopeType(config.scope_type)
    if scope == ScopeType.SINGLE and len(config.entries) > 1:
        problems.append("a single-spreadsheet config holds at most one spreadsheet")

    seen = set()
    for entry in config.entries:
        label = entry.spreadsheet_name or entry.spreadsheet_id or "<unnamed>"
        if not (entry.spreadsheet_id or "").strip():
            problems.append(f"{label}: spreadsheet_id is required")
        elif entry.spreadsheet_id in seen:
            problems.append(f"{label}: spreadsheet listed twice")
        seen.add(entry.spreadsheet_id)
        for sheet in entry.sheets:
            if not sheet.is_selected:
                continue
            if not (sheet.sheet_name or "").strip():
                problems.append(f"{label}: a selected sheet has no name")
                continue
            for problem in mapping_problems(sheet.column_mappings or {}, entry.sync_mode):
                problems.append(f"{label}/{sheet.sheet_name}: {problem}")
    return problems


class SyncService:
    def __init__(
        self,
        engine,
        *,
        fetcher=None,
        credential_provider=None,
        registry: Optional[JobRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            engine: SQLAlchemy engine holding configs, history and metrics.
            fetcher: Sheet fetcher; defaults to GoogleSheetsFetcher.
            credential_provider: Defaults to the database-backed CredentialProvider.
            registry: Job registry; a fresh one unless the caller shares one.
            settings: Defaults to get_settings().
            clock: Naive-UTC clock shared by the orchestrator and the scheduler.
        """
        self.settings = settings or get_settings()
        self.config_store = ConfigStore(engine)
        self.metrics_store = MetricsStore(engine)
        self.credentials = credential_provider or CredentialProvider(engine)
        self.fetcher = fetcher or GoogleSheetsFetcher(
            timeout_seconds=self.settings.fetch_timeout_seconds,
            last_column=self.settings.sheet_last_column,
            max_rows=self.settings.sheet_max_rows,
        )
        self.executor = SheetSyncExecutor(self.fetcher, self.metrics_store, source=self.settings.metrics_source)
        self.orchestrator = SyncOrchestrator(self.config_store, self.executor, clock=clock)
        self.scheduler = JobScheduler(
            registry or JobRegistry(),
            self.run_project,
            tick_seconds=self.settings.sync_tick_seconds,
            max_backoff_minutes=self.settings.max_backoff_minutes,
            clock=clock,
        )
        self._clock = clock

    # ─── Configs ──────────────────────────────────────────────────────────────

    def get_config(self, project_id: str, scope_type) -> SyncConfig:
        config = self.config_store.get_config(project_id, ScopeType(scope_type))
        if config is None:
            raise ConfigNotFoundError(f"No {ScopeType(scope_type).value} sync config for project {project_id}")
        return config

    async def save_config(self, config: SyncConfig) -> SyncConfig:
        """
        Validate, store and (re)arm or disarm the job for a config.

        Raises:
            ConfigError: the config is unusable; nothing is stored and no job changes.
        """
        problems = config_problems(config)
        if problems:
            raise ConfigError("; ".join(problems))
        saved = self.config_store.save_config(config)
        if saved.auto_sync_enabled:
            await self.scheduler.upsert_job(saved.project_id, saved.scope_type, saved.interval_minutes)
        else:
            await self._disarm(saved.project_id, saved.scope_type)
        return saved

    async def delete_config(self, project_id: str, scope_type) -> bool:
        removed = self.config_store.delete_config(project_id, ScopeType(scope_type))
        await self._disarm(project_id, scope_type)
        return removed

    async def _disarm(self, project_id: str, scope_type) -> None:
        try:
            await self.scheduler.remove_job(project_id, scope_type)
        except JobNotFoundError:
            pass

    def get_history(self, project_id: str, scope_type=None, limit: Optional[int] = None) -> List[SyncHistory]:
        return self.config_store.list_history(
            project_id,
            ScopeType(scope_type) if scope_type is not None else None,
            limit=limit or self.settings.history_limit,
        )

    # ─── Jobs ─────────────────────────────────────────────────────────────────

    async def register_or_update_job(self, project_id: str, scope_type, interval_minutes: int) -> Dict[str, Any]:
        return await self.scheduler.upsert_job(project_id, scope_type, interval_minutes)

    async def remove_job(self, project_id: str, scope_type) -> None:
        await self.scheduler.remove_job(project_id, scope_type)

    def get_job_status(self, project_id: str, scope_type) -> Dict[str, Any]:
        return self.scheduler.get_job_status(project_id, scope_type)

    def list_jobs(self) -> List[Dict[str, Any]]:
        return self.scheduler.list_jobs()

    async def restore_jobs(self) -> int:
        """
        Re-arm jobs for every stored auto-sync config.

        Configs left in `syncing` by a process that died mid-run go back to idle.
        """
        configs = self.config_store.list_configs(auto_sync_only=False)
        for cfg in configs:
            if cfg.sync_status == SyncStatus.SYNCING:
                logger.warning("Config %s/%s was left syncing; resetting", cfg.project_id, cfg.scope_type.value)
                self.config_store.update_status(cfg.id, SyncStatus.IDLE)
        return await self.scheduler.load_jobs(c for c in configs if c.auto_sync_enabled)

    # ─── Running ──────────────────────────────────────────────────────────────

    async def trigger_manual_sync(self, project_id: str, scope_type) -> SyncResult:
        """
        Run a sync right away, outside the schedule.

        Raises:
            JobAlreadyRunningError: a run for this (project, scope) is in flight.
            ConfigNotFoundError: nothing is configured for this (project, scope).
        """
        return await self.scheduler.trigger_manual_sync(project_id, ScopeType(scope_type))

    async def run_project(self, project_id: str, scope_type, sync_type: SyncType = SyncType.MANUAL) -> SyncResult:
        """Load the config and credentials for one scope and run the orchestrator."""
        config = self.get_config(project_id, scope_type)
        credentials = self.credentials.get_credentials(project_id)
        return await self.orchestrator.run(config, credentials, sync_type)
