"""
Error taxonomy for the sync engine.

ConfigError and SchedulerError are raised to the caller that asked for the
change. FetchError and PersistError are caught at the sheet boundary and
recorded in that sheet's result, never propagated past the executor.
"""
from enum import Enum


class MetricSyncError(RuntimeError):
    """Base class for every error raised by metricsync."""


class ConfigError(MetricSyncError):
    """A sync configuration is missing, incomplete or invalid."""


class ConfigNotFoundError(ConfigError):
    """No sync configuration is stored for the given (project, scope)."""


class FetchErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    TIMEOUT = "timeout"


class FetchError(MetricSyncError):
    """The sheet fetcher could not return rows."""

    def __init__(self, kind: FetchErrorKind, message: str = ""):
        self.kind = FetchErrorKind(kind)
        super().__init__(message or self.kind.value)

    @property
    def fatal(self) -> bool:
        # Bad credentials won't fix themselves on the next sheet or the next tick.
        return self.kind == FetchErrorKind.UNAUTHORIZED


class PersistError(MetricSyncError):
    """Writing reconciled rows failed part-way; committed rows stay committed."""

    def __init__(self, message: str, *, committed_inserted: int = 0, committed_updated: int = 0):
        super().__init__(message)
        self.committed_inserted = committed_inserted
        self.committed_updated = committed_updated


class SchedulerError(MetricSyncError):
    """A job registry operation was rejected; no state was changed."""


class JobNotFoundError(SchedulerError):
    """No job is registered for the given (project, scope)."""


class JobAlreadyRunningError(SchedulerError):
    """A run for the given (project, scope) is already in flight."""
