from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./metricsync.db"
    sync_tick_seconds: int = 60
    fetch_timeout_seconds: float = 30.0
    sheet_max_rows: int = 1000
    sheet_last_column: str = "Z"
    max_backoff_minutes: int = 24 * 60
    history_limit: int = 10
    metrics_source: str = "google_sheets"
    run_scheduler_in_api: bool = True  # set False when a separate `python -m metricsync` worker runs

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "METRICSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
