"""Scheduler configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Scheduler settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TABLESYNC_",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Wall clock used for schedules (HH:MM and cron fields)
    local_tz: str = Field(default="UTC")

    # Dispatch
    sync_concurrency: int = Field(default=2, ge=1)
    sync_max_attempts: int = Field(default=5, ge=1)
    sync_backoff_base_seconds: float = Field(default=1.0, ge=0)
    sync_backoff_max_seconds: float = Field(default=10.0, ge=0)

    # Triggers
    reload_tick_seconds: int = Field(default=10, ge=1)
    view_reload_debounce_seconds: float = Field(default=0.5, ge=0)

    # Bookkeeping
    activity_log_size: int = Field(default=100, ge=1)
    event_queue_size: int = Field(default=1000, ge=1)

    # Monitoring
    metrics_enabled: bool = Field(default=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
