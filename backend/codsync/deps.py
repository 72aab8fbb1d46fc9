"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (ARQ queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Staging reconciliation
    # Batch pulls per provider and the caps that end one run early; an early
    # stop leaves rows unprocessed for the next continuation run.
    STAGING_SYNC_BATCH_SIZE: int = 100
    STAGING_SYNC_MAX_BATCHES: int = 500
    STAGING_SYNC_MAX_RECORDS: int = 50000
    STAGING_SYNC_MAX_SECONDS: int = 900

    # A finished run's counters stay visible this long before a progress read resets them
    STAGING_SYNC_PROGRESS_GRACE_SECONDS: int = 5
    # A running session with no heartbeat for this long may be taken over
    STAGING_SYNC_STALE_RUN_MINUTES: int = 30
    # Finished sessions are purged after this many hours
    STAGING_SYNC_SESSION_RETENTION_HOURS: int = 24
    STAGING_SYNC_INTERVAL_MINUTES: int = 3

    # Name + value match: max absolute difference between order total and carrier value
    STAGING_SYNC_NAME_VALUE_TOLERANCE: float = 1.0

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
