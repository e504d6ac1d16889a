"""
Catalog Sync - Configuration

Settings are read from the process environment. Auto-loading of .env files
is disabled here; the CLI loads an env file explicitly before the first
call to get_settings().

Usage:
    from catalog_sync.core.config import get_settings

    settings = get_settings()
    settings.BATCH_SIZE
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SELF_HOSTED_MARKERS: dict[str, list[str]] = {
    # Checked in order; staging hosts can embed production names
    "staging": ["kinsta.cloud"],
    "production": ["suntsu.com", "suntsu-products-s3-bucket"],
}


class Settings(BaseSettings):
    """Runtime settings for the ingestion pipeline and workers."""

    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # CONNECTIONS
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Postgres DSN for checkpoints, counters and the job queue",
    )
    CATALOG_API_URL: str = Field(
        default="",
        description="Base URL of the remote catalog REST API (e.g. https://shop/wp-json/wc/v3)",
    )
    CATALOG_API_KEY: str = Field(default="", description="Catalog API consumer key")
    CATALOG_API_SECRET: str = Field(default="", description="Catalog API consumer secret")
    STATE_DIR: str = Field(
        default="./state",
        description="Root directory for checkpoint snapshots and status logs",
    )
    ENVIRONMENT: str = Field(default="production", description="Deployment environment")

    # =========================================================================
    # INGESTION
    # =========================================================================

    CSV_HEADER_ROW: int = Field(default=10, description="1-based physical line number of the header")
    BATCH_SIZE: int = Field(default=10, description="Rows per queued job")
    UPDATE_MODE: Literal["full", "quantity"] = Field(default="full")

    # =========================================================================
    # WORKERS
    # =========================================================================

    CONCURRENCY: int = Field(default=2, description="Worker loops per process")
    JOB_TIMEOUT_SECONDS: float = Field(default=300.0, description="Job processing ceiling")
    JOB_MAX_ATTEMPTS: int = Field(default=5)
    JOB_BACKOFF_SECONDS: float = Field(default=5.0)
    POLL_INTERVAL_SECONDS: float = Field(default=1.0)
    STATUS_FLUSH_EVERY: int = Field(default=50, description="Rows between status-log flushes")
    LOOKUP_MISS_POLICY: Literal["failed", "skipped"] = Field(
        default="failed",
        description="How a row with no matching remote record is counted",
    )

    # =========================================================================
    # REMOTE API THROTTLING
    # =========================================================================

    DISPATCH_MAX_CONCURRENT: int = Field(default=2)
    DISPATCH_MIN_TIME_MS: int = Field(default=1000)
    RETRY_MAX_ATTEMPTS: int = Field(default=5)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=2.0)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=120.0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=120.0)
    LOOKUP_CACHE_TTL_SECONDS: int = Field(default=86400)
    LOOKUP_PAGE_SIZE: int = Field(default=10)
    LOOKUP_MAX_PAGES: int = Field(default=50)

    # =========================================================================
    # PROVENANCE RULES
    # =========================================================================

    BLOCKED_HOSTS: list[str] = Field(
        default_factory=lambda: ["digikey"],
        description="Hosts whose image/datasheet URLs are never written",
    )
    SELF_HOSTED_MARKERS: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_SELF_HOSTED_MARKERS.items()},
        description="Environment name -> URL fragments identifying self-hosted assets",
    )

    # =========================================================================
    # LOGGING
    # =========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_JSON: bool = Field(default=False)

    @field_validator(
        "CSV_HEADER_ROW",
        "BATCH_SIZE",
        "CONCURRENCY",
        "JOB_MAX_ATTEMPTS",
        "STATUS_FLUSH_EVERY",
        "DISPATCH_MAX_CONCURRENT",
        "RETRY_MAX_ATTEMPTS",
        "LOOKUP_PAGE_SIZE",
        "LOOKUP_MAX_PAGES",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @field_validator("DISPATCH_MIN_TIME_MS")
    @classmethod
    def validate_min_time(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("BLOCKED_HOSTS")
    @classmethod
    def normalize_hosts(cls, v: list[str]) -> list[str]:
        return [h.strip().lower() for h in v if h and h.strip()]

    @property
    def dispatch_min_time_seconds(self) -> float:
        return self.DISPATCH_MIN_TIME_MS / 1000


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings (cached)."""
    return Settings()


def reset_settings() -> None:
    """Clear the settings cache so the next call re-reads the environment."""
    get_settings.cache_clear()


def log_startup_diagnostics(service_name: str = "catalog-sync") -> None:
    settings = get_settings()
    logger.info("╔══════════════════════════════════════════════════════════════════╗")
    logger.info(f"║  {service_name} Startup Diagnostics")
    logger.info("╠══════════════════════════════════════════════════════════════════╣")
    logger.info(f"║  ENVIRONMENT:    {settings.ENVIRONMENT}")
    logger.info(f"║  UPDATE_MODE:    {settings.UPDATE_MODE}")
    logger.info(f"║  BATCH_SIZE:     {settings.BATCH_SIZE}")
    logger.info(f"║  CONCURRENCY:    {settings.CONCURRENCY}")
    logger.info(
        f"║  DISPATCH:       max={settings.DISPATCH_MAX_CONCURRENT} "
        f"min_time={settings.DISPATCH_MIN_TIME_MS}ms"
    )
    logger.info(f"║  DB configured:  {bool(settings.DATABASE_URL)}")
    logger.info(f"║  API configured: {bool(settings.CATALOG_API_URL)}")
    logger.info("╚══════════════════════════════════════════════════════════════════╝")


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "log_startup_diagnostics",
]
