"""
Catalog Sync - Postgres connection pool and schema.

All atomic state (checkpoint compare-and-set, progress counters, job queue)
lives in Postgres and is accessed through a shared psycopg async pool.
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from catalog_sync.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    file_key            TEXT PRIMARY KEY,
    last_processed_row  INTEGER NOT NULL CHECK (last_processed_row >= 0),
    total_rows          INTEGER NOT NULL DEFAULT 0,
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sync_progress (
    file_key    TEXT PRIMARY KEY,
    total_rows  INTEGER NOT NULL DEFAULT 0,
    updated     INTEGER NOT NULL DEFAULT 0,
    skipped     INTEGER NOT NULL DEFAULT 0,
    failed      INTEGER NOT NULL DEFAULT 0,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sync_jobs (
    job_id        TEXT PRIMARY KEY,
    file_key      TEXT NOT NULL,
    payload       JSONB NOT NULL,
    status        TEXT NOT NULL DEFAULT 'waiting',
    attempts      INTEGER NOT NULL DEFAULT 0,
    max_attempts  INTEGER NOT NULL DEFAULT 5,
    last_error    TEXT,
    run_after     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    locked_at     TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS sync_job_outcomes (
    job_id      TEXT PRIMARY KEY,
    file_key    TEXT NOT NULL,
    updated     INTEGER NOT NULL DEFAULT 0,
    skipped     INTEGER NOT NULL DEFAULT 0,
    failed      INTEGER NOT NULL DEFAULT 0,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_sync_job_outcomes_file_key
    ON sync_job_outcomes (file_key);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_claim
    ON sync_jobs (status, run_after, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_file_key
    ON sync_jobs (file_key, status);
"""


def _describe_dsn(dsn: str) -> str:
    """host:port/dbname for logs (no credentials)."""
    parsed = urlparse(dsn)
    return f"{parsed.hostname or '?'}:{parsed.port or 5432}{parsed.path or ''}"


async def open_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> AsyncConnectionPool:
    """
    Open an async connection pool.

    Raises:
        StoreUnavailableError: If the database cannot be reached.
    """
    if not dsn:
        raise StoreUnavailableError("postgres", ValueError("DATABASE_URL is not set"))

    pool = AsyncConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"application_name": "catalog_sync", "row_factory": dict_row},
        open=False,
    )
    try:
        await pool.open(wait=True, timeout=30)
    except (psycopg.OperationalError, TimeoutError) as e:
        raise StoreUnavailableError("postgres", e) from e

    logger.info("Postgres pool open (%s, max_size=%d)", _describe_dsn(dsn), max_size)
    return pool


async def ensure_schema(pool: AsyncConnectionPool) -> None:
    """Create pipeline tables if they do not exist."""
    async with pool.connection() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Schema ensured")
