"""
Per-file progress counters (updated / skipped / failed).

Increments are single-statement atomic adds in Postgres so any number of
workers can report into the same file concurrently. A job reports at most
once: its outcome row in sync_job_outcomes is the dedupe key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import psycopg
from psycopg_pool import AsyncConnectionPool

from catalog_sync.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

_INCR_SQL = """
INSERT INTO sync_progress (file_key, updated, skipped, failed)
VALUES (%(file_key)s, %(updated)s, %(skipped)s, %(failed)s)
ON CONFLICT (file_key) DO UPDATE
SET updated = sync_progress.updated + EXCLUDED.updated,
    skipped = sync_progress.skipped + EXCLUDED.skipped,
    failed = sync_progress.failed + EXCLUDED.failed,
    updated_at = NOW()
"""

# The outcome row and the increment commit together; a redelivered job
# inserts nothing, so the outer insert sees no rows
_INCR_ONCE_SQL = """
WITH recorded AS (
    INSERT INTO sync_job_outcomes (job_id, file_key, updated, skipped, failed)
    VALUES (%(job_id)s, %(file_key)s, %(updated)s, %(skipped)s, %(failed)s)
    ON CONFLICT (job_id) DO NOTHING
    RETURNING file_key, updated, skipped, failed
)
INSERT INTO sync_progress (file_key, updated, skipped, failed)
SELECT file_key, updated, skipped, failed FROM recorded
ON CONFLICT (file_key) DO UPDATE
SET updated = sync_progress.updated + EXCLUDED.updated,
    skipped = sync_progress.skipped + EXCLUDED.skipped,
    failed = sync_progress.failed + EXCLUDED.failed,
    updated_at = NOW()
"""


@dataclass(frozen=True)
class ProgressCounts:
    total_rows: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def completed(self) -> int:
        """Rows accounted for, whatever their outcome."""
        return self.updated + self.skipped + self.failed

    @property
    def remaining(self) -> int:
        return max(0, self.total_rows - self.completed)


class ProgressCounters(Protocol):
    async def initialize(self, file_key: str, total_rows: int) -> None: ...

    async def incr(
        self,
        file_key: str,
        *,
        job_id: Optional[str] = None,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> bool: ...

    async def read(self, file_key: str) -> ProgressCounts: ...

    async def reset(self, file_key: str) -> None: ...


class PostgresProgressCounters:
    """ProgressCounters over the sync_progress table."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def initialize(self, file_key: str, total_rows: int) -> None:
        """Register a file; existing counts are kept so a resumed run keeps its totals."""
        try:
            async with self._pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO sync_progress (file_key, total_rows)
                    VALUES (%(file_key)s, %(total_rows)s)
                    ON CONFLICT (file_key) DO UPDATE
                    SET total_rows = EXCLUDED.total_rows, updated_at = NOW()
                    """,
                    {"file_key": file_key, "total_rows": total_rows},
                )
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("progress counters", e) from e

    async def incr(
        self,
        file_key: str,
        *,
        job_id: Optional[str] = None,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> bool:
        """
        Add a batch's outcome to the file's counters.

        With a job_id the outcome is recorded in sync_job_outcomes by the
        same statement, and a job that has already reported adds nothing.

        Returns:
            True if the counts were applied
        """
        if not (updated or skipped or failed):
            return False
        params = {
            "file_key": file_key,
            "job_id": job_id,
            "updated": updated,
            "skipped": skipped,
            "failed": failed,
        }
        try:
            async with self._pool.connection() as conn:
                cur = await conn.execute(_INCR_SQL if job_id is None else _INCR_ONCE_SQL, params)
                applied = cur.rowcount > 0
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("progress counters", e) from e
        if not applied:
            logger.info("Job %s already reported its counts for %s", job_id, file_key)
        return applied

    async def read(self, file_key: str) -> ProgressCounts:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT total_rows, updated, skipped, failed
                        FROM sync_progress
                        WHERE file_key = %(file_key)s
                        """,
                        {"file_key": file_key},
                    )
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("progress counters", e) from e
        if row is None:
            return ProgressCounts()
        return ProgressCounts(
            total_rows=row["total_rows"],
            updated=row["updated"],
            skipped=row["skipped"],
            failed=row["failed"],
        )

    async def reset(self, file_key: str) -> None:
        params = {"file_key": file_key}
        try:
            async with self._pool.connection() as conn:
                await conn.execute("DELETE FROM sync_progress WHERE file_key = %(file_key)s", params)
                await conn.execute("DELETE FROM sync_job_outcomes WHERE file_key = %(file_key)s", params)
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("progress counters", e) from e
        logger.info("Reset progress counters for %s", file_key)
