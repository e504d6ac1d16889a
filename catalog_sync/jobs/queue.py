"""
Durable job queue backed by Postgres.

- enqueue is idempotent on job_id (ON CONFLICT DO NOTHING)
- claim uses FOR UPDATE SKIP LOCKED so concurrent workers never share a job
- an active job whose worker died is redelivered once its lock goes stale
- failures are rescheduled with backoff until max_attempts, then parked as failed
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any, Optional, Protocol

import psycopg
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from catalog_sync.core.errors import StoreUnavailableError
from catalog_sync.jobs.models import JobLevelStats, JobStatus, QueuedJob

logger = logging.getLogger(__name__)


class JobQueue(Protocol):
    async def enqueue(self, job_id: str, file_key: str, payload: dict[str, Any], *, max_attempts: int = 5) -> bool: ...

    async def list_job_ids(self, file_key: str, statuses: Optional[Iterable[JobStatus]] = None) -> set[str]: ...

    async def claim(self) -> Optional[QueuedJob]: ...

    async def complete(self, job_id: str) -> None: ...

    async def fail(self, job_id: str, error: str, *, delay_seconds: float = 0.0, permanent: bool = False) -> JobStatus: ...

    async def status_counts(self, file_key: str) -> JobLevelStats: ...

    async def purge(self, file_key: str) -> int: ...


class PostgresJobQueue:
    """JobQueue over the sync_jobs table."""

    def __init__(self, pool: AsyncConnectionPool, visibility_timeout_seconds: float = 600.0) -> None:
        self._pool = pool
        self._visibility_timeout = visibility_timeout_seconds

    async def enqueue(
        self,
        job_id: str,
        file_key: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = 5,
    ) -> bool:
        """
        Insert a job. Returns False when job_id already exists (any status).
        """
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        INSERT INTO sync_jobs (job_id, file_key, payload, status, max_attempts)
                        VALUES (%(job_id)s, %(file_key)s, %(payload)s, 'waiting', %(max_attempts)s)
                        ON CONFLICT (job_id) DO NOTHING
                        RETURNING job_id
                        """,
                        {
                            "job_id": job_id,
                            "file_key": file_key,
                            "payload": Jsonb(payload),
                            "max_attempts": max_attempts,
                        },
                    )
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e
        return row is not None

    async def list_job_ids(
        self,
        file_key: str,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> set[str]:
        status_values: Optional[Sequence[str]] = (
            [JobStatus(s).value for s in statuses] if statuses is not None else None
        )
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT job_id FROM sync_jobs
                        WHERE file_key = %(file_key)s
                          AND (%(statuses)s::text[] IS NULL OR status = ANY(%(statuses)s::text[]))
                        """,
                        {"file_key": file_key, "statuses": status_values},
                    )
                    rows = await cur.fetchall()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e
        return {row["job_id"] for row in rows}

    async def claim(self) -> Optional[QueuedJob]:
        """Claim the oldest runnable job, or a stale active one."""
        query = """
            WITH claimed AS (
                SELECT job_id
                FROM sync_jobs
                WHERE (status IN ('waiting', 'delayed') AND run_after <= NOW())
                   OR (status = 'active'
                       AND locked_at < NOW() - make_interval(secs => %(visibility)s))
                ORDER BY run_after, created_at
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            UPDATE sync_jobs j
            SET status = 'active',
                attempts = j.attempts + 1,
                locked_at = NOW(),
                updated_at = NOW()
            FROM claimed c
            WHERE j.job_id = c.job_id
            RETURNING j.job_id, j.file_key, j.payload, j.attempts, j.max_attempts, j.created_at
        """
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, {"visibility": self._visibility_timeout})
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e

        if row is None:
            return None
        return QueuedJob(
            job_id=row["job_id"],
            file_key=row["file_key"],
            payload=row["payload"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            created_at=row["created_at"],
        )

    async def complete(self, job_id: str) -> None:
        try:
            async with self._pool.connection() as conn:
                await conn.execute(
                    """
                    UPDATE sync_jobs
                    SET status = 'completed', locked_at = NULL, last_error = NULL, updated_at = NOW()
                    WHERE job_id = %(job_id)s
                    """,
                    {"job_id": job_id},
                )
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e

    async def fail(
        self,
        job_id: str,
        error: str,
        *,
        delay_seconds: float = 0.0,
        permanent: bool = False,
    ) -> JobStatus:
        """
        Record a failed delivery.

        The job goes back to 'delayed' (runnable after delay_seconds) unless it
        is permanent or has used all its attempts, in which case it is 'failed'.
        """
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        UPDATE sync_jobs
                        SET status = CASE
                                WHEN %(permanent)s OR attempts >= max_attempts THEN 'failed'
                                ELSE 'delayed'
                            END,
                            last_error = %(error)s,
                            run_after = NOW() + make_interval(secs => %(delay)s),
                            locked_at = NULL,
                            updated_at = NOW()
                        WHERE job_id = %(job_id)s
                        RETURNING status
                        """,
                        {
                            "job_id": job_id,
                            "error": error[:1000],
                            "delay": delay_seconds,
                            "permanent": permanent,
                        },
                    )
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e

        status = JobStatus(row["status"]) if row else JobStatus.FAILED
        if status is JobStatus.FAILED:
            logger.warning("Job %s failed permanently: %s", job_id, error)
        else:
            logger.info("Job %s rescheduled in %.1fs", job_id, delay_seconds)
        return status

    async def status_counts(self, file_key: str) -> JobLevelStats:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        SELECT status, COUNT(*) AS n
                        FROM sync_jobs
                        WHERE file_key = %(file_key)s
                          AND status IN ('waiting', 'active', 'delayed')
                        GROUP BY status
                        """,
                        {"file_key": file_key},
                    )
                    rows = await cur.fetchall()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e
        counts = {row["status"]: row["n"] for row in rows}
        return JobLevelStats(
            waiting=counts.get("waiting", 0),
            active=counts.get("active", 0),
            delayed=counts.get("delayed", 0),
        )

    async def purge(self, file_key: str) -> int:
        """Delete every job of a file (full reprocessing)."""
        try:
            async with self._pool.connection() as conn:
                cur = await conn.execute(
                    "DELETE FROM sync_jobs WHERE file_key = %(file_key)s",
                    {"file_key": file_key},
                )
                deleted = cur.rowcount
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("job queue", e) from e
        logger.info("Purged %d job(s) for %s", deleted, file_key)
        return deleted
