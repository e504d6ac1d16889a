"""
Checkpoint store: highest row fully processed, per file.

Two layers:

- a fast atomic key/value layer (Postgres row per file) that performs the
  compare-and-set: the stored value only ever moves up
- a durable JSON snapshot with the human-readable progress breakdown,
  rewritten whenever the fast layer advances

Workers finish batches in any order. A worker that finishes batch 0 after
another worker finished batch 5 proposes a lower value, and the
compare-and-set rejects it; stored progress never goes backwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

import psycopg
from psycopg_pool import AsyncConnectionPool

from catalog_sync.core.errors import StoreUnavailableError
from catalog_sync.jobs.models import JobLevelStats
from catalog_sync.state.counters import ProgressCounters
from catalog_sync.state.snapshot import CheckpointSnapshot, JobLevel, JsonSnapshotStore, RowLevel

logger = logging.getLogger(__name__)


class CheckpointKV(Protocol):
    async def advance_if_higher(self, file_key: str, value: int, total_rows: int) -> bool: ...

    async def get(self, file_key: str) -> Optional[int]: ...

    async def delete(self, file_key: str) -> None: ...


class JobStatsSource(Protocol):
    async def status_counts(self, file_key: str) -> JobLevelStats: ...


class PostgresCheckpointKV:
    """CheckpointKV over the sync_checkpoints table."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def advance_if_higher(self, file_key: str, value: int, total_rows: int) -> bool:
        """
        Store value if it exceeds the stored one (or none is stored).

        Single statement, so concurrent callers are serialized by the row lock.
        Returns True when the stored value changed.
        """
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        """
                        INSERT INTO sync_checkpoints (file_key, last_processed_row, total_rows)
                        VALUES (%(file_key)s, %(value)s, %(total_rows)s)
                        ON CONFLICT (file_key) DO UPDATE
                        SET last_processed_row = EXCLUDED.last_processed_row,
                            total_rows = EXCLUDED.total_rows,
                            updated_at = NOW()
                        WHERE sync_checkpoints.last_processed_row < EXCLUDED.last_processed_row
                        RETURNING last_processed_row
                        """,
                        {"file_key": file_key, "value": value, "total_rows": total_rows},
                    )
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("checkpoint store", e) from e
        return row is not None

    async def get(self, file_key: str) -> Optional[int]:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        "SELECT last_processed_row FROM sync_checkpoints WHERE file_key = %(file_key)s",
                        {"file_key": file_key},
                    )
                    row = await cur.fetchone()
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("checkpoint store", e) from e
        return row["last_processed_row"] if row else None

    async def delete(self, file_key: str) -> None:
        try:
            async with self._pool.connection() as conn:
                await conn.execute(
                    "DELETE FROM sync_checkpoints WHERE file_key = %(file_key)s",
                    {"file_key": file_key},
                )
        except psycopg.OperationalError as e:
            raise StoreUnavailableError("checkpoint store", e) from e


class CheckpointStore:
    """Monotonic checkpoint with a durable snapshot fallback."""

    def __init__(
        self,
        kv: CheckpointKV,
        counters: ProgressCounters,
        snapshots: JsonSnapshotStore,
        job_stats: Optional[JobStatsSource] = None,
    ) -> None:
        self.kv = kv
        self.counters = counters
        self.snapshots = snapshots
        self.job_stats = job_stats

    async def advance(self, file_key: str, candidate_row: int, total_rows: int) -> bool:
        """
        Move the checkpoint to candidate_row if that is higher than what is stored.

        Returns True when the checkpoint moved (and the snapshot was refreshed).

        Raises:
            StoreUnavailableError: If the fast store, counters or snapshot fail
        """
        advanced = await self.kv.advance_if_higher(file_key, candidate_row, total_rows)
        if not advanced:
            logger.debug("Checkpoint for %s not advanced to %d", file_key, candidate_row)
            return False

        snapshot = await self._build_snapshot(file_key, candidate_row, total_rows)
        try:
            await self.snapshots.write(file_key, snapshot)
        except OSError as e:
            raise StoreUnavailableError("checkpoint snapshot", e) from e

        row_level = snapshot.row_level
        logger.info(
            "Checkpoint %s -> %d/%d (updated=%d skipped=%d failed=%d remaining_jobs=%d)",
            file_key,
            candidate_row,
            total_rows,
            row_level.updated,
            row_level.skipped,
            row_level.failed,
            snapshot.job_level.total_remaining_jobs,
        )
        return True

    async def _build_snapshot(self, file_key: str, last_row: int, total_rows: int) -> CheckpointSnapshot:
        counts = await self.counters.read(file_key)
        stats = JobLevelStats()
        if self.job_stats is not None:
            stats = await self.job_stats.status_counts(file_key)
        return CheckpointSnapshot(
            row_level=RowLevel(
                last_processed_row=last_row,
                total_rows=total_rows,
                updated=counts.updated,
                skipped=counts.skipped,
                failed=counts.failed,
                completed_rows=counts.completed,
                remaining_rows=max(0, total_rows - counts.completed),
            ),
            job_level=JobLevel(
                waiting=stats.waiting,
                active=stats.active,
                delayed=stats.delayed,
                total_remaining_jobs=stats.total_remaining,
            ),
            timestamp=datetime.now(timezone.utc),
        )

    async def read(self, file_key: str) -> int:
        """
        Resume point for the planner.

        Falls back to the snapshot when the fast store is unreachable, and
        reseeds the fast store from the snapshot when it has no entry.
        """
        try:
            stored = await self.kv.get(file_key)
        except StoreUnavailableError as e:
            snapshot = self.snapshots.read(file_key)
            value = snapshot.row_level.last_processed_row if snapshot else 0
            logger.warning(
                "Checkpoint store unavailable (%s); using snapshot value %d for %s",
                e.message,
                value,
                file_key,
            )
            return value

        if stored is not None:
            return stored

        snapshot = self.snapshots.read(file_key)
        if snapshot is None or snapshot.row_level.last_processed_row <= 0:
            return 0

        value = snapshot.row_level.last_processed_row
        await self.kv.advance_if_higher(file_key, value, snapshot.row_level.total_rows)
        logger.info("Reseeded checkpoint for %s from snapshot: %d", file_key, value)
        return value

    async def clear(self, file_key: str) -> None:
        """Forget all progress for a file (full reprocessing)."""
        await self.kv.delete(file_key)
        await self.counters.reset(file_key)
        self.snapshots.delete(file_key)
        logger.info("Cleared checkpoint for %s", file_key)

    async def progress(self, file_key: str) -> RowLevel:
        """Current row-level progress, from the live stores or else the snapshot."""
        try:
            last_row = await self.kv.get(file_key) or 0
            counts = await self.counters.read(file_key)
        except StoreUnavailableError as e:
            logger.warning("Live progress unavailable for %s (%s); reading snapshot", file_key, e.message)
            snapshot = self.snapshots.read(file_key)
            return snapshot.row_level if snapshot else RowLevel()
        return RowLevel(
            last_processed_row=last_row,
            total_rows=counts.total_rows,
            updated=counts.updated,
            skipped=counts.skipped,
            failed=counts.failed,
            completed_rows=counts.completed,
            remaining_rows=counts.remaining,
        )

    async def is_complete(self, file_key: str, total_rows: int) -> bool:
        counts = await self.counters.read(file_key)
        return counts.completed >= total_rows
