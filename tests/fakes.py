"""
tests/fakes.py

In-memory stand-ins for the Postgres stores and the remote catalog, plus
small builders for rows and records. They implement the same Protocols as
the real classes so the processor, planner and worker can be exercised
without a database or network.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Iterable, Optional
from unittest.mock import AsyncMock, MagicMock

from catalog_sync.core.errors import StoreUnavailableError
from catalog_sync.ingest.normalizer import CanonicalRow
from catalog_sync.jobs.models import JobLevelStats, JobStatus, QueuedJob
from catalog_sync.remote.catalog import BulkWriteResult, CatalogRecord
from catalog_sync.state.counters import ProgressCounts

# =============================================================================
# Builders
# =============================================================================


def make_row(index: int, identifier: str = "", manufacturer: str = "", **attributes: str) -> CanonicalRow:
    return CanonicalRow(
        index=index,
        identifier=identifier,
        manufacturer=manufacturer,
        attributes=dict(attributes),
    )


def make_record(product_id: int, part_number: str, manufacturer: str, **meta: str) -> CatalogRecord:
    return CatalogRecord(
        id=product_id,
        name=part_number,
        sku=f"{part_number}_{manufacturer}",
        meta={"part_number": part_number, "manufacturer": manufacturer, **meta},
    )


def csv_bytes(lines: Iterable[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


async def collect(aiterable) -> list:
    return [item async for item in aiterable]


async def byte_chunks(content: bytes, size: int):
    for i in range(0, len(content), size):
        yield content[i : i + size]


# =============================================================================
# psycopg pool mocks
# =============================================================================


def make_mock_pool(fetchone: Optional[list] = None, fetchall: Optional[list] = None, rowcount: int = 0):
    """
    Pool whose connection() yields a connection with an AsyncMock cursor.

    Returns (pool, conn, cursor).
    """
    cursor = AsyncMock()
    cursor.execute = AsyncMock()
    cursor.fetchone = AsyncMock(side_effect=fetchone or [None])
    cursor.fetchall = AsyncMock(side_effect=fetchall or [[]])
    cursor.rowcount = rowcount

    cursor_cm = AsyncMock()
    cursor_cm.__aenter__ = AsyncMock(return_value=cursor)
    cursor_cm.__aexit__ = AsyncMock(return_value=None)

    conn = AsyncMock()
    conn.cursor = MagicMock(return_value=cursor_cm)
    conn.execute = AsyncMock(return_value=cursor)

    conn_cm = AsyncMock()
    conn_cm.__aenter__ = AsyncMock(return_value=conn)
    conn_cm.__aexit__ = AsyncMock(return_value=None)

    pool = MagicMock()
    pool.connection = MagicMock(return_value=conn_cm)
    return pool, conn, cursor


# =============================================================================
# Stores
# =============================================================================


class MemoryCheckpointKV:
    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.available = True
        self._lock = asyncio.Lock()

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("checkpoint store")

    async def advance_if_higher(self, file_key: str, value: int, total_rows: int) -> bool:
        self._check()
        async with self._lock:
            # Yield so concurrent callers interleave
            await asyncio.sleep(0)
            current = self.values.get(file_key)
            if current is not None and current >= value:
                return False
            self.values[file_key] = value
            return True

    async def get(self, file_key: str) -> Optional[int]:
        self._check()
        return self.values.get(file_key)

    async def delete(self, file_key: str) -> None:
        self._check()
        self.values.pop(file_key, None)


class MemoryProgressCounters:
    def __init__(self) -> None:
        self.counts: dict[str, ProgressCounts] = {}
        self.reported_jobs: dict[str, str] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError("progress counters")

    async def initialize(self, file_key: str, total_rows: int) -> None:
        self._check()
        current = self.counts.get(file_key, ProgressCounts())
        self.counts[file_key] = replace(current, total_rows=total_rows)

    async def incr(
        self,
        file_key: str,
        *,
        job_id: Optional[str] = None,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> bool:
        self._check()
        if not (updated or skipped or failed):
            return False
        if job_id is not None:
            if job_id in self.reported_jobs:
                return False
            self.reported_jobs[job_id] = file_key
        current = self.counts.get(file_key, ProgressCounts())
        self.counts[file_key] = replace(
            current,
            updated=current.updated + updated,
            skipped=current.skipped + skipped,
            failed=current.failed + failed,
        )
        return True

    async def read(self, file_key: str) -> ProgressCounts:
        self._check()
        return self.counts.get(file_key, ProgressCounts())

    async def reset(self, file_key: str) -> None:
        self._check()
        self.counts.pop(file_key, None)
        self.reported_jobs = {j: f for j, f in self.reported_jobs.items() if f != file_key}


class MemoryJobQueue:
    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.failures: list[tuple[str, str, float, bool]] = []

    async def enqueue(self, job_id: str, file_key: str, payload: dict[str, Any], *, max_attempts: int = 5) -> bool:
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = {
            "file_key": file_key,
            "payload": payload,
            "status": JobStatus.WAITING,
            "attempts": 0,
            "max_attempts": max_attempts,
        }
        return True

    async def list_job_ids(self, file_key: str, statuses=None) -> set[str]:
        wanted = set(statuses) if statuses is not None else None
        return {
            job_id
            for job_id, job in self.jobs.items()
            if job["file_key"] == file_key and (wanted is None or job["status"] in wanted)
        }

    async def claim(self) -> Optional[QueuedJob]:
        for job_id, job in self.jobs.items():
            if job["status"] in (JobStatus.WAITING, JobStatus.DELAYED):
                job["status"] = JobStatus.ACTIVE
                job["attempts"] += 1
                return QueuedJob(
                    job_id=job_id,
                    file_key=job["file_key"],
                    payload=job["payload"],
                    attempts=job["attempts"],
                    max_attempts=job["max_attempts"],
                )
        return None

    async def complete(self, job_id: str) -> None:
        self.jobs[job_id]["status"] = JobStatus.COMPLETED

    async def fail(self, job_id: str, error: str, *, delay_seconds: float = 0.0, permanent: bool = False) -> JobStatus:
        job = self.jobs[job_id]
        self.failures.append((job_id, error, delay_seconds, permanent))
        if permanent or job["attempts"] >= job["max_attempts"]:
            job["status"] = JobStatus.FAILED
        else:
            job["status"] = JobStatus.DELAYED
        return job["status"]

    async def status_counts(self, file_key: str) -> JobLevelStats:
        statuses = [j["status"] for j in self.jobs.values() if j["file_key"] == file_key]
        return JobLevelStats(
            waiting=statuses.count(JobStatus.WAITING),
            active=statuses.count(JobStatus.ACTIVE),
            delayed=statuses.count(JobStatus.DELAYED),
        )

    async def purge(self, file_key: str) -> int:
        doomed = [job_id for job_id, job in self.jobs.items() if job["file_key"] == file_key]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)

    def status_of(self, job_id: str) -> JobStatus:
        return self.jobs[job_id]["status"]


# =============================================================================
# Remote catalog
# =============================================================================


class FakeCatalog:
    """CatalogGateway over a dict of records, recording every write."""

    def __init__(self, records: Iterable[CatalogRecord] = ()) -> None:
        self.records: dict[int, CatalogRecord] = {r.id: r for r in records}
        self.index: dict[tuple[str, str], int] = {
            (r.get_meta("part_number"), r.get_meta("manufacturer").lower()): r.id for r in self.records.values()
        }
        self.writes: list[list[dict[str, Any]]] = []
        self.rejected: dict[int, str] = {}
        self.bulk_error: Optional[BaseException] = None
        self.lookup_calls: list[tuple[str, str]] = []
        self.created: list[dict[str, Any]] = []
        self.create_errors: dict[str, BaseException] = {}

    async def lookup_id_by_identifier(self, identifier: str, manufacturer: str) -> Optional[int]:
        self.lookup_calls.append((identifier, manufacturer))
        return self.index.get((identifier, manufacturer.lower()))

    async def fetch_by_id(self, product_id: int) -> Optional[CatalogRecord]:
        return self.records.get(product_id)

    async def bulk_write(self, payloads: list[dict[str, Any]], *, task_id: str = "bulk") -> BulkWriteResult:
        if self.bulk_error is not None:
            raise self.bulk_error
        self.writes.append(payloads)
        result = BulkWriteResult()
        for payload in payloads:
            if payload["id"] in self.rejected:
                result.errors.append({"id": payload["id"], "error": self.rejected[payload["id"]]})
            else:
                result.written_count += 1
        return result

    async def create_product(self, payload: dict[str, Any], *, task_id: str = "create") -> CatalogRecord:
        error = self.create_errors.get(payload["sku"])
        if error is not None:
            raise error
        self.created.append(payload)
        record = CatalogRecord(id=1000 + len(self.created), name=payload["name"], sku=payload["sku"])
        self.records[record.id] = record
        return record

    @property
    def written_ids(self) -> list[int]:
        return [p["id"] for batch in self.writes for p in batch]
