"""
tests/test_integration_postgres.py

Store semantics that need a real database: monotonic checkpoint under
concurrency, enqueue dedupe and SKIP LOCKED claims.

Run with:
    CATALOG_SYNC_TEST_DATABASE_URL=postgresql://... pytest -m integration
"""

from __future__ import annotations

import asyncio
import os
import uuid

import pytest
import pytest_asyncio

from catalog_sync.core.db import ensure_schema, open_pool
from catalog_sync.jobs.models import JobStatus
from catalog_sync.jobs.queue import PostgresJobQueue
from catalog_sync.state.checkpoint import PostgresCheckpointKV
from catalog_sync.state.counters import PostgresProgressCounters

DSN = os.environ.get("CATALOG_SYNC_TEST_DATABASE_URL", "")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not DSN, reason="CATALOG_SYNC_TEST_DATABASE_URL not set"),
]


@pytest_asyncio.fixture
async def pool():
    pool = await open_pool(DSN, max_size=8)
    await ensure_schema(pool)
    yield pool
    await pool.close()


@pytest.fixture
def file_key() -> str:
    return f"it-{uuid.uuid4().hex[:8]}.csv"


@pytest.mark.asyncio
async def test_checkpoint_is_monotonic_under_concurrency(pool, file_key: str) -> None:
    kv = PostgresCheckpointKV(pool)
    values = list(range(10, 210, 10))

    await asyncio.gather(*(kv.advance_if_higher(file_key, v, 200) for v in reversed(values)))

    assert await kv.get(file_key) == 200
    assert await kv.advance_if_higher(file_key, 150, 200) is False
    await kv.delete(file_key)


@pytest.mark.asyncio
async def test_counters_accumulate(pool, file_key: str) -> None:
    counters = PostgresProgressCounters(pool)
    await counters.initialize(file_key, 30)

    await asyncio.gather(*(counters.incr(file_key, updated=1, skipped=1) for _ in range(10)))

    counts = await counters.read(file_key)
    assert (counts.updated, counts.skipped, counts.remaining) == (10, 10, 10)
    await counters.reset(file_key)


@pytest.mark.asyncio
async def test_job_counts_apply_once(pool, file_key: str) -> None:
    counters = PostgresProgressCounters(pool)
    job_id = f"jobId_{file_key}_batch_row-0"

    results = await asyncio.gather(*(counters.incr(file_key, job_id=job_id, updated=2) for _ in range(3)))

    assert sorted(results) == [False, False, True]
    assert (await counters.read(file_key)).updated == 2
    await counters.reset(file_key)
    assert await counters.incr(file_key, job_id=job_id, updated=2) is True
    await counters.reset(file_key)


@pytest.mark.asyncio
async def test_queue_dedupes_and_claims_each_job_once(pool, file_key: str) -> None:
    queue = PostgresJobQueue(pool)
    ids = [f"jobId_{file_key}_batch_row-{i * 10}" for i in range(4)]
    for job_id in ids:
        assert await queue.enqueue(job_id, file_key, {"n": job_id}) is True
    assert await queue.enqueue(ids[0], file_key, {}) is False

    claimed = await asyncio.gather(*(queue.claim() for _ in range(6)))
    mine = [job.job_id for job in claimed if job is not None and job.file_key == file_key]

    assert sorted(mine) == sorted(ids)
    assert await queue.fail(ids[0], "boom", permanent=True) is JobStatus.FAILED
    assert await queue.list_job_ids(file_key, [JobStatus.FAILED]) == {ids[0]}
    assert await queue.purge(file_key) == 4
