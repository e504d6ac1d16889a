"""
Batch planning and enqueueing.

Consumes a CSV record stream for one file, drops rows before the resume
point, groups the rest into batches aligned to absolute multiples of the
batch size, and turns each batch into a queue job with a deterministic id.

Usage:
    planner = BatchPlanner(queue=queue, counters=counters)
    report = await planner.enqueue(
        records, file_key="vendor.csv", total_rows=500, batch_size=10,
        resume_from_row=await checkpoint.read("vendor.csv"),
    )

Plan-only mode (no queue access):
    jobs = await planner.plan(records, file_key="vendor.csv", total_rows=500, batch_size=10)
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Optional

from catalog_sync.core.errors import MalformedRowError, log_error
from catalog_sync.core.logging import LogContext
from catalog_sync.ingest.csv_source import parse_header, parse_record
from catalog_sync.ingest.normalizer import CanonicalRow, ColumnMapping, normalize_row
from catalog_sync.jobs.models import ALL_STATUSES, BatchJobPayload, RowModel
from catalog_sync.jobs.queue import JobQueue
from catalog_sync.state.counters import ProgressCounters

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def make_job_id(file_key: str, start_index: int, final_partial: bool = False) -> str:
    """
    Deterministic job id for the batch starting at start_index.

    Re-planning the same file yields the same ids, which is what lets the
    queue reject work it has already seen.
    """
    safe_key = _WHITESPACE_RE.sub("_", file_key)
    job_id = f"jobId_{safe_key}_batch_row-{start_index}"
    if final_partial:
        job_id += "_final"
    return job_id


@dataclass(frozen=True)
class Batch:
    """Contiguous slice of a file's row-index space."""

    file_key: str
    start_index: int
    size: int
    rows: tuple[CanonicalRow, ...]

    @property
    def end_index(self) -> int:
        return self.start_index + self.size


@dataclass(frozen=True)
class PlannedJob:
    job_id: str
    batch: Batch
    total_rows: int

    def payload(self) -> dict[str, Any]:
        return BatchJobPayload(
            batch=[RowModel.from_row(r) for r in self.batch.rows],
            file_key=self.batch.file_key,
            total_products_in_file=self.total_rows,
            start_index=self.batch.start_index,
            batch_size=self.batch.size,
        ).model_dump()

    def to_dict(self) -> dict[str, Any]:
        return {"job_id": self.job_id, **self.payload()}


@dataclass
class EnqueueReport:
    file_key: str
    total_rows: int
    resume_from_row: int
    rows_seen: int = 0
    rows_skipped_for_resume: int = 0
    malformed_rows: list[int] = field(default_factory=list)
    planned: int = 0
    enqueued: int = 0
    duplicates: int = 0
    plan_only: bool = False
    jobs: list[PlannedJob] = field(default_factory=list)


def plans_to_json(jobs: list[PlannedJob]) -> str:
    """Canonical JSON for a plan; two plans are identical iff their JSON is."""
    return json.dumps([j.to_dict() for j in jobs], sort_keys=True, separators=(",", ":"))


def verify_plans_identical(a: list[PlannedJob], b: list[PlannedJob]) -> bool:
    return plans_to_json(a) == plans_to_json(b)


class _BatchAccumulator:
    """Groups rows into batches aligned to multiples of batch_size."""

    def __init__(self, file_key: str, batch_size: int, total_rows: int) -> None:
        self.file_key = file_key
        self.batch_size = batch_size
        self.total_rows = total_rows
        self._start: Optional[int] = None
        self._rows: list[CanonicalRow] = []

    def _close(self, end_index: int) -> Optional[Batch]:
        if self._start is None:
            return None
        batch = Batch(
            file_key=self.file_key,
            start_index=self._start,
            size=end_index - self._start,
            rows=tuple(self._rows),
        )
        self._start = None
        self._rows = []
        return batch

    def add(self, row: CanonicalRow) -> Optional[Batch]:
        """Append a row; returns a finished batch when the row completes one."""
        index = row.index
        if self._start is None:
            self._start = index
        self._rows.append(row)
        if (index + 1) % self.batch_size == 0:
            return self._close(index + 1)
        return None

    def finish(self, end_index: int) -> Optional[Batch]:
        return self._close(end_index)


class BatchPlanner:
    """Plans (and optionally enqueues) batch jobs for one CSV file."""

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        counters: Optional[ProgressCounters] = None,
        max_attempts: int = 5,
    ) -> None:
        self.queue = queue
        self.counters = counters
        self.max_attempts = max_attempts

    async def _iter_jobs(
        self,
        records: AsyncIterable[str],
        report: EnqueueReport,
        batch_size: int,
        mapping: Optional[ColumnMapping],
    ) -> AsyncIterator[PlannedJob]:
        file_key = report.file_key
        accumulator = _BatchAccumulator(file_key, batch_size, report.total_rows)
        header: Optional[list[str]] = None
        index = 0

        # Sources have already dropped the preamble; the first record is the header
        async for record in records:
            if header is None:
                header = parse_header(record)
                continue

            index = report.rows_seen
            report.rows_seen += 1

            if index < report.resume_from_row:
                report.rows_skipped_for_resume += 1
                continue

            try:
                raw = parse_record(header, record, index)
                row = normalize_row(raw, index, mapping)
            except MalformedRowError as e:
                log_error(e, level=logging.WARNING, file_key=file_key)
                report.malformed_rows.append(index)
                # Placeholder keeps the slot; the processor counts it as skipped
                row = CanonicalRow(index=index, error=e.reason)

            batch = accumulator.add(row)
            if batch is not None:
                yield self._to_job(batch, batch_size, report.total_rows, final=False)

        if header is None:
            raise ValueError(f"{file_key}: no header row found")

        batch = accumulator.finish(report.rows_seen)
        if batch is not None:
            yield self._to_job(batch, batch_size, report.total_rows, final=True)

    @staticmethod
    def _to_job(batch: Batch, batch_size: int, total_rows: int, final: bool) -> PlannedJob:
        final_partial = final and batch.size < batch_size
        return PlannedJob(
            job_id=make_job_id(batch.file_key, batch.start_index, final_partial),
            batch=batch,
            total_rows=total_rows,
        )

    async def plan(
        self,
        records: AsyncIterable[str],
        *,
        file_key: str,
        total_rows: int,
        batch_size: int,
        mapping: Optional[ColumnMapping] = None,
        resume_from_row: int = 0,
    ) -> list[PlannedJob]:
        """Plan-only mode: return the jobs that enqueue() would submit."""
        report = await self._run(
            records,
            file_key=file_key,
            total_rows=total_rows,
            batch_size=batch_size,
            mapping=mapping,
            resume_from_row=resume_from_row,
            plan_only=True,
        )
        return report.jobs

    async def enqueue(
        self,
        records: AsyncIterable[str],
        *,
        file_key: str,
        total_rows: int,
        batch_size: int,
        mapping: Optional[ColumnMapping] = None,
        resume_from_row: int = 0,
    ) -> EnqueueReport:
        """
        Plan and submit jobs, skipping any whose id the queue already knows.

        Raises:
            StoreUnavailableError: If the queue or counters cannot be reached
        """
        if self.queue is None:
            raise ValueError("BatchPlanner.enqueue requires a queue")
        return await self._run(
            records,
            file_key=file_key,
            total_rows=total_rows,
            batch_size=batch_size,
            mapping=mapping,
            resume_from_row=resume_from_row,
            plan_only=False,
        )

    async def _run(
        self,
        records: AsyncIterable[str],
        *,
        file_key: str,
        total_rows: int,
        batch_size: int,
        mapping: Optional[ColumnMapping],
        resume_from_row: int,
        plan_only: bool,
    ) -> EnqueueReport:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        resume_from_row = max(0, resume_from_row)
        report = EnqueueReport(
            file_key=file_key,
            total_rows=total_rows,
            resume_from_row=resume_from_row,
            plan_only=plan_only,
        )

        with LogContext(file_key=file_key):
            existing: set[str] = set()
            if not plan_only:
                assert self.queue is not None
                if self.counters is not None:
                    await self.counters.initialize(file_key, total_rows)
                existing = await self.queue.list_job_ids(file_key, ALL_STATUSES)
                logger.info(
                    "Planning %s: total_rows=%d batch_size=%d resume_from_row=%d known_jobs=%d",
                    file_key,
                    total_rows,
                    batch_size,
                    resume_from_row,
                    len(existing),
                )

            async for job in self._iter_jobs(records, report, batch_size, mapping):
                report.planned += 1
                if plan_only:
                    report.jobs.append(job)
                    continue

                if job.job_id in existing:
                    report.duplicates += 1
                    logger.info("Job %s already queued, skipping", job.job_id)
                    continue

                assert self.queue is not None
                created = await self.queue.enqueue(
                    job.job_id,
                    file_key,
                    job.payload(),
                    max_attempts=self.max_attempts,
                )
                if created:
                    report.enqueued += 1
                    report.jobs.append(job)
                    existing.add(job.job_id)
                else:
                    report.duplicates += 1
                    logger.info("Job %s already queued, skipping", job.job_id)

            if report.rows_seen != total_rows:
                logger.warning(
                    "%s: counted %d data rows but stream yielded %d",
                    file_key,
                    total_rows,
                    report.rows_seen,
                )

            logger.info(
                "Planned %s: planned=%d enqueued=%d duplicates=%d malformed=%d resumed_past=%d",
                file_key,
                report.planned,
                report.enqueued,
                report.duplicates,
                len(report.malformed_rows),
                report.rows_skipped_for_resume,
            )
        return report
