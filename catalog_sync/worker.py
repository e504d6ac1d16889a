"""
Batch worker: pulls jobs from the queue and runs them through the RowProcessor.

- CONCURRENCY loops per process, one job at a time each
- payloads are validated before processing; an invalid payload fails permanently
- each job runs under JOB_TIMEOUT_SECONDS; a timed-out or crashed job goes back
  to the queue with exponential backoff until its attempts are used up
- SIGINT / SIGTERM stop the loops after the job in hand finishes

Usage:
    worker = BatchWorker(queue, processor, settings, counters=counters)
    await worker.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from catalog_sync.core.config import Settings, get_settings
from catalog_sync.core.errors import InvalidJobPayloadError, JobTimeoutError, log_error
from catalog_sync.core.logging import LogContext, Timer
from catalog_sync.jobs.models import BatchJobPayload, JobStatus, QueuedJob
from catalog_sync.jobs.queue import JobQueue
from catalog_sync.state.counters import ProgressCounters
from catalog_sync.sync.processor import RowProcessor

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Runtime statistics for the worker."""

    completed: int = 0
    retried: int = 0
    failed: int = 0
    timed_out: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()


class BatchWorker:
    def __init__(
        self,
        queue: JobQueue,
        processor: RowProcessor,
        settings: Optional[Settings] = None,
        *,
        counters: Optional[ProgressCounters] = None,
    ) -> None:
        settings = settings or get_settings()
        self.queue = queue
        self.processor = processor
        self.counters = counters
        self.concurrency = settings.CONCURRENCY
        self.job_timeout_seconds = settings.JOB_TIMEOUT_SECONDS
        self.backoff_seconds = settings.JOB_BACKOFF_SECONDS
        self.poll_interval_seconds = settings.POLL_INTERVAL_SECONDS
        self.stats = WorkerStats()
        self._shutdown_event = asyncio.Event()
        self._completed_files: set[str] = set()

    def backoff_for(self, attempts: int) -> float:
        return self.backoff_seconds * (2 ** max(0, attempts - 1))

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run worker loops until shutdown() is called or a signal arrives."""
        if install_signal_handlers:
            self._setup_signal_handlers()

        logger.info(
            "Starting batch worker: concurrency=%d job_timeout=%.0fs",
            self.concurrency,
            self.job_timeout_seconds,
        )
        loops = [asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)]
        try:
            await asyncio.gather(*loops)
        finally:
            for task in loops:
                task.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            logger.info(
                "Batch worker stopped: completed=%d retried=%d failed=%d timed_out=%d",
                self.stats.completed,
                self.stats.retried,
                self.stats.failed,
                self.stats.timed_out,
            )

    def shutdown(self) -> None:
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested; finishing jobs in hand")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

    async def _worker_loop(self, worker_id: int) -> None:
        logger.info("Worker loop %d started", worker_id)
        while not self._shutdown_event.is_set():
            try:
                handled = await self.process_one()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Worker loop %d error: %s", worker_id, e)
                handled = False
            if not handled:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("Worker loop %d stopped", worker_id)

    async def process_one(self) -> bool:
        """Claim and handle a single job. Returns False when the queue is empty."""
        job = await self.queue.claim()
        if job is None:
            return False
        await self._handle(job)
        return True

    async def _handle(self, job: QueuedJob) -> None:
        start_index = job.payload.get("start_index") if isinstance(job.payload, dict) else None
        with LogContext(file_key=job.file_key, job_id=job.job_id, start_index=start_index):
            try:
                payload = BatchJobPayload.parse(job.payload, job.job_id)
            except InvalidJobPayloadError as e:
                log_error(e, validation_errors=e.validation_errors)
                await self.queue.fail(job.job_id, f"Invalid payload: {e}", permanent=True)
                self.stats.failed += 1
                return

            logger.info("Job %s attempt %d/%d", job.job_id, job.attempts, job.max_attempts)
            timer = Timer()
            try:
                with timer:
                    await asyncio.wait_for(
                        self.processor.process(payload, job.job_id),
                        timeout=self.job_timeout_seconds,
                    )
            except asyncio.TimeoutError:
                self.stats.timed_out += 1
                error = JobTimeoutError(
                    f"Job {job.job_id} exceeded {self.job_timeout_seconds:.0f}s",
                    job_id=job.job_id,
                )
                log_error(error, level=logging.WARNING)
                await self._fail(job, error.message)
                return
            except Exception as e:
                log_error(e, job_id=job.job_id, attempt=job.attempts)
                await self._fail(job, f"{type(e).__name__}: {e}")
                return

            await self.queue.complete(job.job_id)
            self.stats.completed += 1
            logger.info("Job %s completed in %.0fms", job.job_id, timer.elapsed_ms)
            await self._report_file_completion(payload)

    async def _fail(self, job: QueuedJob, error: str) -> None:
        status = await self.queue.fail(job.job_id, error, delay_seconds=self.backoff_for(job.attempts))
        if status is JobStatus.FAILED:
            self.stats.failed += 1
        else:
            self.stats.retried += 1

    async def _report_file_completion(self, payload: BatchJobPayload) -> None:
        if self.counters is None or payload.file_key in self._completed_files:
            return
        counts = await self.counters.read(payload.file_key)
        if counts.completed >= payload.total_products_in_file:
            self._completed_files.add(payload.file_key)
            logger.info(
                "File %s complete: %d rows (updated=%d skipped=%d failed=%d)",
                payload.file_key,
                payload.total_products_in_file,
                counts.updated,
                counts.skipped,
                counts.failed,
            )
