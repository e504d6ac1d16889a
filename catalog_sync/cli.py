"""
catalog-sync command line.

    catalog-sync init-db
    catalog-sync plan vendor.csv --batch-size 10 --mode stream
    catalog-sync compare-plans https://bucket/vendor.csv
    catalog-sync enqueue vendor.csv
    catalog-sync work
    catalog-sync status vendor.csv
    catalog-sync reset vendor.csv --yes
    catalog-sync create-missing vendor.csv
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

import httpx
import typer
from dotenv import load_dotenv

from catalog_sync.core.config import Settings, get_settings, log_startup_diagnostics, reset_settings
from catalog_sync.core.db import ensure_schema, open_pool
from catalog_sync.core.errors import CatalogSyncError
from catalog_sync.core.logging import configure_logging
from catalog_sync.ingest.csv_source import (
    acount_data_rows,
    aiter_records,
    aiter_streamed_records,
    is_url,
    iter_buffered_records,
    load_source_bytes,
    stream_source_chunks,
)
from catalog_sync.ingest.normalizer import ColumnMapping
from catalog_sync.ingest.planner import BatchPlanner, plans_to_json, verify_plans_identical
from catalog_sync.jobs.queue import PostgresJobQueue
from catalog_sync.remote.catalog import CatalogClient
from catalog_sync.remote.dispatcher import Dispatcher, RetryPolicy
from catalog_sync.state.checkpoint import CheckpointStore, PostgresCheckpointKV
from catalog_sync.state.counters import PostgresProgressCounters
from catalog_sync.state.snapshot import JsonSnapshotStore
from catalog_sync.state.status_log import MissingProductRecorder, StatusLog
from catalog_sync.sync.missing import create_missing_products
from catalog_sync.sync.processor import RowProcessor
from catalog_sync.sync.provenance import ProvenanceRules
from catalog_sync.worker import BatchWorker

app = typer.Typer(help="Resumable CSV -> remote catalog sync pipeline.")


class SourceMode(str, Enum):
    buffered = "buffered"
    stream = "stream"


@app.callback()
def main(
    env_file: Optional[Path] = typer.Option(None, "--env-file", help="Load settings from this .env file"),
) -> None:
    load_dotenv(env_file)
    reset_settings()
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)


# =============================================================================
# Wiring helpers
# =============================================================================


@dataclass
class _Stores:
    queue: PostgresJobQueue
    counters: PostgresProgressCounters
    checkpoint: CheckpointStore


@asynccontextmanager
async def _open_stores(settings: Settings, max_size: int = 10) -> AsyncIterator[_Stores]:
    pool = await open_pool(settings.DATABASE_URL, max_size=max_size)
    try:
        queue = PostgresJobQueue(pool)
        counters = PostgresProgressCounters(pool)
        checkpoint = CheckpointStore(
            PostgresCheckpointKV(pool),
            counters,
            JsonSnapshotStore(settings.STATE_DIR),
            job_stats=queue,
        )
        yield _Stores(queue=queue, counters=counters, checkpoint=checkpoint)
    finally:
        await pool.close()


async def _records(
    source: str, mode: SourceMode, client: httpx.AsyncClient, header_row: int
) -> AsyncIterator[str]:
    skip_lines = max(0, header_row - 1)
    if mode is SourceMode.buffered:
        content = await load_source_bytes(source, client)
        async for record in aiter_records(iter_buffered_records(content, skip_lines)):
            yield record
    else:
        async for record in aiter_streamed_records(stream_source_chunks(source, client), skip_lines):
            yield record


def _dispatcher(settings: Settings) -> Dispatcher:
    return Dispatcher(
        max_concurrent=settings.DISPATCH_MAX_CONCURRENT,
        min_time_seconds=settings.dispatch_min_time_seconds,
        policy=RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        ),
        call_timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS,
    )


def _default_file_key(source: str) -> str:
    if is_url(source):
        return Path(urlparse(source).path).name or source
    return Path(source).name


def _mapping(part_number: Optional[str], manufacturer: Optional[str], category: Optional[str]) -> Optional[ColumnMapping]:
    mapping = ColumnMapping(part_number=part_number, manufacturer=manufacturer, category=category)
    return None if mapping.is_empty else mapping


async def _plan(
    source: str,
    mode: SourceMode,
    file_key: str,
    batch_size: int,
    header_row: int,
    mapping: Optional[ColumnMapping],
    resume_from_row: int,
    client: httpx.AsyncClient,
):
    total = await acount_data_rows(_records(source, mode, client, header_row))
    planner = BatchPlanner()
    return await planner.plan(
        _records(source, mode, client, header_row),
        file_key=file_key,
        total_rows=total,
        batch_size=batch_size,
        mapping=mapping,
        resume_from_row=resume_from_row,
    )


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except CatalogSyncError as e:
        typer.echo(f"[catalog-sync] {e.error_code}: {e.message}", err=True)
        raise typer.Exit(code=2)


# =============================================================================
# Commands
# =============================================================================


@app.command("init-db")
def init_db_command() -> None:
    """Create the checkpoint, counter and job tables."""

    async def _main() -> None:
        settings = get_settings()
        pool = await open_pool(settings.DATABASE_URL, max_size=2)
        try:
            await ensure_schema(pool)
        finally:
            await pool.close()
        typer.echo("[catalog-sync] schema ready")

    _run(_main())


@app.command("plan")
def plan_command(
    source: str = typer.Argument(..., help="Local CSV path or http(s) URL"),
    file_key: Optional[str] = typer.Option(None, "--file-key", help="Defaults to the source file name"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
    mode: SourceMode = typer.Option(SourceMode.stream, "--mode"),
    resume_from_row: int = typer.Option(0, "--resume-from-row", min=0),
    part_number_column: Optional[str] = typer.Option(None, "--part-number-column"),
    manufacturer_column: Optional[str] = typer.Option(None, "--manufacturer-column"),
    category_column: Optional[str] = typer.Option(None, "--category-column"),
) -> None:
    """Plan jobs without touching the queue and print them as JSON."""
    settings = get_settings()

    async def _main() -> None:
        async with httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS, follow_redirects=True) as client:
            jobs = await _plan(
                source,
                mode,
                file_key or _default_file_key(source),
                batch_size or settings.BATCH_SIZE,
                settings.CSV_HEADER_ROW,
                _mapping(part_number_column, manufacturer_column, category_column),
                resume_from_row,
                client,
            )
        typer.echo(json.dumps(json.loads(plans_to_json(jobs)), indent=2))

    _run(_main())


@app.command("compare-plans")
def compare_plans_command(
    source: str = typer.Argument(..., help="Local CSV path or http(s) URL"),
    file_key: Optional[str] = typer.Option(None, "--file-key"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
) -> None:
    """Plan with both source modes and fail if the plans differ."""
    settings = get_settings()
    key = file_key or _default_file_key(source)
    size = batch_size or settings.BATCH_SIZE

    async def _main() -> bool:
        async with httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS, follow_redirects=True) as client:
            buffered = await _plan(source, SourceMode.buffered, key, size, settings.CSV_HEADER_ROW, None, 0, client)
            streamed = await _plan(source, SourceMode.stream, key, size, settings.CSV_HEADER_ROW, None, 0, client)
        same = verify_plans_identical(buffered, streamed)
        typer.echo(
            f"[catalog-sync] buffered={len(buffered)} job(s) streamed={len(streamed)} job(s) "
            f"identical={'yes' if same else 'NO'}"
        )
        return same

    identical = asyncio.run(_main())
    if not identical:
        raise typer.Exit(code=1)


@app.command("enqueue")
def enqueue_command(
    source: str = typer.Argument(..., help="Local CSV path or http(s) URL"),
    file_key: Optional[str] = typer.Option(None, "--file-key"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", min=1),
    mode: SourceMode = typer.Option(SourceMode.stream, "--mode"),
    part_number_column: Optional[str] = typer.Option(None, "--part-number-column"),
    manufacturer_column: Optional[str] = typer.Option(None, "--manufacturer-column"),
    category_column: Optional[str] = typer.Option(None, "--category-column"),
) -> None:
    """Count rows, resume from the checkpoint and enqueue the remaining batches."""
    settings = get_settings()
    key = file_key or _default_file_key(source)

    async def _main() -> None:
        async with _open_stores(settings) as stores, httpx.AsyncClient(
            timeout=settings.REQUEST_TIMEOUT_SECONDS, follow_redirects=True
        ) as client:
            total = await acount_data_rows(_records(source, mode, client, settings.CSV_HEADER_ROW))
            resume_from = await stores.checkpoint.read(key)
            planner = BatchPlanner(
                queue=stores.queue,
                counters=stores.counters,
                max_attempts=settings.JOB_MAX_ATTEMPTS,
            )
            report = await planner.enqueue(
                _records(source, mode, client, settings.CSV_HEADER_ROW),
                file_key=key,
                total_rows=total,
                batch_size=batch_size or settings.BATCH_SIZE,
                mapping=_mapping(part_number_column, manufacturer_column, category_column),
                resume_from_row=resume_from,
            )
        typer.echo(
            f"[catalog-sync] {key}: total_rows={total} resume_from={resume_from} "
            f"enqueued={report.enqueued} duplicates={report.duplicates} "
            f"malformed={len(report.malformed_rows)}"
        )

    _run(_main())


@app.command("work")
def work_command(
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1),
) -> None:
    """Run worker loops until SIGINT/SIGTERM."""
    settings = get_settings()
    if concurrency:
        settings = settings.model_copy(update={"CONCURRENCY": concurrency})
    log_startup_diagnostics("catalog-sync worker")

    async def _main() -> None:
        dispatcher = _dispatcher(settings)
        async with _open_stores(settings, max_size=settings.CONCURRENCY + 4) as stores:
            async with CatalogClient.from_settings(settings, dispatcher) as catalog:
                processor = RowProcessor(
                    catalog,
                    stores.checkpoint,
                    stores.counters,
                    StatusLog(settings.STATE_DIR),
                    MissingProductRecorder(settings.STATE_DIR),
                    mode=settings.UPDATE_MODE,
                    rules=ProvenanceRules.from_settings(settings),
                    lookup_miss_policy=settings.LOOKUP_MISS_POLICY,
                    status_flush_every=settings.STATUS_FLUSH_EVERY,
                )
                worker = BatchWorker(stores.queue, processor, settings, counters=stores.counters)
                await worker.run()

    _run(_main())


@app.command("status")
def status_command(file_key: str = typer.Argument(...)) -> None:
    """Print row-level progress and queue state for a file."""
    settings = get_settings()

    async def _main() -> None:
        async with _open_stores(settings, max_size=2) as stores:
            row_level = await stores.checkpoint.progress(file_key)
            jobs = await stores.queue.status_counts(file_key)
        typer.echo(
            json.dumps(
                {
                    "fileKey": file_key,
                    "rowLevel": row_level.model_dump(by_alias=True),
                    "jobLevel": {
                        "waiting": jobs.waiting,
                        "active": jobs.active,
                        "delayed": jobs.delayed,
                        "totalRemainingJobs": jobs.total_remaining,
                    },
                },
                indent=2,
            )
        )

    _run(_main())


@app.command("reset")
def reset_command(
    file_key: str = typer.Argument(...),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
) -> None:
    """Forget all progress and queued jobs for a file (full reprocessing)."""
    if not yes:
        typer.confirm(f"Reset checkpoint, counters and jobs for {file_key}?", abort=True)
    settings = get_settings()

    async def _main() -> None:
        async with _open_stores(settings, max_size=2) as stores:
            purged = await stores.queue.purge(file_key)
            await stores.checkpoint.clear(file_key)
        StatusLog(settings.STATE_DIR).delete(file_key)
        typer.echo(f"[catalog-sync] reset {file_key}: purged {purged} job(s)")

    _run(_main())


@app.command("create-missing")
def create_missing_command(
    file_key: str = typer.Argument(...),
    category: Optional[str] = typer.Option(None, "--category", help="Only this category slug"),
) -> None:
    """Create catalog products for the rows a sync recorded as missing."""
    settings = get_settings()

    async def _main() -> None:
        async with CatalogClient.from_settings(settings, _dispatcher(settings)) as catalog:
            report = await create_missing_products(
                catalog, MissingProductRecorder(settings.STATE_DIR), file_key, category
            )
        typer.echo(
            f"[catalog-sync] {file_key}: created={len(report.created)} "
            f"failed={len(report.failed)} files={len(report.files)}"
        )

    _run(_main())
