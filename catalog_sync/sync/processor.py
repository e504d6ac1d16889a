"""
Row processor: consumes one batch job end to end.

For each row, in order:
    1. guard (placeholder for a malformed record, missing part number, index past EOF)
    2. resolve the remote product id (miss -> recorded for manual creation)
    3. fetch the current record and check it is still the same part
    4. build the candidate and diff it
    5. queue the payload for the batch write, or count the row as skipped

Then one bulk write, one counter increment per outcome, and a checkpoint
advance to the end of the batch. Row-level failures never abort the batch;
only an unreachable state store does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from catalog_sync.core.errors import (
    ERR_LOOKUP_MISS,
    ERR_ROW_IDENTITY_MISMATCH,
    ERR_ROW_MISSING_IDENTIFIER,
    ERR_ROW_OUT_OF_RANGE,
    DispatchFailedError,
    StoreUnavailableError,
    log_error,
)
from catalog_sync.core.logging import LogContext, Timer
from catalog_sync.ingest.normalizer import CanonicalRow
from catalog_sync.jobs.models import BatchJobPayload
from catalog_sync.remote.catalog import BulkWriteResult, CatalogRecord
from catalog_sync.remote.manufacturers import normalize_manufacturer_name
from catalog_sync.state.checkpoint import CheckpointStore
from catalog_sync.state.counters import ProgressCounters
from catalog_sync.state.status_log import MissingProductRecorder, StatusLog
from catalog_sync.sync.candidate import UpdateMode, build_candidate
from catalog_sync.sync.diff import UpdatePayload, compute_diff, compute_quantity_diff
from catalog_sync.sync.provenance import ProvenanceRules

logger = logging.getLogger(__name__)

LookupMissPolicy = Literal["failed", "skipped"]
CategoryResolver = Callable[[str], Awaitable[Optional[str]]]


class CatalogGateway(Protocol):
    async def lookup_id_by_identifier(self, identifier: str, manufacturer: str) -> Optional[int]: ...

    async def fetch_by_id(self, product_id: int) -> Optional[CatalogRecord]: ...

    async def bulk_write(self, payloads: list[dict[str, Any]], *, task_id: str = "bulk") -> BulkWriteResult: ...


@dataclass
class BatchOutcome:
    file_key: str
    start_index: int
    end_index: int
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    checkpoint_advanced: bool = False

    @property
    def total(self) -> int:
        return self.updated + self.skipped + self.failed


@dataclass
class _PendingWrite:
    row_number: int
    identifier: str
    payload: UpdatePayload
    note: str


@dataclass
class _Notes:
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.updated or self.skipped or self.failed)

    def clear(self) -> None:
        self.updated.clear()
        self.skipped.clear()
        self.failed.clear()


def _same(a: str, b: str) -> bool:
    return a.strip().casefold() == b.strip().casefold()


def identity_matches(row: CanonicalRow, record: CatalogRecord) -> bool:
    """The fetched record still belongs to the row's part and manufacturer."""
    stored_part = record.get_meta("part_number").strip() or record.name.strip()
    stored_mfr = record.get_meta("manufacturer")
    if not _same(row.identifier, stored_part):
        return False
    return _same(row.manufacturer, stored_mfr) or _same(
        normalize_manufacturer_name(row.manufacturer), stored_mfr
    )


class RowProcessor:
    """Processes batch jobs against the remote catalog."""

    def __init__(
        self,
        catalog: CatalogGateway,
        checkpoint: CheckpointStore,
        counters: ProgressCounters,
        status_log: StatusLog,
        missing: MissingProductRecorder,
        *,
        mode: UpdateMode = "full",
        rules: Optional[ProvenanceRules] = None,
        lookup_miss_policy: LookupMissPolicy = "failed",
        status_flush_every: int = 50,
        category_resolver: Optional[CategoryResolver] = None,
    ) -> None:
        self.catalog = catalog
        self.checkpoint = checkpoint
        self.counters = counters
        self.status_log = status_log
        self.missing = missing
        self.mode = mode
        self.rules = rules or ProvenanceRules()
        self.lookup_miss_policy = lookup_miss_policy
        self.status_flush_every = max(1, status_flush_every)
        self.category_resolver = category_resolver

    async def process(self, job: BatchJobPayload, job_id: Optional[str] = None) -> BatchOutcome:
        """
        Process one batch.

        Raises:
            StoreUnavailableError: If counters, checkpoint or status storage fail
        """
        file_key = job.file_key
        total = job.total_products_in_file
        outcome = BatchOutcome(
            file_key=file_key,
            start_index=job.start_index,
            end_index=min(job.end_index, total),
        )
        notes = _Notes()
        writes: list[_PendingWrite] = []
        since_flush = 0

        logger.info(
            "Processing batch %s rows [%d, %d) of %d (mode=%s)",
            file_key,
            job.start_index,
            job.end_index,
            total,
            self.mode,
        )

        with Timer() as timer:
            for offset, row in enumerate(job.rows()):
                index = job.start_index + offset
                with LogContext(row_index=index, part_number=row.identifier or None):
                    try:
                        await self._process_row(row, index, total, file_key, outcome, notes, writes)
                    except StoreUnavailableError:
                        raise
                    except Exception as e:
                        outcome.failed += 1
                        notes.failed.append(f"Row {index + 1}: {row.identifier} failed - {e}")
                        log_error(e, file_key=file_key, row_index=index, part_number=row.identifier)

                since_flush += 1
                if since_flush >= self.status_flush_every:
                    await self._flush(file_key, notes)
                    since_flush = 0

            if writes:
                await self._write(file_key, job_id, writes, outcome, notes)

            await self._flush(file_key, notes)

        # Keyed by job so a redelivery after a failed advance is not counted twice
        await self.counters.incr(
            file_key,
            job_id=job_id,
            updated=outcome.updated,
            skipped=outcome.skipped,
            failed=outcome.failed,
        )
        outcome.checkpoint_advanced = await self.checkpoint.advance(file_key, outcome.end_index, total)

        logger.info(
            "Batch %s [%d, %d) done in %.0fms: updated=%d skipped=%d failed=%d",
            file_key,
            outcome.start_index,
            outcome.end_index,
            timer.elapsed_ms,
            outcome.updated,
            outcome.skipped,
            outcome.failed,
            extra={"duration_ms": timer.elapsed_ms},
        )
        return outcome

    async def _process_row(
        self,
        row: CanonicalRow,
        index: int,
        total: int,
        file_key: str,
        outcome: BatchOutcome,
        notes: _Notes,
        writes: list[_PendingWrite],
    ) -> None:
        row_number = index + 1
        identifier = row.identifier

        if row.error:
            outcome.skipped += 1
            notes.skipped.append(f"Row {row_number}: malformed - {row.error}")
            return

        if not identifier:
            outcome.failed += 1
            notes.failed.append(f"Row {row_number}: missing part number")
            logger.warning("[%s] Row %d has no part number", ERR_ROW_MISSING_IDENTIFIER, row_number)
            return

        if index >= total:
            outcome.failed += 1
            notes.failed.append(f"Row {row_number}: {identifier} beyond end of file ({total} rows)")
            logger.warning("[%s] Row %d is past the file's %d rows", ERR_ROW_OUT_OF_RANGE, row_number, total)
            return

        product_id = await self.catalog.lookup_id_by_identifier(identifier, row.manufacturer)
        if product_id is None:
            await self._record_missing(file_key, row)
            note = f"Row {row_number}: {identifier} not found in catalog"
            if self.lookup_miss_policy == "skipped":
                outcome.skipped += 1
                notes.skipped.append(note)
            else:
                outcome.failed += 1
                notes.failed.append(note)
            logger.info("[%s] %s", ERR_LOOKUP_MISS, note)
            return

        record = await self.catalog.fetch_by_id(product_id)
        if record is None:
            outcome.failed += 1
            notes.failed.append(f"Row {row_number}: {identifier} could not be fetched (id {product_id})")
            return

        if not identity_matches(row, record):
            outcome.skipped += 1
            notes.skipped.append(f"Row {row_number}: {identifier} identity mismatch")
            logger.info(
                "[%s] Row %d: %s resolved to product %d owned by %r",
                ERR_ROW_IDENTITY_MISMATCH,
                row_number,
                identifier,
                product_id,
                record.get_meta("part_number") or record.name,
            )
            return

        candidate = build_candidate(row, product_id, self.mode, self.rules)
        if self.mode == "quantity":
            diff = compute_quantity_diff(record, candidate)
            changed_note, unchanged_note = "quantity updated", "quantity unchanged"
        else:
            diff = compute_diff(record, candidate, self.rules)
            changed_note, unchanged_note = "fully updated", "no changes"

        if diff.payload is None:
            outcome.skipped += 1
            notes.skipped.append(f"Row {row_number}: {identifier} {unchanged_note}")
            return

        writes.append(
            _PendingWrite(
                row_number=row_number,
                identifier=identifier,
                payload=diff.payload,
                note=f"Row {row_number}: {identifier} {changed_note} ({', '.join(diff.changed_fields)})",
            )
        )

    async def _record_missing(self, file_key: str, row: CanonicalRow) -> None:
        slug = "unknown"
        if self.category_resolver is not None and row.category:
            try:
                slug = await self.category_resolver(row.category) or "unknown"
            except Exception as e:
                logger.warning("Category resolution failed for %r: %s", row.category, e)
        try:
            await self.missing.record(file_key, row, slug)
        except OSError as e:
            raise StoreUnavailableError("missing-products log", e) from e

    async def _write(
        self,
        file_key: str,
        job_id: Optional[str],
        writes: list[_PendingWrite],
        outcome: BatchOutcome,
        notes: _Notes,
    ) -> None:
        task_id = f"{job_id or file_key}:bulk"
        try:
            result = await self.catalog.bulk_write([w.payload.to_api() for w in writes], task_id=task_id)
        except DispatchFailedError as e:
            outcome.failed += len(writes)
            for w in writes:
                notes.failed.append(f"Row {w.row_number}: {w.identifier} write failed - {e.decision.reason}")
            log_error(e, file_key=file_key, job_id=job_id, count=len(writes))
            return

        rejected = {err.get("id"): err.get("error") for err in result.errors}
        for w in writes:
            if w.payload.product_id in rejected:
                notes.failed.append(f"Row {w.row_number}: {w.identifier} rejected - {rejected[w.payload.product_id]}")
            else:
                notes.updated.append(w.note)

        outcome.updated += result.written_count
        outcome.failed += len(writes) - result.written_count
        if result.errors:
            logger.warning(
                "Bulk write for %s: %d written, %d rejected",
                file_key,
                result.written_count,
                len(result.errors),
            )

    async def _flush(self, file_key: str, notes: _Notes) -> None:
        if not notes:
            return
        try:
            await self.status_log.record(file_key, notes.updated, notes.skipped, notes.failed)
        except OSError as e:
            raise StoreUnavailableError("status log", e) from e
        notes.clear()
