"""
tests/test_processor.py

RowProcessor end to end against the in-memory stores and FakeCatalog.
"""

from __future__ import annotations

import pytest

from catalog_sync.core.errors import CatalogAPIError, DispatchFailedError, StoreUnavailableError
from catalog_sync.ingest.normalizer import CanonicalRow
from catalog_sync.jobs.models import BatchJobPayload, RowModel
from catalog_sync.remote.dispatcher import RetryAction, RetryDecision
from catalog_sync.sync.processor import RowProcessor, identity_matches
from tests.fakes import FakeCatalog, make_record, make_row


def make_job(rows: list[CanonicalRow], *, start: int = 0, size: int | None = None, total: int = 4) -> BatchJobPayload:
    return BatchJobPayload(
        batch=[RowModel.from_row(r) for r in rows],
        file_key="vendor.csv",
        total_products_in_file=total,
        start_index=start,
        batch_size=size if size is not None else len(rows),
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(
        [
            make_record(1, "ABM8", "Abracon", quantity="100"),
            make_record(2, "X-1", "TDK", quantity="5"),
        ]
    )


@pytest.fixture
def processor(catalog, checkpoint, counters, status_log, missing) -> RowProcessor:
    return RowProcessor(catalog, checkpoint, counters, status_log, missing)


# =============================================================================
# Identity
# =============================================================================


class TestIdentityMatches:
    def test_same_part_and_manufacturer(self) -> None:
        assert identity_matches(make_row(0, "abm8 ", "ABRACON"), make_record(1, "ABM8", "Abracon"))

    def test_different_part(self) -> None:
        assert not identity_matches(make_row(0, "ABM8", "Abracon"), make_record(1, "ABM9", "Abracon"))

    def test_manufacturer_alias(self) -> None:
        assert identity_matches(make_row(0, "LPC1768", "NXP Semiconductors"), make_record(1, "LPC1768", "NXP"))


# =============================================================================
# Batch outcomes
# =============================================================================


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_mixed_batch(self, processor, catalog, counters, kv, status_log, missing) -> None:
        rows = [
            make_row(0, "ABM8", "Abracon", quantity_available="150"),
            make_row(1, "X-1", "TDK"),
            make_row(2, "MISSING-1", "Kemet"),
            CanonicalRow(index=3, error="4 fields for 3 columns"),
        ]

        outcome = await processor.process(make_job(rows), job_id="jobId_vendor.csv_batch_row-0")

        assert (outcome.updated, outcome.skipped, outcome.failed) == (1, 2, 1)
        assert outcome.total == 4
        assert outcome.checkpoint_advanced
        assert kv.values["vendor.csv"] == 4

        counts = await counters.read("vendor.csv")
        assert (counts.updated, counts.skipped, counts.failed) == (1, 2, 1)

        assert catalog.writes == [[{"id": 1, "meta_data": [{"key": "quantity", "value": "150"}]}]]

        status = status_log.read("vendor.csv")
        assert status["updated"] == ["Row 1: ABM8 fully updated (quantity)"]
        assert "Row 2: X-1 no changes" in status["skipped"]
        assert "Row 3: MISSING-1 not found in catalog" in status["failed"]
        assert any("malformed" in note for note in status["skipped"])

        assert missing.read("vendor.csv")[0]["part_number"] == "MISSING-1"

    @pytest.mark.asyncio
    async def test_lookup_miss_can_count_as_skipped(self, catalog, checkpoint, counters, status_log, missing) -> None:
        processor = RowProcessor(catalog, checkpoint, counters, status_log, missing, lookup_miss_policy="skipped")

        outcome = await processor.process(make_job([make_row(0, "MISSING-1", "Kemet")], total=1))

        assert (outcome.skipped, outcome.failed) == (1, 0)

    @pytest.mark.asyncio
    async def test_missing_identifier_fails_row(self, processor, catalog) -> None:
        outcome = await processor.process(make_job([make_row(0, "", "Abracon")], total=1))

        assert outcome.failed == 1
        assert catalog.lookup_calls == []

    @pytest.mark.asyncio
    async def test_rows_past_end_of_file_fail(self, processor, kv) -> None:
        rows = [make_row(0, "X-1", "TDK"), make_row(1, "X-1", "TDK"), make_row(2, "X-1", "TDK")]

        outcome = await processor.process(make_job(rows, size=3, total=2))

        assert outcome.failed == 1
        assert outcome.end_index == 2
        assert kv.values["vendor.csv"] == 2

    @pytest.mark.asyncio
    async def test_identity_mismatch_is_skipped(self, processor, catalog) -> None:
        catalog.index[("ABM8", "abracon")] = 2

        outcome = await processor.process(
            make_job([make_row(0, "ABM8", "Abracon", quantity_available="999")], total=1)
        )

        assert outcome.skipped == 1
        assert catalog.writes == []

    @pytest.mark.asyncio
    async def test_vanished_product_fails_row(self, processor, catalog) -> None:
        del catalog.records[1]

        outcome = await processor.process(make_job([make_row(0, "ABM8", "Abracon")], total=1))

        assert outcome.failed == 1

    @pytest.mark.asyncio
    async def test_row_error_does_not_abort_batch(self, processor, catalog) -> None:
        async def broken_fetch(product_id: int):
            if product_id == 1:
                raise RuntimeError("unexpected payload")
            return catalog.records[product_id]

        catalog.fetch_by_id = broken_fetch
        rows = [make_row(0, "ABM8", "Abracon"), make_row(1, "X-1", "TDK", quantity_available="6")]

        outcome = await processor.process(make_job(rows, total=2))

        assert (outcome.updated, outcome.failed) == (1, 1)


# =============================================================================
# Writes
# =============================================================================


class TestWrites:
    @pytest.mark.asyncio
    async def test_failed_bulk_write_fails_every_pending_row(self, processor, catalog, status_log) -> None:
        cause = CatalogAPIError("HTTP 503", status_code=503)
        catalog.bulk_error = DispatchFailedError(
            "bulk",
            RetryDecision(RetryAction.FAIL_EXHAUSTED, reason="HTTP 503; gave up after 5 attempts"),
            cause,
            5,
        )
        rows = [
            make_row(0, "ABM8", "Abracon", quantity_available="150"),
            make_row(1, "X-1", "TDK", quantity_available="6"),
        ]

        outcome = await processor.process(make_job(rows, total=2))

        assert (outcome.updated, outcome.failed) == (0, 2)
        assert len(status_log.read("vendor.csv")["failed"]) == 2

    @pytest.mark.asyncio
    async def test_rejected_item_counts_as_failed(self, processor, catalog, status_log) -> None:
        catalog.rejected[2] = "Invalid SKU"
        rows = [
            make_row(0, "ABM8", "Abracon", quantity_available="150"),
            make_row(1, "X-1", "TDK", quantity_available="6"),
        ]

        outcome = await processor.process(make_job(rows, total=2))

        assert (outcome.updated, outcome.failed) == (1, 1)
        assert status_log.read("vendor.csv")["failed"] == ["Row 2: X-1 rejected - Invalid SKU"]

    @pytest.mark.asyncio
    async def test_quantity_mode_writes_only_quantity(self, catalog, checkpoint, counters, status_log, missing) -> None:
        processor = RowProcessor(catalog, checkpoint, counters, status_log, missing, mode="quantity")
        row = make_row(0, "ABM8", "Abracon", quantity_available="150", voltage="3.3V", series="ABM8")

        outcome = await processor.process(make_job([row], total=1))

        assert outcome.updated == 1
        assert catalog.writes == [[{"id": 1, "meta_data": [{"key": "quantity", "value": "150"}]}]]
        assert status_log.read("vendor.csv")["updated"] == ["Row 1: ABM8 quantity updated (quantity)"]


# =============================================================================
# Progress
# =============================================================================


class TestProgress:
    @pytest.mark.asyncio
    async def test_out_of_order_batches_never_move_checkpoint_back(self, processor, kv, counters) -> None:
        late = make_job([make_row(2, "X-1", "TDK"), make_row(3, "X-1", "TDK")], start=2, total=4)
        early = make_job([make_row(0, "X-1", "TDK"), make_row(1, "X-1", "TDK")], start=0, total=4)

        first = await processor.process(late)
        second = await processor.process(early)

        assert first.checkpoint_advanced
        assert not second.checkpoint_advanced
        assert kv.values["vendor.csv"] == 4
        assert (await counters.read("vendor.csv")).completed == 4

    @pytest.mark.asyncio
    async def test_store_outage_propagates(self, processor, counters) -> None:
        counters.available = False

        with pytest.raises(StoreUnavailableError):
            await processor.process(make_job([make_row(0, "X-1", "TDK")], total=1))

    @pytest.mark.asyncio
    async def test_redelivery_after_failed_advance_counts_once(self, processor, kv, counters) -> None:
        job = make_job([make_row(0, "ABM8", "Abracon", quantity_available="150")], total=1)
        job_id = "jobId_vendor.csv_batch_row-0_final"

        kv.available = False
        with pytest.raises(StoreUnavailableError):
            await processor.process(job, job_id)
        kv.available = True
        outcome = await processor.process(job, job_id)

        counts = await counters.read("vendor.csv")
        assert (counts.updated, counts.completed) == (1, 1)
        assert outcome.checkpoint_advanced
        assert kv.values["vendor.csv"] == 1

    @pytest.mark.asyncio
    async def test_status_log_flushes_during_batch(self, catalog, checkpoint, counters, status_log, missing) -> None:
        processor = RowProcessor(catalog, checkpoint, counters, status_log, missing, status_flush_every=1)
        rows = [make_row(i, "X-1", "TDK") for i in range(3)]

        await processor.process(make_job(rows, total=3))

        assert status_log.read("vendor.csv")["skipped"] == [
            "Row 1: X-1 no changes",
            "Row 2: X-1 no changes",
            "Row 3: X-1 no changes",
        ]
