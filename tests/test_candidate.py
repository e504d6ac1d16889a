"""
tests/test_candidate.py

Candidate construction from canonical rows.
"""

from __future__ import annotations

import pytest

from catalog_sync.sync.candidate import (
    CandidateRecord,
    apply_field_aliases,
    build_candidate,
    compose_additional_info,
    is_url_value,
)
from catalog_sync.sync.provenance import ProvenanceRules
from tests.fakes import make_record, make_row


def crystal_row(**overrides: str):
    attributes = {
        "quantity_available": "100",
        "image_url": "https://cdn.vendor.test/abm8.jpg",
        "datasheet": "https://cdn.vendor.test/abm8.pdf",
        "load_capacitance": "18pF",
        "unit_price": "0.50",
        "rohs_status": "Compliant",
        "detail_description": "Crystal 16MHz 18pF SMD",
    }
    attributes.update(overrides)
    return make_row(3, "ABM8-16", "Abracon", **attributes)


class TestBuildCandidate:
    def test_full_mode_maps_columns_to_meta(self) -> None:
        candidate = build_candidate(crystal_row(), product_id=42)

        assert candidate.product_id == 42
        assert candidate.identifier == "ABM8-16"
        assert candidate.meta["manufacturer"] == "Abracon"
        assert candidate.meta["quantity"] == "100"
        assert candidate.meta["image_url"] == "https://cdn.vendor.test/abm8.jpg"
        assert candidate.meta["rohs_status"] == "Compliant"
        assert candidate.description == "Crystal 16MHz 18pF SMD"
        assert candidate.sku == "ABM8-16_Abracon"

    def test_datasheet_fills_both_keys(self) -> None:
        candidate = build_candidate(crystal_row(), product_id=42)

        assert candidate.meta["datasheet"] == candidate.meta["datasheet_url"] == "https://cdn.vendor.test/abm8.pdf"

    def test_blocked_datasheet_is_dropped(self) -> None:
        row = crystal_row(datasheet="https://www.digikey.com/abm8.pdf")

        candidate = build_candidate(row, product_id=42, rules=ProvenanceRules())

        assert "datasheet" not in candidate.meta
        assert "datasheet_url" not in candidate.meta

    def test_unmapped_columns_compose_additional_info(self) -> None:
        candidate = build_candidate(crystal_row(), product_id=42)

        # price and mapped columns are left out
        assert candidate.meta["additional_key_information"] == "<strong>Load Capacitance:</strong> 18pF<br>"

    def test_explicit_additional_info_column_wins(self) -> None:
        row = crystal_row(additional_info="<strong>Aging:</strong> 3ppm<br>")

        candidate = build_candidate(row, product_id=42)

        assert candidate.meta["additional_key_information"] == "<strong>Aging:</strong> 3ppm<br>"

    def test_empty_synonym_does_not_clobber(self) -> None:
        row = make_row(0, "P", "M", quantity_available="7", quantity="")

        assert build_candidate(row, product_id=1).meta["quantity"] == "7"

    def test_vendor_aliases_are_applied(self) -> None:
        row = make_row(0, "P", "M", stock_quantity="12", image_attachment_url="https://cdn.test/p.png")

        meta = build_candidate(row, product_id=1).meta

        assert meta["quantity"] == "12"
        assert meta["image_url"] == "https://cdn.test/p.png"

    def test_explicit_sku_column(self) -> None:
        assert build_candidate(crystal_row(sku="ABM8-16-T"), product_id=42).sku == "ABM8-16-T"

    def test_quantity_mode_only_carries_quantity(self) -> None:
        candidate = build_candidate(crystal_row(), product_id=42, mode="quantity")

        assert candidate.meta == {"quantity": "100"}
        assert candidate.description == ""

    def test_quantity_mode_defaults_to_zero(self) -> None:
        candidate = build_candidate(make_row(0, "P", "M"), product_id=1, mode="quantity")

        assert candidate.meta == {"quantity": "0"}


class TestComposeAdditionalInfo:
    def test_exclusions(self) -> None:
        columns = {
            "load_capacitance": "18pF",
            "list_price": "1.00",
            "minimum_order_quantity": "1000",
            "stock_on_hand": "50",
            "product_status": "Active",
            "reach": "Unaffected",
            "currency": "USD",
            "sales_region": "EU",
            "product_url": "https://vendor.test/p",
            "notes": "www.vendor.test/p",
            "features": "Low jitter",
            "frequency_stability": "NaN",
            "esr": "",
            "aging": "3ppm",
        }

        assert compose_additional_info(columns) == (
            "<strong>Load Capacitance:</strong> 18pF<br><strong>Aging:</strong> 3ppm<br>"
        )

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://a.test/x", True),
            ("www.vendor.test", True),
            ("vendor.com/p/1", True),
            ("3.3V", False),
            ("18pF", False),
        ],
    )
    def test_is_url_value(self, value: str, expected: bool) -> None:
        assert is_url_value(value) is expected


class TestAliases:
    def test_apply_field_aliases(self) -> None:
        assert apply_field_aliases({"mfr_part_number": "A", "hts_code": "8541"}) == {
            "part_number": "A",
            "htsus_code": "8541",
        }


class TestCandidateFromRecord:
    def test_restates_current_record(self) -> None:
        record = make_record(9, "X-1", "TDK", quantity="5")

        candidate = CandidateRecord.from_record(record)

        assert candidate.product_id == 9
        assert candidate.identifier == "X-1"
        assert candidate.meta["quantity"] == "5"
