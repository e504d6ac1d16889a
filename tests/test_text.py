"""
tests/test_text.py

Text normalization and the additional-information merge.
"""

from __future__ import annotations

import pytest

from catalog_sync.sync.text import (
    format_label,
    is_blank,
    merge_additional_info,
    normalize_info_key,
    normalize_text,
    parse_additional_info,
)


class TestNormalizeText:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, ""),
            ("", ""),
            ("  plain   text ", "plain text"),
            ("<p>Crystal<br>16MHz</p>", "Crystal 16MHz"),
            ("-40&deg;C ~ 85&deg;C", "-40°C ~ 85°C"),
            ("AT&amp;T", "AT&T"),
            ("Tape &amp; Reel (TR)", "Tape & Reel (TR)"),
            ("Brand¬Æ", "Brand®"),
            ("a\u00a0b", "a b"),
            (42, "42"),
        ],
    )
    def test_normalize(self, value, expected) -> None:
        assert normalize_text(value) == expected

    def test_formatting_only_differences_compare_equal(self) -> None:
        assert normalize_text("<strong>3.3V</strong>") == normalize_text(" 3.3V ")

    def test_is_blank(self) -> None:
        assert is_blank("<p> </p>")
        assert is_blank(None)
        assert not is_blank("0")


class TestLabels:
    def test_format_label(self) -> None:
        assert format_label("load_capacitance") == "Load Capacitance"
        assert format_label("esr-max") == "Esr Max"

    def test_normalize_info_key(self) -> None:
        assert normalize_info_key("Load_Capacitance") == "load capacitance"
        assert normalize_info_key("Frequency (MHz)") == "frequency mhz"


class TestParseAdditionalInfo:
    def test_strong_labels(self) -> None:
        entries = parse_additional_info("<strong>Load Capacitance:</strong> 18pF<br><strong>Aging:</strong> 3ppm<br>")

        assert list(entries) == ["load capacitance", "aging"]
        assert entries["aging"].value == "3ppm"

    def test_bold_and_paragraph_markup(self) -> None:
        entries = parse_additional_info("<p><b>ESR:</b> 40 Ohm</p><p><b>Mode:</b> Fundamental</p>")

        assert entries["esr"].label == "ESR"
        assert entries["mode"].value == "Fundamental"

    def test_adjacent_entries_without_separator(self) -> None:
        entries = parse_additional_info("<strong>A:</strong> 1<strong>B:</strong> 2")

        assert entries["a"].value == "1"
        assert entries["b"].value == "2"

    def test_plain_lines(self) -> None:
        entries = parse_additional_info("Tolerance: 10ppm<br>Stability: 20ppm")

        assert entries["tolerance"].value == "10ppm"
        assert entries["stability"].value == "20ppm"

    def test_plain_lines_skip_urls(self) -> None:
        entries = parse_additional_info("See http://example.test: here")

        assert entries == {}

    @pytest.mark.parametrize("value", [None, "", "just some prose"])
    def test_nothing_to_parse(self, value) -> None:
        assert parse_additional_info(value) == {}


class TestMergeAdditionalInfo:
    CURRENT = "<strong>Load Capacitance:</strong> 18pF<br><strong>Aging:</strong> 3ppm<br>"

    def test_new_key_is_added_and_existing_kept(self) -> None:
        merged, changed = merge_additional_info(self.CURRENT, "<strong>ESR:</strong> 40 Ohm<br>")

        assert changed
        entries = parse_additional_info(merged)
        assert list(entries) == ["load capacitance", "aging", "esr"]

    def test_candidate_value_wins_on_shared_key(self) -> None:
        merged, changed = merge_additional_info(self.CURRENT, "<strong>Aging:</strong> 5ppm<br>")

        assert changed
        assert parse_additional_info(merged)["aging"].value == "5ppm"
        assert parse_additional_info(merged)["load capacitance"].value == "18pF"

    def test_key_match_ignores_case_and_separators(self) -> None:
        merged, changed = merge_additional_info(self.CURRENT, "<strong>load_capacitance:</strong> 18pF<br>")

        assert not changed
        assert merged == self.CURRENT

    def test_formatting_only_difference_is_no_change(self) -> None:
        merged, changed = merge_additional_info(self.CURRENT, "<b>Aging:</b>   3ppm")

        assert not changed
        assert merged == self.CURRENT

    def test_empty_current_takes_candidate(self) -> None:
        merged, changed = merge_additional_info("", "<strong>ESR:</strong> 40 Ohm<br>")

        assert changed
        assert merged == "<strong>ESR:</strong> 40 Ohm<br>"

    def test_unparseable_current_is_preserved(self) -> None:
        merged, changed = merge_additional_info("Hand-written note<br>", "<strong>ESR:</strong> 40 Ohm<br>")

        assert changed
        assert merged == "Hand-written note<br><strong>ESR:</strong> 40 Ohm<br>"

    def test_keys_are_never_removed(self) -> None:
        merged, _ = merge_additional_info(self.CURRENT, "<strong>Aging:</strong> 3ppm<br>")

        assert "Load Capacitance" in merged
