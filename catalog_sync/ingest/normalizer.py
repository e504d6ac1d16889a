"""
Row normalization: raw CSV row -> CanonicalRow.

Vendor files name the same column a dozen ways ("MPN", "Mfr Part Number",
"Part Number*"). Headers are folded to a stable snake_case key, then the
three identity fields (part number, manufacturer, category) are filled from
an explicit column mapping when one is given, or from a small alias table
otherwise.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

_WHITESPACE_RE = re.compile(r"\s+")
_NON_KEY_RE = re.compile(r"[^a-z0-9_]+")
_MULTI_UNDERSCORE_RE = re.compile(r"_+")

# Canonical field -> header keys consulted in order (first non-empty wins)
IDENTIFIER_ALIASES = (
    "part_number",
    "manufacturer_part_number",
    "mfr_part_number",
    "mpn",
    "partnumber",
    "sku",
)
MANUFACTURER_ALIASES = ("manufacturer", "mfr", "mfg", "brand", "vendor", "supplier")
CATEGORY_ALIASES = ("category", "product_category", "categories", "cat")


def normalize_header_key(raw: Any) -> str:
    """
    Fold a raw header into a stable key.

    "Manufacturer Part Number*" -> "manufacturer_part_number"
    "Voltage - Supply (V)"      -> "voltage_supply_v"
    """
    key = str(raw or "").replace("*", "").strip().lower()
    key = _WHITESPACE_RE.sub("_", key)
    key = _NON_KEY_RE.sub("_", key)
    key = _MULTI_UNDERSCORE_RE.sub("_", key)
    return key.strip("_")


@dataclass(frozen=True)
class ColumnMapping:
    """Explicit raw header names for the canonical identity fields."""

    part_number: Optional[str] = None
    manufacturer: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.part_number or self.manufacturer or self.category)


@dataclass(frozen=True)
class CanonicalRow:
    """A normalized CSV row with fixed identity fields and free-form attributes."""

    index: int
    identifier: str = ""
    manufacturer: str = ""
    category: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    # Set on placeholder rows for records that could not be parsed
    error: str = ""

    def get(self, key: str, default: str = "") -> str:
        return self.attributes.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "identifier": self.identifier,
            "manufacturer": self.manufacturer,
            "category": self.category,
            "attributes": dict(self.attributes),
            "error": self.error,
        }

    def as_flat_dict(self) -> dict[str, str]:
        """Attributes plus identity fields under their canonical CSV names."""
        flat = dict(self.attributes)
        flat["part_number"] = self.identifier
        flat["manufacturer"] = self.manufacturer
        flat["category"] = self.category
        return flat


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _fold_headers(raw: Mapping[str, Any]) -> dict[str, str]:
    folded: dict[str, str] = {}
    for raw_key, value in raw.items():
        key = normalize_header_key(raw_key)
        if not key:
            continue
        # Later duplicates only fill gaps left by earlier ones
        if key in folded and folded[key] and not _clean(value):
            continue
        folded[key] = _clean(value)
    return folded


def _take(values: dict[str, str], keys: tuple[str, ...]) -> tuple[str, Optional[str]]:
    for key in keys:
        value = values.get(key, "")
        if value:
            return value, key
    return "", None


def _take_mapped(values: dict[str, str], raw_header: str, canonical: str) -> tuple[str, Optional[str]]:
    key = normalize_header_key(raw_header)
    if key in values:
        return values[key], key
    # Mapped column absent from this file: fall back to the canonical column only
    return values.get(canonical, ""), canonical if canonical in values else None


def normalize_row(
    raw: Mapping[str, Any],
    index: int,
    mapping: Optional[ColumnMapping] = None,
) -> CanonicalRow:
    """
    Normalize one raw CSV row.

    Args:
        raw: Mapping of raw header text to raw cell value
        index: Absolute zero-based row index within the file
        mapping: Optional explicit column mapping; a mapped field is taken from
            its mapped column and never backfilled from aliases

    Returns:
        CanonicalRow (absent values become empty strings)
    """
    values = _fold_headers(raw)
    mapping = mapping or ColumnMapping()

    resolved: dict[str, str] = {}
    consumed: set[str] = set()
    for canonical, raw_header, aliases in (
        ("part_number", mapping.part_number, IDENTIFIER_ALIASES),
        ("manufacturer", mapping.manufacturer, MANUFACTURER_ALIASES),
        ("category", mapping.category, CATEGORY_ALIASES),
    ):
        if raw_header:
            value, source = _take_mapped(values, raw_header, canonical)
        else:
            value, source = _take(values, aliases)
        resolved[canonical] = value
        if source:
            consumed.add(source)
        consumed.add(canonical)

    attributes = {k: v for k, v in values.items() if k not in consumed}

    return CanonicalRow(
        index=index,
        identifier=resolved["part_number"],
        manufacturer=resolved["manufacturer"],
        category=resolved["category"],
        attributes=attributes,
    )
