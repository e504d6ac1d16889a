"""
Candidate record construction: CanonicalRow -> the remote record's shape.

The candidate is what the row *would* make the remote product look like.
It is never written as-is; the diff engine reduces it to the fields that
actually change.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Optional

from catalog_sync.ingest.normalizer import CanonicalRow
from catalog_sync.remote.catalog import CatalogRecord
from catalog_sync.sync.provenance import ProvenanceRules
from catalog_sync.sync.text import format_label

UpdateMode = Literal["full", "quantity"]

# Vendor column variants -> the column names used below
FIELD_ALIASES: dict[str, str] = {
    "manufacturer_part_number": "part_number",
    "mfr_part_number": "part_number",
    "product_description": "part_description",
    "short_product_description": "short_description",
    "detailed_product_description": "detail_description",
    "stock_quantity": "quantity",
    "rohs_compliance": "rohs_status",
    "reach_compliance": "reach_status",
    "hts_code": "htsus_code",
    "eccn": "export_control_class_number",
    "datasheet_url": "datasheet",
    "image_attachment_url": "image_url",
}

# CSV column -> meta key
META_KEY_MAP: dict[str, str] = {
    "manufacturer": "manufacturer",
    "leadtime": "manufacturer_lead_weeks",
    "image_url": "image_url",
    "series": "series",
    "quantity_available": "quantity",
    "quantity": "quantity",
    "operating_temperature": "operating_temperature",
    "voltage_supply": "voltage",
    "voltage": "voltage",
    "package_case": "package",
    "packaging": "packaging",
    "supplier_device_package": "supplier_device_package",
    "mounting_type": "mounting_type",
    "short_description": "short_description",
    "part_description": "detail_description",
    "reachstatus": "reach_status",
    "reach_status": "reach_status",
    "rohsstatus": "rohs_status",
    "rohs_status": "rohs_status",
    "moisturesensitivitylevel": "moisture_sensitivity_level",
    "moisture_sensitivity_level": "moisture_sensitivity_level",
    "exportcontrolclassnumber": "export_control_class_number",
    "export_control_class_number": "export_control_class_number",
    "htsuscode": "htsus_code",
    "htsus_code": "htsus_code",
    "manufacturer_lead_weeks": "manufacturer_lead_weeks",
    "pcn_design_specification": "pcn_design_specification",
    "pcn_design": "pcn_design_specification",
    "pcn_assembly_origin": "pcn_assembly_origin",
    "pcn_assembly": "pcn_assembly_origin",
    "pcn_packaging": "pcn_packaging",
    "html_datasheet": "html_datasheet",
    "eda_models": "eda_models",
    "environmental_information": "environmental_information",
    "environmental_info": "environmental_information",
}

# Columns that never feed the composed additional-information block
_NOT_ADDITIONAL = frozenset({"datasheet", "part_number", "additional_info", "sku", "detail_description"})

# Labels already shown elsewhere on the product page
EXCLUDED_LABELS = frozenset(
    {
        "Part Title",
        "Category",
        "Product Status",
        "RF Type",
        "Topology",
        "Circuit",
        "Frequency Range",
        "Isolation",
        "Insertion Loss",
        "Test Frequency",
        "P1dB",
        "IIP3",
        "Features",
        "Impedance",
        "Voltage Supply",
        "Operating Temperature",
        "Mounting Type",
        "Package Case",
        "Supplier Device Package",
    }
)

_URL_VALUE_RE = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}(/|$)", re.IGNORECASE)


def is_price_key(key: str) -> bool:
    return any(word in key for word in ("price", "cost", "msrp"))


def is_quantity_key(key: str) -> bool:
    return any(
        word in key
        for word in ("quantity", "qty", "order_quantity", "minimum_order", "multiple_order")
    )


def is_stock_key(key: str) -> bool:
    return any(word in key for word in ("stock", "on_hand", "inventory"))


def is_status_key(key: str) -> bool:
    return "status" in key


def is_compliance_key(key: str) -> bool:
    return "rohs" in key or "reach" in key


def is_url_key(key: str) -> bool:
    return any(word in key for word in ("url", "link", "_uri")) or key in ("http", "https")


def is_url_value(value: str) -> bool:
    v = value.strip().lower()
    return v.startswith(("http://", "https://", "https", "www.")) or bool(_URL_VALUE_RE.match(v))


def _excluded_from_additional(key: str, value: str) -> bool:
    key = key.lower()
    return (
        is_price_key(key)
        or is_quantity_key(key)
        or is_stock_key(key)
        or is_status_key(key)
        or is_compliance_key(key)
        or "currency" in key
        or "region" in key
        or is_url_key(key)
        or is_url_value(value)
    )


def compose_additional_info(columns: dict[str, str]) -> str:
    """Labelled block from the columns not mapped to a dedicated field."""
    parts: list[str] = []
    for key, value in columns.items():
        if key in META_KEY_MAP or key in _NOT_ADDITIONAL:
            continue
        if value in ("", "NaN"):
            continue
        if _excluded_from_additional(key, value):
            continue
        label = format_label(key)
        if label in EXCLUDED_LABELS:
            continue
        parts.append(f"<strong>{label}:</strong> {value}<br>")
    return "".join(parts)


def apply_field_aliases(columns: dict[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in columns.items():
        out[FIELD_ALIASES.get(key, key)] = value
    return out


@dataclass
class CandidateRecord:
    """The record a row proposes. meta is ordered; later writes to a key win."""

    product_id: int
    identifier: str = ""
    sku: str = ""
    description: str = ""
    meta: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: CatalogRecord) -> "CandidateRecord":
        """The current record restated as a candidate (diffs to nothing)."""
        return cls(
            product_id=record.id,
            identifier=record.get_meta("part_number") or record.name,
            sku=record.sku,
            description=record.description,
            meta=dict(record.meta),
        )


def build_candidate(
    row: CanonicalRow,
    product_id: int,
    mode: UpdateMode = "full",
    rules: Optional[ProvenanceRules] = None,
) -> CandidateRecord:
    rules = rules or ProvenanceRules()
    columns = apply_field_aliases(row.as_flat_dict())
    identifier = columns.get("part_number") or row.identifier
    manufacturer = columns.get("manufacturer", "")

    if mode == "quantity":
        quantity = columns.get("quantity") or columns.get("quantity_available") or "0"
        return CandidateRecord(
            product_id=product_id,
            identifier=identifier,
            meta={"quantity": quantity},
        )

    meta: dict[str, str] = {}
    for csv_key, meta_key in META_KEY_MAP.items():
        if csv_key not in columns:
            continue
        value = columns[csv_key]
        # An empty synonym must not clobber a value already taken from another column
        if not value and meta.get(meta_key):
            continue
        meta[meta_key] = value

    datasheet = columns.get("datasheet")
    if datasheet is not None and not rules.is_blocked(datasheet):
        meta["datasheet"] = datasheet
        meta["datasheet_url"] = datasheet

    meta["additional_key_information"] = columns.get("additional_info") or compose_additional_info(columns)

    description = (
        columns.get("detail_description")
        or columns.get("short_description")
        or columns.get("part_description")
        or ""
    )
    sku = columns.get("sku") or f"{identifier}_{manufacturer}".strip("_") or identifier

    return CandidateRecord(
        product_id=product_id,
        identifier=identifier,
        sku=sku,
        description=description,
        meta=meta,
    )
