"""
Diff engine: current record + candidate -> minimal update payload.

Pure functions, no I/O. A tracked field goes into the payload only when its
normalized value changes and the change is allowed by the field's rule:

- default: never regress a populated value to blank
- image_url: no blocked hosts; a self-hosted image is only replaced by a
  self-hosted image from the same environment
- datasheet / datasheet_url: no blocked hosts; a self-hosted document is
  never replaced by an external one
- additional_key_information: merged, never replaced

Meta keys outside TRACKED_META_KEYS are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from catalog_sync.remote.catalog import CatalogRecord
from catalog_sync.sync.candidate import CandidateRecord
from catalog_sync.sync.provenance import ProvenanceRules
from catalog_sync.sync.text import is_blank, merge_additional_info, normalize_text

logger = logging.getLogger(__name__)

TRACKED_META_KEYS = frozenset(
    {
        "part_number",
        "spq",
        "manufacturer",
        "image_url",
        "datasheet",
        "datasheet_url",
        "series_url",
        "series",
        "quantity",
        "operating_temperature",
        "voltage",
        "package",
        "packaging",
        "supplier_device_package",
        "mounting_type",
        "short_description",
        "detail_description",
        "additional_key_information",
        "reach_status",
        "rohs_status",
        "moisture_sensitivity_level",
        "export_control_class_number",
        "htsus_code",
        "manufacturer_lead_weeks",
        "pcn_design_specification",
        "pcn_assembly_origin",
        "pcn_packaging",
        "html_datasheet",
        "eda_models",
        "environmental_information",
    }
)

DATASHEET_KEYS = ("datasheet", "datasheet_url")


@dataclass
class UpdatePayload:
    product_id: int
    meta: dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None
    sku: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.meta and self.description is None and self.sku is None

    def to_api(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": self.product_id,
            "meta_data": [{"key": k, "value": v} for k, v in self.meta.items()],
        }
        if self.description is not None:
            body["description"] = self.description
        if self.sku is not None:
            body["sku"] = self.sku
        return body


@dataclass
class DiffResult:
    payload: Optional[UpdatePayload]
    changed_fields: list[str] = field(default_factory=list)
    skipped_fields: dict[str, str] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return self.payload is not None


@dataclass(frozen=True)
class FieldDecision:
    update: bool
    value: str = ""
    reason: str = ""


def _skip(reason: str) -> FieldDecision:
    return FieldDecision(False, reason=reason)


def _image_guard(current: str, new: str, rules: ProvenanceRules) -> Optional[str]:
    if not is_blank(current) and is_blank(new):
        return "would overwrite with empty value"
    if rules.is_blocked(new):
        return "new value is from a blocked host"
    current_env = rules.environment_of(current)
    if current_env is not None:
        new_env = rules.environment_of(new)
        if new_env is None:
            return "current is self-hosted, new is external"
        if new_env != current_env:
            return f"cross-environment overwrite ({current_env} -> {new_env})"
    return None


def _datasheet_guard(current: str, new: str, rules: ProvenanceRules) -> Optional[str]:
    if rules.is_blocked(new):
        return "new value is from a blocked host"
    if rules.is_self_hosted(current) and not rules.is_self_hosted(new):
        return "current is self-hosted, new is not"
    return None


def decide_field(key: str, current: str, new: str, rules: ProvenanceRules) -> FieldDecision:
    """Whether one meta field should be written, and with what value."""
    if key == "image_url":
        reason = _image_guard(current, new, rules)
        if reason:
            return _skip(f"image_url: {reason}")

    if key in DATASHEET_KEYS:
        reason = _datasheet_guard(current, new, rules)
        if reason:
            return _skip(f"{key}: {reason}")

    if key == "additional_key_information":
        if is_blank(new):
            return _skip("additional_key_information: new value empty")
        merged, changed = merge_additional_info(current, new)
        if not changed:
            return _skip("additional_key_information: no new entries")
        return FieldDecision(True, merged, "merged")

    norm_current = normalize_text(current)
    norm_new = normalize_text(new)
    if not norm_current and not norm_new:
        return _skip("both values empty")
    if norm_current == norm_new:
        return _skip("values identical after normalization")
    if norm_current and not norm_new:
        return _skip("would overwrite with empty value")
    return FieldDecision(True, new)


def _top_level_change(current: str, new: str) -> bool:
    return bool(new) and normalize_text(current) != normalize_text(new)


def compute_diff(
    current: CatalogRecord,
    candidate: CandidateRecord,
    rules: Optional[ProvenanceRules] = None,
) -> DiffResult:
    """
    Minimal payload turning current into candidate under the field rules.

    Returns a DiffResult whose payload is None when nothing needs writing.
    """
    rules = rules or ProvenanceRules()
    payload = UpdatePayload(product_id=candidate.product_id)
    result = DiffResult(payload=None)

    for key, new_value in candidate.meta.items():
        if key not in TRACKED_META_KEYS:
            result.skipped_fields[key] = "not tracked"
            continue
        decision = decide_field(key, current.meta.get(key, ""), new_value or "", rules)
        if decision.update:
            payload.meta[key] = decision.value
            result.changed_fields.append(key)
        else:
            result.skipped_fields[key] = decision.reason or "no change"

    if _top_level_change(current.description, candidate.description):
        payload.description = candidate.description
        result.changed_fields.append("description")
    if _top_level_change(current.sku, candidate.sku):
        payload.sku = candidate.sku
        result.changed_fields.append("sku")

    if not payload.is_empty:
        result.payload = payload
        logger.debug(
            "Product %d: %d field(s) to update: %s",
            candidate.product_id,
            len(result.changed_fields),
            ", ".join(result.changed_fields),
        )
    return result


def compute_quantity_diff(current: CatalogRecord, candidate: CandidateRecord) -> DiffResult:
    """Quantity-only mode: compare the quantity meta and nothing else."""
    current_qty = (current.meta.get("quantity") or "0").strip()
    new_qty = (candidate.meta.get("quantity") or "0").strip()
    if current_qty == new_qty:
        return DiffResult(payload=None, skipped_fields={"quantity": "unchanged"})
    return DiffResult(
        payload=UpdatePayload(product_id=candidate.product_id, meta={"quantity": new_qty}),
        changed_fields=["quantity"],
    )
