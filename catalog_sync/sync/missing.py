"""
Create catalog products for rows that had no match.

The row processor records lookup misses per category under
missing-products/; this replays them as product creations:

    report = await create_missing_products(catalog, MissingProductRecorder(state_dir), "vendor.csv")

Entries that were created are removed from their file, so running it again
only retries the failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from catalog_sync.core.errors import DispatchFailedError
from catalog_sync.core.logging import LogContext
from catalog_sync.remote.catalog import CatalogRecord
from catalog_sync.state.snapshot import file_stem
from catalog_sync.state.status_log import MissingProductRecorder

logger = logging.getLogger(__name__)


class ProductCreator(Protocol):
    async def create_product(self, payload: dict[str, Any], *, task_id: str = "create") -> CatalogRecord: ...


@dataclass
class CreateMissingReport:
    file_key: str
    created: list[int] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)


def _text(entry: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def new_product_payload(entry: dict[str, Any]) -> dict[str, Any]:
    """POST body for one recorded miss."""
    part_number = _text(entry, "part_number")
    meta = [{"key": "part_number", "value": part_number}]
    manufacturer = _text(entry, "manufacturer")
    if manufacturer:
        meta.append({"key": "manufacturer", "value": manufacturer})
    return {
        "name": _text(entry, "part_title", "part_number"),
        "sku": _text(entry, "sku", "part_number"),
        "description": _text(entry, "part_description", "description"),
        "meta_data": meta,
    }


async def create_missing_products(
    catalog: ProductCreator,
    recorder: MissingProductRecorder,
    file_key: str,
    category_slug: Optional[str] = None,
) -> CreateMissingReport:
    """
    Create a product for every recorded miss of file_key.

    One failed creation is logged and kept in the file; the rest continue.
    """
    report = CreateMissingReport(file_key=file_key)
    if category_slug:
        paths = [recorder.path_for(file_key, category_slug)]
    else:
        paths = recorder.paths_for(file_key)

    with LogContext(file_key=file_key):
        for path in paths:
            entries = recorder.read_path(path)
            if not entries:
                continue
            report.files.append(path)
            remaining: list[dict[str, Any]] = []
            for entry in entries:
                part_number = _text(entry, "part_number")
                if not part_number:
                    logger.warning("Skipping missing-product entry without part number in %s", path)
                    remaining.append(entry)
                    report.failed.append("")
                    continue
                task_id = f"create:{file_stem(file_key)}:{part_number}"
                try:
                    record = await catalog.create_product(new_product_payload(entry), task_id=task_id)
                except (DispatchFailedError, KeyError, ValueError) as e:
                    logger.error("Error creating product for part_number=%s: %s", part_number, e)
                    remaining.append(entry)
                    report.failed.append(part_number)
                    continue
                report.created.append(record.id)
                logger.info("Created new product for part_number=%s with ID %d", part_number, record.id)
            await recorder.replace(path, remaining)

    if not report.files:
        logger.info("No missing products recorded for %s", file_key)
    return report
