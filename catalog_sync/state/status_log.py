"""
Human-readable status notes and missing-product capture.

Both are plain JSON documents under STATE_DIR so an operator can inspect a
run (or a crashed run) with nothing more than a text editor:

    batch_status/<file stem>/batch_status.json
        {"updated": [...], "skipped": [...], "failed": [...]}

    missing-products/missing-<category slug>/missing_products_<file stem>.json
        [ {row}, ... ]

Reads and writes run in worker threads so the event loop shared by the
worker loops never blocks on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable

from catalog_sync.ingest.normalizer import CanonicalRow
from catalog_sync.state.snapshot import file_stem, write_json_atomic

logger = logging.getLogger(__name__)

STATUS_SECTIONS = ("updated", "skipped", "failed")


def _dedupe(items: Iterable[str]) -> list[str]:
    """Drop repeats, keeping first occurrence order."""
    return list(dict.fromkeys(items))


class StatusLog:
    """Merge-and-dedupe status notes per file."""

    def __init__(self, root: Path | str) -> None:
        self.directory = Path(root) / "batch_status"
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def path_for(self, file_key: str) -> Path:
        return self.directory / file_stem(file_key) / "batch_status.json"

    def read(self, file_key: str) -> dict[str, list[str]]:
        path = self.path_for(file_key)
        empty: dict[str, list[str]] = {section: [] for section in STATUS_SECTIONS}
        if not path.exists():
            return empty
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Corrupt status log %s, starting fresh: %s", path, e)
            return empty
        if not isinstance(data, dict):
            logger.error("Status log %s is not an object, starting fresh", path)
            return empty
        return {
            section: [str(n) for n in data.get(section, []) if isinstance(n, str)]
            for section in STATUS_SECTIONS
        }

    async def record(
        self,
        file_key: str,
        updated: Iterable[str] = (),
        skipped: Iterable[str] = (),
        failed: Iterable[str] = (),
    ) -> dict[str, list[str]]:
        """Merge notes into the file's status document and write it back atomically."""
        additions = {"updated": list(updated), "skipped": list(skipped), "failed": list(failed)}
        async with self._locks[file_key]:
            status = await asyncio.to_thread(self.read, file_key)
            for section in STATUS_SECTIONS:
                status[section] = _dedupe(status[section] + additions[section])
            await asyncio.to_thread(write_json_atomic, self.path_for(file_key), status)
        logger.debug(
            "Status log %s: +%d updated +%d skipped +%d failed",
            file_key,
            len(additions["updated"]),
            len(additions["skipped"]),
            len(additions["failed"]),
        )
        return status

    def delete(self, file_key: str) -> bool:
        path = self.path_for(file_key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


class MissingProductRecorder:
    """Collects rows with no matching remote record, grouped by category slug."""

    def __init__(self, root: Path | str) -> None:
        self.directory = Path(root) / "missing-products"
        self._lock = asyncio.Lock()

    def path_for(self, file_key: str, category_slug: str) -> Path:
        slug = file_stem(category_slug or "unknown")
        return self.directory / f"missing-{slug}" / f"missing_products_{file_stem(file_key)}.json"

    def paths_for(self, file_key: str) -> list[Path]:
        """Every category file holding misses for file_key."""
        return sorted(self.directory.glob(f"missing-*/missing_products_{file_stem(file_key)}.json"))

    def read(self, file_key: str, category_slug: str = "unknown") -> list[dict[str, Any]]:
        return self.read_path(self.path_for(file_key, category_slug))

    def read_path(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Corrupt missing-products file %s, starting fresh: %s", path, e)
            return []
        return data if isinstance(data, list) else []

    async def record(self, file_key: str, row: CanonicalRow, category_slug: str = "unknown") -> Path:
        entry = {"row_index": row.index, **row.as_flat_dict()}
        async with self._lock:
            path = self.path_for(file_key, category_slug)
            entries = await asyncio.to_thread(self.read, file_key, category_slug)
            if entry not in entries:
                entries.append(entry)
            await asyncio.to_thread(write_json_atomic, path, entries)
        logger.info("Recorded missing product %s in %s", row.identifier, path)
        return path

    async def replace(self, path: Path, entries: list[dict[str, Any]]) -> None:
        """Rewrite one category file; an empty list removes it."""
        async with self._lock:
            if entries:
                await asyncio.to_thread(write_json_atomic, path, entries)
            else:
                await asyncio.to_thread(path.unlink, missing_ok=True)
