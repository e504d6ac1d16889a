"""
Durable JSON snapshots of per-file progress.

The snapshot is the slower, human-readable half of the checkpoint: it is
rewritten after every successful advance and is what the checkpoint store
falls back to when Postgres cannot be reached. A snapshot never moves
backwards: a write carrying a lower lastProcessedRow than the stored one
is dropped.

Layout:
    <STATE_DIR>/checkpoints/<file stem>.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

_CSV_SUFFIX_RE = re.compile(r"\.csv$", re.IGNORECASE)
_UNSAFE_PATH_RE = re.compile(r"[\\/]+|\.\.")


def file_stem(file_key: str) -> str:
    """Filesystem-safe name for a file key ("vendor/a.csv" -> "vendor_a")."""
    stem = _CSV_SUFFIX_RE.sub("", file_key.strip())
    stem = _UNSAFE_PATH_RE.sub("_", stem).strip("_")
    return stem or "unnamed"


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RowLevel(_CamelModel):
    last_processed_row: int = Field(default=0, alias="lastProcessedRow")
    total_rows: int = Field(default=0, alias="totalRows")
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    completed_rows: int = Field(default=0, alias="completedRows")
    remaining_rows: int = Field(default=0, alias="remainingRows")


class JobLevel(_CamelModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    total_remaining_jobs: int = Field(default=0, alias="totalRemainingJobs")


class CheckpointSnapshot(_CamelModel):
    row_level: RowLevel = Field(default_factory=RowLevel, alias="rowLevel")
    job_level: JobLevel = Field(default_factory=JobLevel, alias="jobLevel")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class JsonSnapshotStore:
    """Snapshot documents under <root>/checkpoints/."""

    def __init__(self, root: Path | str) -> None:
        self.directory = Path(root) / "checkpoints"
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def path_for(self, file_key: str) -> Path:
        return self.directory / f"{file_stem(file_key)}.json"

    async def write(self, file_key: str, snapshot: CheckpointSnapshot) -> bool:
        """
        Persist a snapshot unless the stored one is further along.

        Writes for a file are serialized, and the file I/O runs in a thread.

        Returns:
            True if the snapshot was written
        """
        new_row = snapshot.row_level.last_processed_row
        async with self._locks[file_key]:
            current = await asyncio.to_thread(self.read, file_key)
            if current is not None and current.row_level.last_processed_row > new_row:
                logger.debug(
                    "Snapshot for %s already at %d, dropping %d",
                    file_key,
                    current.row_level.last_processed_row,
                    new_row,
                )
                return False
            await asyncio.to_thread(write_json_atomic, self.path_for(file_key), snapshot.to_document())
        return True

    def read(self, file_key: str) -> Optional[CheckpointSnapshot]:
        """Return the snapshot, or None when absent or unreadable."""
        path = self.path_for(file_key)
        if not path.exists():
            return None
        try:
            return CheckpointSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error("Unreadable checkpoint snapshot %s: %s", path, e)
            return None

    def delete(self, file_key: str) -> bool:
        path = self.path_for(file_key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted checkpoint snapshot %s", path)
        return True
