"""
tests/conftest.py

Shared fixtures for the catalog-sync test suite.

Everything here runs without external services: Postgres stores are
replaced by the in-memory fakes in tests/fakes.py and state documents are
written under pytest's tmp_path.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from catalog_sync.core.config import reset_settings
from catalog_sync.state.checkpoint import CheckpointStore
from catalog_sync.state.snapshot import JsonSnapshotStore
from catalog_sync.state.status_log import MissingProductRecorder, StatusLog
from tests.fakes import MemoryCheckpointKV, MemoryJobQueue, MemoryProgressCounters


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch):
    """Settings never leak between tests through the lru_cache."""
    for var in ("BATCH_SIZE", "CSV_HEADER_ROW", "UPDATE_MODE", "CONCURRENCY"):
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def kv() -> MemoryCheckpointKV:
    return MemoryCheckpointKV()


@pytest.fixture
def counters() -> MemoryProgressCounters:
    return MemoryProgressCounters()


@pytest.fixture
def queue() -> MemoryJobQueue:
    return MemoryJobQueue()


@pytest.fixture
def snapshots(state_dir: Path) -> JsonSnapshotStore:
    return JsonSnapshotStore(state_dir)


@pytest.fixture
def checkpoint(kv, counters, snapshots, queue) -> CheckpointStore:
    return CheckpointStore(kv, counters, snapshots, job_stats=queue)


@pytest.fixture
def status_log(state_dir: Path) -> StatusLog:
    return StatusLog(state_dir)


@pytest.fixture
def missing(state_dir: Path) -> MissingProductRecorder:
    return MissingProductRecorder(state_dir)
