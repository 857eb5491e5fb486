# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for tbackup tests.

Provides temporary state/data directories, an initialized state store,
a populated table data directory and a local engine.
"""

import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import aiosqlite
import pytest
import pytest_asyncio
import structlog

from tbackup.config import BackupConfig
from tbackup.engine import LocalEngine
from tbackup.models import BackupStage

TABLE_FILES = {
    "orders": {
        "part-0000.dat": b"order-1,42.00\norder-2,13.50\n",
        "part-0001.dat": b"order-3,7.25\n",
    },
    "customers": {
        "part-0000.dat": b"alice\nbob\n",
        "index/by_name.idx": b"alice:0\nbob:1\n",
    },
    "audit": {
        "events.log": b"login\nlogout\n" * 100,
    },
}


class SimulatedCrash(BaseException):
    """Stands in for process death: not an Exception, so nothing handles it."""


def crash_at_stage(stage: BackupStage):
    """Failure hook that kills the 'process' right before the given stage."""

    def hook(current: BackupStage) -> None:
        if current == stage:
            raise SimulatedCrash(stage.value)

    return hook


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    """Keep the caller's TBACKUP_* variables and logging setup out of tests."""
    for name in (
        "TBACKUP_STATE_DIR",
        "TBACKUP_DATA_DIR",
        "TBACKUP_COMPRESS",
        "TBACKUP_ZSTD_LEVEL",
        "TBACKUP_FAIL_AT_STAGE",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    structlog.reset_defaults()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def populate_tables(data_dir: Path) -> None:
    for table, files in TABLE_FILES.items():
        for rel_path, content in files.items():
            path = data_dir / table / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)


@pytest.fixture
def data_dir(temp_dir: Path) -> Path:
    """Data directory holding the orders, customers and audit tables."""
    path = temp_dir / "data"
    populate_tables(path)
    return path


@pytest.fixture
def backup_root(temp_dir: Path) -> str:
    return str(temp_dir / "backups")


@pytest.fixture
def test_config(temp_dir: Path, data_dir: Path) -> BackupConfig:
    """Create a test configuration."""
    return BackupConfig(
        state_dir=temp_dir / "state",
        data_dir=data_dir,
        compress_backups=True,
        zstd_level=3,
    )


@pytest.fixture
def engine(test_config: BackupConfig) -> LocalEngine:
    return LocalEngine(test_config)


@pytest_asyncio.fixture
async def db(test_config: BackupConfig) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Open a connection to a freshly initialized state store."""
    from tbackup.store import init_store_db

    await init_store_db(test_config.store_path)
    async with aiosqlite.connect(test_config.store_path) as conn:
        yield conn
