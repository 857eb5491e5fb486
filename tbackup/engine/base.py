# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Data-movement engine protocol.

Defines the ``DataMovementEngine`` Protocol the coordinator and the
delete/merge operations talk to. The core only sequences these calls and
tracks locks/markers around them; how tables are snapshotted and copied is
entirely up to the engine.

Usage:
    from tbackup.engine.base import DataMovementEngine

    async def do_work(engine: DataMovementEngine) -> None:
        snapshot = await engine.snapshot_tables("backup_01H...", ["orders"])
        await engine.copy_tables("backup_01H...", "/backups", snapshot)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Protocol


@dataclass
class FileEntry:
    """One file of a table as seen at snapshot time."""

    path: str  # relative to the table directory
    size: int
    mtime: float
    sha256: str


@dataclass
class TableSnapshot:
    """Point-in-time file listing of the tables in a backup."""

    backup_id: str
    taken_at: datetime
    tables: Dict[str, List[FileEntry]] = field(default_factory=dict)


@dataclass
class CopyResult:
    """Outcome of copying a snapshot to the backup root."""

    backup_id: str
    files_copied: int
    files_skipped: int
    bytes_read: int
    bytes_written: int


class DataMovementEngine(Protocol):
    """Engine interface that the backup core depends on.

    All methods are async -- callers must ``await`` every operation.
    """

    async def table_exists(self, table: str) -> bool:
        """Return True if the table can be backed up."""
        ...

    async def root_reachable(self, root: str) -> bool:
        """Return True if backups can be written under root."""
        ...

    async def prepare_backup(self, backup_id: str, root: str) -> None:
        """Create whatever the backup needs on the root before copying."""
        ...

    async def snapshot_tables(self, backup_id: str, tables: List[str]) -> TableSnapshot:
        """Freeze the contents of tables for a backup."""
        ...

    async def copy_tables(
        self,
        backup_id: str,
        root: str,
        snapshot: TableSnapshot,
        since: datetime | None = None,
    ) -> CopyResult:
        """Copy a snapshot to the root.

        Args:
            backup_id: Backup being written.
            root: Backup root.
            snapshot: Result of ``snapshot_tables``.
            since: For incremental backups, only data changed after this
                time is copied.
        """
        ...

    async def delete_backup_data(self, backup_id: str, root: str) -> bool:
        """Remove a backup's data from the root. Missing data is not an error."""
        ...

    async def merge_backup_data(self, backup_ids: List[str], root: str) -> str:
        """Stage the fold of backups (oldest first) into the newest one.

        Returns the target id. Neither the sources nor the target may change
        here; ``commit_merge_data`` makes the staged image the target once
        the merge is recorded.
        """
        ...

    async def commit_merge_data(self, target_id: str, root: str) -> None:
        """Replace the target's data with its staged merge image."""
        ...

    async def discard_merge_data(self, target_id: str, root: str) -> None:
        """Drop a staged merge image. Missing staging is not an error."""
        ...

    async def create_snapshot(self) -> None:
        """Snapshot the backup metadata before a risky mutation."""
        ...

    async def restore_from_snapshot(self) -> None:
        """Roll the backup metadata back to the last snapshot."""
        ...

    async def delete_snapshot(self) -> None:
        """Drop the metadata snapshot. Missing snapshot is not an error."""
        ...
