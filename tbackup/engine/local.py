# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Local Engine - Filesystem data movement.

Each table is a directory of files under ``config.data_dir``. A backup is
a directory ``<root>/<backup_id>/`` holding (optionally zstd-compressed)
copies of the table files plus a ``manifest.json`` describing them.

Files are written atomically (write to temp, then rename) so a crash never
leaves a half-written file under its final name.

The metadata snapshot used around delete/merge is a copy of the state
store database taken with SQLite's online backup API.
"""

import hashlib
import json
import os
import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, List

import aiofiles
import aiosqlite
import structlog

from tbackup.config import BackupConfig
from tbackup.engine.base import CopyResult, FileEntry, TableSnapshot
from tbackup.engine.compressor import COMPRESSED_SUFFIX, compress_for_backup
from tbackup.exceptions import EngineError

logger = structlog.get_logger()

MANIFEST_FILENAME = "manifest.json"
MERGE_STAGING_SUFFIX = ".merging"
_HASH_CHUNK_SIZE = 1024 * 1024


class LocalEngine:
    """Data-movement engine backed by local directories."""

    def __init__(self, config: BackupConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    async def table_exists(self, table: str) -> bool:
        if not table or "/" in table or "\\" in table or table in (".", ".."):
            return False
        return (self.config.data_dir / table).is_dir()

    async def root_reachable(self, root: str) -> bool:
        path = Path(root)
        if path.exists():
            return path.is_dir() and os.access(path, os.W_OK)

        # A missing root is fine as long as it can be created
        parent = path.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        return parent.is_dir() and os.access(parent, os.W_OK)

    # ------------------------------------------------------------------
    # Create pipeline
    # ------------------------------------------------------------------

    async def prepare_backup(self, backup_id: str, root: str) -> None:
        backup_dir = Path(root) / backup_id
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EngineError(
                f"Failed to create backup directory: {e}",
                details={"backup_dir": str(backup_dir)},
            ) from e

        logger.debug("backup_directory_prepared", backup_dir=str(backup_dir))

    async def snapshot_tables(self, backup_id: str, tables: List[str]) -> TableSnapshot:
        """
        Record size, mtime and content hash of every file of every table.

        The copy stage refuses files whose content no longer matches.
        """
        snapshot = TableSnapshot(backup_id=backup_id, taken_at=datetime.now(UTC))

        for table in tables:
            table_dir = self.config.data_dir / table
            if not table_dir.is_dir():
                raise EngineError(
                    f"Table directory disappeared: {table}",
                    details={"table": table, "backup_id": backup_id},
                )

            entries: List[FileEntry] = []
            for file_path in sorted(p for p in table_dir.rglob("*") if p.is_file()):
                stat = file_path.stat()
                entries.append(
                    FileEntry(
                        path=file_path.relative_to(table_dir).as_posix(),
                        size=stat.st_size,
                        mtime=stat.st_mtime,
                        sha256=await _hash_file(file_path),
                    )
                )
            snapshot.tables[table] = entries

        logger.info(
            "tables_snapshotted",
            backup_id=backup_id,
            tables=tables,
            files=sum(len(e) for e in snapshot.tables.values()),
        )
        return snapshot

    async def copy_tables(
        self,
        backup_id: str,
        root: str,
        snapshot: TableSnapshot,
        since: datetime | None = None,
    ) -> CopyResult:
        backup_dir = Path(root) / backup_id
        since_ts = since.timestamp() if since else None

        files_copied = 0
        files_skipped = 0
        bytes_read = 0
        bytes_written = 0
        manifest_tables: Dict[str, Dict[str, dict]] = {}

        for table, entries in snapshot.tables.items():
            manifest_tables[table] = {}

            for entry in entries:
                if since_ts is not None and entry.mtime <= since_ts:
                    files_skipped += 1
                    continue

                source = self.config.data_dir / table / entry.path
                try:
                    async with aiofiles.open(source, "rb") as f:
                        raw = await f.read()
                except OSError as e:
                    raise EngineError(
                        f"Failed to read table file: {e}",
                        details={"table": table, "path": entry.path},
                    ) from e

                if hashlib.sha256(raw).hexdigest() != entry.sha256:
                    raise EngineError(
                        f"Table file changed after snapshot: {table}/{entry.path}",
                        details={"table": table, "path": entry.path, "backup_id": backup_id},
                    )

                stored_as = f"{table}/{entry.path}"
                if self.config.compress_backups:
                    payload = await compress_for_backup(
                        stored_as, raw, self.config.zstd_level
                    )
                    stored_as += COMPRESSED_SUFFIX
                else:
                    payload = raw

                await _write_atomic(backup_dir / stored_as, payload)

                manifest_tables[table][entry.path] = {
                    "size": entry.size,
                    "sha256": entry.sha256,
                    "stored_as": stored_as,
                    "source_backup": backup_id,
                }
                files_copied += 1
                bytes_read += len(raw)
                bytes_written += len(payload)

        manifest = {
            "backup_id": backup_id,
            "taken_at": snapshot.taken_at.isoformat(),
            "since": since.isoformat() if since else None,
            "compressed": self.config.compress_backups,
            "tables": manifest_tables,
        }
        await _write_atomic(
            backup_dir / MANIFEST_FILENAME,
            json.dumps(manifest, indent=2, sort_keys=True).encode(),
        )

        logger.info(
            "tables_copied",
            backup_id=backup_id,
            root=root,
            files_copied=files_copied,
            files_skipped=files_skipped,
            bytes_written=bytes_written,
        )

        return CopyResult(
            backup_id=backup_id,
            files_copied=files_copied,
            files_skipped=files_skipped,
            bytes_read=bytes_read,
            bytes_written=bytes_written,
        )

    # ------------------------------------------------------------------
    # Delete / merge
    # ------------------------------------------------------------------

    async def delete_backup_data(self, backup_id: str, root: str) -> bool:
        backup_dir = Path(root) / backup_id
        if not backup_dir.exists():
            return False

        try:
            shutil.rmtree(backup_dir)
        except OSError as e:
            raise EngineError(
                f"Failed to delete backup data: {e}",
                details={"backup_dir": str(backup_dir)},
            ) from e

        logger.info("backup_data_deleted", backup_id=backup_id, root=root)
        return True

    async def merge_backup_data(self, backup_ids: List[str], root: str) -> str:
        """
        Stage the merge of backups (oldest first) into the newest one.

        The merged image is assembled from copies in ``<target>.merging``;
        neither the sources nor the target are touched until
        ``commit_merge_data`` swaps it in. For a file present in several
        backups the newest copy wins. Folding stops at the newest complete
        image (a full backup, or an earlier merge that reached one): a file
        it lacks was deleted before it was taken.
        """
        if len(backup_ids) < 2:
            raise EngineError(
                "At least two backups are required for a merge",
                details={"backup_ids": backup_ids},
            )

        root_path = Path(root)
        target_id = backup_ids[-1]
        staging_dir = root_path / f"{target_id}{MERGE_STAGING_SUFFIX}"

        if staging_dir.exists():
            shutil.rmtree(staging_dir)

        merged_tables: Dict[str, Dict[str, dict]] = {}
        folded: List[str] = []
        since = None

        # Newest first so that newer copies take precedence
        for backup_id in reversed(backup_ids):
            manifest = await _read_manifest(root_path / backup_id)
            for table, files in manifest.get("tables", {}).items():
                merged_files = merged_tables.setdefault(table, {})
                for rel_path, entry in files.items():
                    if rel_path in merged_files:
                        continue

                    async with aiofiles.open(root_path / backup_id / entry["stored_as"], "rb") as f:
                        payload = await f.read()
                    await _write_atomic(staging_dir / entry["stored_as"], payload)

                    merged_files[rel_path] = dict(entry)

            folded.append(backup_id)
            since = manifest.get("since")
            if since is None:
                break

        target_manifest = await _read_manifest(root_path / target_id)
        merged_manifest = {
            **target_manifest,
            "since": since,
            "merged_from": backup_ids,
            "folded": list(reversed(folded)),
            "tables": merged_tables,
        }
        await _write_atomic(
            staging_dir / MANIFEST_FILENAME,
            json.dumps(merged_manifest, indent=2, sort_keys=True).encode(),
        )

        logger.info(
            "backup_merge_staged",
            backup_ids=backup_ids,
            folded=len(folded),
            target=target_id,
            root=root,
        )
        return target_id

    async def commit_merge_data(self, target_id: str, root: str) -> None:
        """Swap the staged merge image in place of the target backup."""
        root_path = Path(root)
        target_dir = root_path / target_id
        staging_dir = root_path / f"{target_id}{MERGE_STAGING_SUFFIX}"
        previous_dir = root_path / f"{target_id}.premerge"

        if not staging_dir.is_dir():
            raise EngineError(
                f"No staged merge for {target_id}",
                details={"staging_dir": str(staging_dir)},
            )

        try:
            if previous_dir.exists():
                shutil.rmtree(previous_dir)
            if target_dir.exists():
                target_dir.rename(previous_dir)
            staging_dir.rename(target_dir)
            if previous_dir.exists():
                shutil.rmtree(previous_dir)
        except OSError as e:
            raise EngineError(
                f"Failed to swap in merged backup: {e}",
                details={"target_dir": str(target_dir)},
            ) from e

        logger.info("backup_data_merged", target=target_id, root=root)

    async def discard_merge_data(self, target_id: str, root: str) -> None:
        staging_dir = Path(root) / f"{target_id}{MERGE_STAGING_SUFFIX}"
        if staging_dir.exists():
            shutil.rmtree(staging_dir)
            logger.info("backup_merge_discarded", target=target_id, root=root)

    # ------------------------------------------------------------------
    # Metadata snapshot
    # ------------------------------------------------------------------

    async def create_snapshot(self) -> None:
        await _copy_database(self.config.store_path, self.config.snapshot_path)
        logger.info("metadata_snapshot_created", path=str(self.config.snapshot_path))

    async def restore_from_snapshot(self) -> None:
        if not self.config.snapshot_path.exists():
            raise EngineError(
                "No metadata snapshot to restore from",
                details={"snapshot_path": str(self.config.snapshot_path)},
            )
        await _copy_database(self.config.snapshot_path, self.config.store_path)
        logger.warning("metadata_restored_from_snapshot", path=str(self.config.snapshot_path))

    async def delete_snapshot(self) -> None:
        if self.config.snapshot_path.exists():
            self.config.snapshot_path.unlink()
            logger.info("metadata_snapshot_deleted", path=str(self.config.snapshot_path))


async def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(_HASH_CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


async def _write_atomic(path: Path, payload: bytes) -> None:
    """Write payload to path via a temp file and rename."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")

        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(payload)

        # Rename to final path (atomic on most filesystems)
        temp_path.replace(path)
    except OSError as e:
        raise EngineError(
            f"Failed to write backup file: {e}",
            details={"path": str(path)},
        ) from e


async def _read_manifest(backup_dir: Path) -> dict:
    manifest_path = backup_dir / MANIFEST_FILENAME
    try:
        async with aiofiles.open(manifest_path, "rb") as f:
            return json.loads(await f.read())
    except FileNotFoundError as e:
        raise EngineError(
            f"Backup manifest not found: {manifest_path}",
            details={"manifest_path": str(manifest_path)},
        ) from e


async def _copy_database(source: Path, target: Path) -> None:
    """Copy a SQLite database with the online backup API."""
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        # The target connection is driven from the source connection's thread
        async with aiosqlite.connect(target, check_same_thread=False) as dst:
            async with aiosqlite.connect(source) as src:
                await src.backup(dst)
    except Exception as e:
        raise EngineError(
            f"Failed to copy state database: {e}",
            details={"source": str(source), "target": str(target)},
        ) from e
