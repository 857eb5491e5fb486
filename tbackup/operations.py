# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Operations - Delete and merge of completed backups.

Both operations mutate backup history, so they run under the exclusive
lock and set the repair snapshot marker before the first mutation:

    delete: exclusive(DELETE) -> metadata snapshot -> marker -> remove data
            and soft-delete rows -> fix incremental sets -> drop marker
            -> drop snapshot -> release

    merge:  exclusive(MERGE) -> merge lock -> metadata snapshot -> marker
            -> stage merged image -> stamp merged rows (commit point)
            -> swap in merged image -> remove source data -> fix
            incremental sets -> drop marker -> drop snapshot -> release locks

A delete cannot be undone once data is gone, so a failed delete keeps its
lock and marker for `backup repair`. A merge touches neither its sources nor its
target until the commit point, so a failure before that point rolls the metadata
back and releases everything.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Dict, List

import aiosqlite
import structlog

from tbackup.engine.base import DataMovementEngine
from tbackup.exceptions import NotFoundError, OperationFailure, ValidationError
from tbackup.models import BackupInfo, BackupState, OperationKind
from tbackup.store import (
    acquire_exclusive_lock,
    acquire_merge_lock,
    clear_incremental_table_set,
    create_repair_snapshot,
    delete_repair_snapshot,
    get_backup_record,
    get_incremental_table_set,
    list_backup_history,
    mark_backups_deleted,
    mark_backups_merged,
    release_exclusive_lock,
    release_merge_lock,
    set_incremental_table_set,
)

logger = structlog.get_logger()


@dataclass
class DeleteResult:
    """Result of a delete operation."""

    deleted_ids: List[str]
    cleared_roots: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class MergeResult:
    """Result of a merge operation."""

    merged_into: str
    source_ids: List[str]
    duration_seconds: float = 0.0


async def _load_live_backups(
    db: aiosqlite.Connection,
    backup_ids: List[str],
) -> List[BackupInfo]:
    ids = list(dict.fromkeys(i.strip() for i in backup_ids if i and i.strip()))
    if not ids:
        raise ValidationError("At least one backup id is required")

    infos: List[BackupInfo] = []
    missing: List[str] = []
    for backup_id in ids:
        info = await get_backup_record(db, backup_id)
        if info is None or not info.is_live:
            missing.append(backup_id)
        else:
            infos.append(info)

    if missing:
        raise NotFoundError(
            f"Unknown or already removed backups: {', '.join(missing)}",
            details={"backup_ids": missing},
        )

    running = [i.backup_id for i in infos if not i.is_terminal]
    if running:
        raise ValidationError(
            f"Backups still running: {', '.join(running)}. Run 'backup repair' if they crashed.",
            details={"backup_ids": running},
        )

    return infos


async def _refresh_incremental_sets(db: aiosqlite.Connection, roots: List[str]) -> List[str]:
    """
    Drop tables that no live COMPLETE backup covers any more.

    Returns:
        Roots whose set became empty
    """
    cleared: List[str] = []
    for root in roots:
        live = await list_backup_history(db, root=root, include_deleted=False)
        covered = {
            table
            for info in live
            if info.state == BackupState.COMPLETE
            for table in info.tables
        }
        current = await get_incremental_table_set(db, root)
        remaining = current & covered

        if not remaining:
            if current:
                await clear_incremental_table_set(db, root)
                cleared.append(root)
        elif remaining != current:
            await set_incremental_table_set(db, root, remaining)

    return cleared


async def delete_backups(
    db: aiosqlite.Connection,
    engine: DataMovementEngine,
    backup_ids: List[str],
) -> DeleteResult:
    """
    Delete backups.

    Rows are soft-deleted so the history keeps them for audit.

    Raises:
        NotFoundError: If an id is unknown or already removed
        ValidationError: If a backup is still RUNNING
        LockConflict: If another exclusive operation holds the lock
        OperationFailure: If the delete fails midway (lock and marker are
            left for repair)
    """
    start_time = datetime.now(UTC)
    infos = await _load_live_backups(db, backup_ids)
    ids = [i.backup_id for i in infos]

    await acquire_exclusive_lock(db, ids, OperationKind.DELETE)
    logger.info("delete_started", backup_ids=ids)

    try:
        await engine.create_snapshot()
        await create_repair_snapshot(db)

        roots: List[str] = []
        for info in infos:
            await engine.delete_backup_data(info.backup_id, info.root)
            await mark_backups_deleted(db, [info.backup_id])
            if info.root not in roots:
                roots.append(info.root)

        cleared = await _refresh_incremental_sets(db, roots)

        await delete_repair_snapshot(db)
        await engine.delete_snapshot()
    except Exception as e:
        logger.error("delete_failed", backup_ids=ids, error=str(e))
        raise OperationFailure(
            f"Delete failed: {e}. Run 'backup repair' before the next operation.",
            details={"backup_ids": ids},
        ) from e

    await release_exclusive_lock(db)

    duration = (datetime.now(UTC) - start_time).total_seconds()
    logger.info("delete_completed", backup_ids=ids, cleared_roots=cleared, duration=duration)

    return DeleteResult(deleted_ids=ids, cleared_roots=cleared, duration_seconds=duration)


async def merge_backups(
    db: aiosqlite.Connection,
    engine: DataMovementEngine,
    backup_ids: List[str],
) -> MergeResult:
    """
    Merge completed backups of one root into the newest of them.

    Raises:
        NotFoundError: If an id is unknown or already removed
        ValidationError: If fewer than two backups are given, a backup is
            not COMPLETE, or the backups live on different roots
        LockConflict: If another exclusive operation holds the lock
        OperationFailure: If the merge fails
    """
    start_time = datetime.now(UTC)
    infos = await _load_live_backups(db, backup_ids)

    if len(infos) < 2:
        raise ValidationError("A merge needs at least two distinct backups")

    not_complete = [i.backup_id for i in infos if i.state != BackupState.COMPLETE]
    if not_complete:
        raise ValidationError(
            f"Only complete backups can be merged: {', '.join(not_complete)}",
            details={"backup_ids": not_complete},
        )

    roots: Dict[str, List[str]] = {}
    for info in infos:
        roots.setdefault(info.root, []).append(info.backup_id)
    if len(roots) > 1:
        raise ValidationError(
            "Backups on different roots cannot be merged",
            details={"roots": roots},
        )

    infos.sort(key=lambda i: (i.start_ts, i.backup_id))
    ids = [i.backup_id for i in infos]
    root = infos[0].root
    target_id = ids[-1]
    sources = ids[:-1]

    await acquire_exclusive_lock(db, ids, OperationKind.MERGE)
    try:
        await acquire_merge_lock(db, ids)
    except Exception:
        await release_exclusive_lock(db)
        raise

    logger.info("merge_started", backup_ids=ids, target=target_id)

    committed = False
    try:
        await engine.create_snapshot()
        await create_repair_snapshot(db)

        await engine.merge_backup_data(ids, root)
        await mark_backups_merged(db, sources, target_id)
        committed = True

        await engine.commit_merge_data(target_id, root)
        for source_id in sources:
            await engine.delete_backup_data(source_id, root)
        await _refresh_incremental_sets(db, [root])

        await delete_repair_snapshot(db)
        await engine.delete_snapshot()
    except Exception as e:
        logger.error("merge_failed", backup_ids=ids, committed=committed, error=str(e))
        if committed:
            raise OperationFailure(
                f"Merge into {target_id} was recorded but cleanup failed: {e}. "
                "Run 'backup repair'.",
                details={"backup_ids": ids, "merged_into": target_id},
            ) from e

        await _abort_merge(db, engine, target_id, root)
        raise OperationFailure(
            f"Merge failed and was rolled back: {e}",
            details={"backup_ids": ids},
        ) from e

    await release_merge_lock(db)
    await release_exclusive_lock(db)

    duration = (datetime.now(UTC) - start_time).total_seconds()
    logger.info("merge_completed", merged_into=target_id, sources=sources, duration=duration)

    return MergeResult(merged_into=target_id, source_ids=sources, duration_seconds=duration)


async def _abort_merge(
    db: aiosqlite.Connection,
    engine: DataMovementEngine,
    target_id: str,
    root: str,
) -> None:
    """Roll metadata back, drop the staged image and release everything."""
    try:
        await engine.discard_merge_data(target_id, root)
    except Exception as e:
        logger.warning("merge_staging_cleanup_failed", target=target_id, error=str(e))

    try:
        await engine.restore_from_snapshot()
    except Exception as e:
        logger.warning("merge_metadata_restore_failed", error=str(e))

    await delete_repair_snapshot(db)
    await engine.delete_snapshot()
    await release_merge_lock(db)
    await release_exclusive_lock(db)
