# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Repair - Reconcile state left behind by an interrupted operation.

Repair reads the persisted locks and the repair snapshot marker and maps
them onto exactly one of these situations:

    no lock, no marker          -> nothing to do
    no lock, marker             -> stale marker, delete it
    exclusive + merge lock      -> crashed MERGE: drop marker, release both locks
    exclusive (DELETE)          -> crashed DELETE: keep marker, release lock
    exclusive (CREATE)          -> crashed CREATE: fail RUNNING rows, clear
                                   incremental sets, release lock

Any other combination raises RepairInconsistency without touching state.

Repair never deletes history rows and is safe to re-run from scratch if it
is itself interrupted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, NoReturn

import aiosqlite
import structlog

from tbackup.errors import explain_repair_inconsistency
from tbackup.exceptions import RepairInconsistency
from tbackup.models import BackupState, ExclusiveLock, MergeLock, OperationKind
from tbackup.store import (
    clear_incremental_table_set,
    delete_repair_snapshot,
    get_backup_record,
    get_exclusive_lock,
    get_merge_lock,
    release_exclusive_lock,
    release_merge_lock,
    repair_snapshot_exists,
    update_backup_state,
)

logger = structlog.get_logger()

CRASH_MESSAGE = "Operation terminated abnormally; marked failed by repair"


class RepairAction(str, Enum):
    """What repair found and did."""

    NONE = "none"
    STALE_MARKER_REMOVED = "stale_marker_removed"
    MERGE_ABORTED = "merge_aborted"
    DELETE_LOCK_RELEASED = "delete_lock_released"
    CREATE_FAILED = "create_failed"


@dataclass
class RepairResult:
    """Result of a repair run."""

    action: RepairAction
    backup_ids: List[str] = field(default_factory=list)
    failed_backup_ids: List[str] = field(default_factory=list)
    cleared_roots: List[str] = field(default_factory=list)
    marker_deleted: bool = False
    marker_kept: bool = False

    @property
    def changed_state(self) -> bool:
        return self.action != RepairAction.NONE


async def repair_backup_system(db: aiosqlite.Connection) -> RepairResult:
    """
    Bring the backup system back to an idle, consistent state.

    Args:
        db: State store connection

    Returns:
        RepairResult describing the action taken

    Raises:
        RepairInconsistency: If locks and marker match no known crash
    """
    exclusive = await get_exclusive_lock(db)
    merge = await get_merge_lock(db)
    marker = await repair_snapshot_exists(db)

    logger.info(
        "repair_started",
        exclusive_lock=exclusive.kind.value if exclusive else None,
        merge_lock=merge.backup_ids if merge else None,
        repair_snapshot=marker,
    )

    if exclusive is None:
        if merge is not None:
            _inconsistent(exclusive, merge, marker, "merge lock held without exclusive lock")
        result = await _repair_idle(db, marker)

    elif merge is not None:
        if exclusive.kind != OperationKind.MERGE:
            _inconsistent(exclusive, merge, marker, "merge lock held by a non-merge operation")
        if sorted(exclusive.backup_ids) != sorted(merge.backup_ids):
            _inconsistent(exclusive, merge, marker, "merge lock and exclusive lock name different backups")
        result = await _repair_merge(db, exclusive, marker)

    elif exclusive.kind == OperationKind.DELETE:
        result = await _repair_delete(db, exclusive, marker)

    elif exclusive.kind == OperationKind.CREATE:
        result = await _repair_create(db, exclusive)

    else:
        _inconsistent(exclusive, merge, marker, "merge operation without merge lock")

    logger.info(
        "repair_completed",
        action=result.action.value,
        backup_ids=result.backup_ids,
        failed_backup_ids=result.failed_backup_ids,
        cleared_roots=result.cleared_roots,
    )
    return result


def _inconsistent(
    exclusive: ExclusiveLock | None,
    merge: MergeLock | None,
    marker: bool,
    reason: str,
) -> NoReturn:
    observed = {
        "reason": reason,
        "exclusive_lock": (
            {"kind": exclusive.kind.value, "backup_ids": exclusive.backup_ids}
            if exclusive
            else None
        ),
        "merge_lock": {"backup_ids": merge.backup_ids} if merge else None,
        "repair_snapshot": marker,
    }
    logger.error("repair_inconsistent_state", **observed)
    raise RepairInconsistency(explain_repair_inconsistency(observed), details=observed)


async def _repair_idle(db: aiosqlite.Connection, marker: bool) -> RepairResult:
    if not marker:
        return RepairResult(action=RepairAction.NONE)

    await delete_repair_snapshot(db)
    return RepairResult(action=RepairAction.STALE_MARKER_REMOVED, marker_deleted=True)


async def _repair_merge(
    db: aiosqlite.Connection,
    exclusive: ExclusiveLock,
    marker: bool,
) -> RepairResult:
    """The merge never committed: its intermediate state is discarded."""
    deleted = await delete_repair_snapshot(db) if marker else False
    await release_merge_lock(db)
    await release_exclusive_lock(db)

    return RepairResult(
        action=RepairAction.MERGE_ABORTED,
        backup_ids=exclusive.backup_ids,
        marker_deleted=deleted,
    )


async def _repair_delete(
    db: aiosqlite.Connection,
    exclusive: ExclusiveLock,
    marker: bool,
) -> RepairResult:
    """
    A delete may have removed part of its backups.

    The marker stays as evidence; only the lock is released.
    """
    await release_exclusive_lock(db)

    return RepairResult(
        action=RepairAction.DELETE_LOCK_RELEASED,
        backup_ids=exclusive.backup_ids,
        marker_kept=marker,
    )


async def _repair_create(db: aiosqlite.Connection, exclusive: ExclusiveLock) -> RepairResult:
    """Fail the interrupted create and drop the baselines it may have touched."""
    failed: List[str] = []
    roots: List[str] = []

    for backup_id in exclusive.backup_ids:
        info = await get_backup_record(db, backup_id)
        if info is None:
            # Crashed between taking the lock and recording the backup
            continue

        if info.state == BackupState.RUNNING:
            await update_backup_state(
                db,
                backup_id,
                BackupState.FAILED,
                failure_message=CRASH_MESSAGE,
            )
            failed.append(backup_id)

        if info.state != BackupState.COMPLETE and info.root not in roots:
            roots.append(info.root)

    for root in roots:
        await clear_incremental_table_set(db, root)

    await release_exclusive_lock(db)

    return RepairResult(
        action=RepairAction.CREATE_FAILED,
        backup_ids=exclusive.backup_ids,
        failed_backup_ids=failed,
        cleared_roots=roots,
    )
