# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup SQLite Store - Persistent backup history, locks and markers.

This module is the only place that reads or writes persisted backup state:

1. Backup history - append-only audit log of every backup attempt
2. Exclusive lock - singleton row claiming cluster-wide exclusivity
3. Merge lock - singleton row naming the backups being merged
4. Incremental table sets - per-root tables eligible for incremental backups
5. Repair snapshot marker - singleton row set while a risky mutation runs

Every write is a single statement followed by a commit. The store performs
no cross-row transactions and no retries: cross-row consistency comes from
the call ordering in the coordinator, the delete/merge operations and the
repair procedure.

Locks are acquired with a conditional insert against a fixed sentinel key,
so two processes racing for the same lock cannot both win.
"""

import json
import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterable, List, Set

import aiosqlite
import structlog

from tbackup.errors import explain_lock_held, explain_merge_lock_held
from tbackup.exceptions import LockConflict, NotFoundError, StoreError
from tbackup.models import (
    BackupInfo,
    BackupStage,
    BackupState,
    BackupType,
    ExclusiveLock,
    MergeLock,
    OperationKind,
)

logger = structlog.get_logger()

_EXCLUSIVE_SENTINEL = "exclusive"
_MERGE_SENTINEL = "merge"
_REPAIR_SNAPSHOT_SENTINEL = "repair_snapshot"

_HISTORY_COLUMNS = """
    backup_id, backup_type, state, tables, root, start_ts, end_ts,
    baseline_id, failed_stage, failure_message, deleted_at, merged_into
"""


async def init_store_db(db_path: Path) -> None:
    """
    Initialize the state store schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(db_path) as db:
            # Backup history - one row per backup attempt, never deleted
            await db.execute("""
                CREATE TABLE IF NOT EXISTS backup_history (
                    backup_id TEXT PRIMARY KEY,
                    backup_type TEXT NOT NULL,
                    state TEXT NOT NULL,
                    tables TEXT NOT NULL,
                    root TEXT NOT NULL,
                    start_ts TEXT NOT NULL,
                    end_ts TEXT,
                    baseline_id TEXT,
                    failed_stage TEXT,
                    failure_message TEXT,
                    deleted_at TEXT,
                    merged_into TEXT
                )
            """)

            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS exclusive_lock (
                    sentinel TEXT PRIMARY KEY CHECK (sentinel = '{_EXCLUSIVE_SENTINEL}'),
                    backup_ids TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    acquired_at TEXT NOT NULL
                )
            """)

            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS merge_lock (
                    sentinel TEXT PRIMARY KEY CHECK (sentinel = '{_MERGE_SENTINEL}'),
                    backup_ids TEXT NOT NULL,
                    acquired_at TEXT NOT NULL
                )
            """)

            await db.execute(f"""
                CREATE TABLE IF NOT EXISTS repair_snapshot (
                    sentinel TEXT PRIMARY KEY CHECK (sentinel = '{_REPAIR_SNAPSHOT_SENTINEL}'),
                    created_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS incremental_table_sets (
                    root TEXT PRIMARY KEY,
                    tables TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Indexes for efficient queries
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_backup_history_root
                ON backup_history(root)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_backup_history_start_ts
                ON backup_history(start_ts)
            """)

            await db.commit()

        logger.info("store_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise StoreError(
            f"Failed to initialize state store: {e}",
            details={"db_path": str(db_path)},
        ) from e


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_info(row) -> BackupInfo:
    return BackupInfo(
        backup_id=row[0],
        backup_type=BackupType(row[1]),
        state=BackupState(row[2]),
        tables=json.loads(row[3]),
        root=row[4],
        start_ts=datetime.fromisoformat(row[5]),
        end_ts=_parse_ts(row[6]),
        baseline_id=row[7],
        failed_stage=BackupStage(row[8]) if row[8] else None,
        failure_message=row[9],
        deleted_at=_parse_ts(row[10]),
        merged_into=row[11],
    )


# ============================================================================
# Backup history
# ============================================================================


async def append_backup_record(db: aiosqlite.Connection, info: BackupInfo) -> None:
    """
    Append a backup row to the history.

    Args:
        db: SQLite database connection
        info: Backup to record (normally in RUNNING state)

    Raises:
        StoreError: If a row with the same backup id already exists
    """
    try:
        await db.execute(
            f"""
            INSERT INTO backup_history ({_HISTORY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                info.backup_id,
                info.backup_type.value,
                info.state.value,
                json.dumps(info.tables),
                info.root,
                info.start_ts.isoformat(),
                info.end_ts.isoformat() if info.end_ts else None,
                info.baseline_id,
                info.failed_stage.value if info.failed_stage else None,
                info.failure_message,
                info.deleted_at.isoformat() if info.deleted_at else None,
                info.merged_into,
            ),
        )
        await db.commit()
    except sqlite3.IntegrityError as e:
        raise StoreError(
            f"Backup record already exists: {info.backup_id}",
            details={"backup_id": info.backup_id},
        ) from e

    logger.info(
        "backup_record_appended",
        backup_id=info.backup_id,
        state=info.state.value,
        root=info.root,
    )


async def get_backup_record(
    db: aiosqlite.Connection,
    backup_id: str,
) -> BackupInfo | None:
    """
    Get a single backup row.

    Returns:
        The backup or None if the id is unknown
    """
    async with db.execute(
        f"SELECT {_HISTORY_COLUMNS} FROM backup_history WHERE backup_id = ?",
        (backup_id,),
    ) as cursor:
        row = await cursor.fetchone()

    return _row_to_info(row) if row else None


async def list_backup_history(
    db: aiosqlite.Connection,
    root: str | None = None,
    include_deleted: bool = True,
) -> List[BackupInfo]:
    """
    List backups in chronological order (oldest first).

    Args:
        db: SQLite database connection
        root: Optional filter by backup root
        include_deleted: Whether to include deleted and merged-away backups

    Returns:
        List of backups
    """
    query = f"SELECT {_HISTORY_COLUMNS} FROM backup_history"
    conditions: List[str] = []
    params: List = []

    if root is not None:
        conditions.append("root = ?")
        params.append(root)

    if not include_deleted:
        conditions.append("deleted_at IS NULL AND merged_into IS NULL")

    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    query += " ORDER BY start_ts, backup_id"

    records: List[BackupInfo] = []

    async with db.execute(query, params) as cursor:
        async for row in cursor:
            records.append(_row_to_info(row))

    return records


async def update_backup_state(
    db: aiosqlite.Connection,
    backup_id: str,
    new_state: BackupState,
    failed_stage: BackupStage | None = None,
    failure_message: str | None = None,
) -> bool:
    """
    Move a RUNNING backup to a terminal state.

    Terminal rows are never rewritten, so finalizing twice is harmless.

    Args:
        db: SQLite database connection
        backup_id: Backup to update
        new_state: COMPLETE or FAILED
        failed_stage: Stage that failed (FAILED only)
        failure_message: Error description (FAILED only)

    Returns:
        True if the row was updated, False if it was already terminal

    Raises:
        NotFoundError: If the backup id is unknown
    """
    if new_state == BackupState.RUNNING:
        raise StoreError(
            "Backups cannot transition back to running",
            details={"backup_id": backup_id},
        )

    cursor = await db.execute(
        """
        UPDATE backup_history
        SET state = ?, end_ts = ?, failed_stage = ?, failure_message = ?
        WHERE backup_id = ? AND state = ?
        """,
        (
            new_state.value,
            _now(),
            failed_stage.value if failed_stage else None,
            failure_message,
            backup_id,
            BackupState.RUNNING.value,
        ),
    )
    await db.commit()

    if cursor.rowcount > 0:
        logger.info("backup_state_updated", backup_id=backup_id, state=new_state.value)
        return True

    if await get_backup_record(db, backup_id) is None:
        raise NotFoundError(
            f"Unknown backup id: {backup_id}",
            details={"backup_id": backup_id},
        )

    return False


async def mark_backups_deleted(
    db: aiosqlite.Connection,
    backup_ids: Iterable[str],
) -> int:
    """
    Soft-delete backups. The rows stay in the history for audit.

    Returns:
        Number of rows stamped
    """
    ids = list(backup_ids)
    if not ids:
        return 0

    placeholders = ", ".join("?" for _ in ids)
    cursor = await db.execute(
        f"""
        UPDATE backup_history
        SET deleted_at = ?
        WHERE backup_id IN ({placeholders}) AND deleted_at IS NULL
        """,
        (_now(), *ids),
    )
    await db.commit()

    logger.info("backups_marked_deleted", backup_ids=ids, count=cursor.rowcount)
    return cursor.rowcount


async def mark_backups_merged(
    db: aiosqlite.Connection,
    backup_ids: Iterable[str],
    merged_into: str,
) -> int:
    """
    Record that backups were folded into merged_into.

    This is one statement, so either every source row is stamped or none is.

    Returns:
        Number of rows stamped
    """
    ids = list(backup_ids)
    if not ids:
        return 0

    placeholders = ", ".join("?" for _ in ids)
    cursor = await db.execute(
        f"""
        UPDATE backup_history
        SET merged_into = ?
        WHERE backup_id IN ({placeholders}) AND merged_into IS NULL
        """,
        (merged_into, *ids),
    )
    await db.commit()

    logger.info(
        "backups_marked_merged",
        backup_ids=ids,
        merged_into=merged_into,
        count=cursor.rowcount,
    )
    return cursor.rowcount


# ============================================================================
# Exclusive operation lock
# ============================================================================


async def acquire_exclusive_lock(
    db: aiosqlite.Connection,
    backup_ids: List[str],
    kind: OperationKind,
) -> ExclusiveLock:
    """
    Claim cluster-wide exclusivity for an operation.

    Args:
        db: SQLite database connection
        backup_ids: Backups the operation works on
        kind: CREATE, DELETE or MERGE

    Returns:
        The acquired lock

    Raises:
        LockConflict: If the lock is already held
    """
    acquired_at = datetime.now(UTC)

    cursor = await db.execute(
        """
        INSERT INTO exclusive_lock (sentinel, backup_ids, kind, acquired_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(sentinel) DO NOTHING
        """,
        (_EXCLUSIVE_SENTINEL, json.dumps(backup_ids), kind.value, acquired_at.isoformat()),
    )
    await db.commit()

    if cursor.rowcount != 1:
        holder = await get_exclusive_lock(db)
        held_kind = holder.kind.value if holder else "unknown"
        held_ids = holder.backup_ids if holder else []
        raise LockConflict(
            explain_lock_held(held_kind, held_ids),
            details={"kind": held_kind, "backup_ids": held_ids},
        )

    logger.info("exclusive_lock_acquired", kind=kind.value, backup_ids=backup_ids)
    return ExclusiveLock(backup_ids=list(backup_ids), kind=kind, acquired_at=acquired_at)


async def release_exclusive_lock(db: aiosqlite.Connection) -> bool:
    """
    Release the exclusive lock.

    Returns:
        True if a lock was removed, False if none was held
    """
    cursor = await db.execute(
        "DELETE FROM exclusive_lock WHERE sentinel = ?",
        (_EXCLUSIVE_SENTINEL,),
    )
    await db.commit()

    released = cursor.rowcount > 0
    if released:
        logger.info("exclusive_lock_released")
    return released


async def get_exclusive_lock(db: aiosqlite.Connection) -> ExclusiveLock | None:
    """Get the exclusive lock, or None when no exclusive operation is in flight."""
    async with db.execute(
        "SELECT backup_ids, kind, acquired_at FROM exclusive_lock WHERE sentinel = ?",
        (_EXCLUSIVE_SENTINEL,),
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return None

    return ExclusiveLock(
        backup_ids=json.loads(row[0]),
        kind=OperationKind(row[1]),
        acquired_at=datetime.fromisoformat(row[2]),
    )


async def has_ongoing_exclusive_operation(db: aiosqlite.Connection) -> bool:
    return await get_exclusive_lock(db) is not None


# ============================================================================
# Merge operation lock
# ============================================================================


async def acquire_merge_lock(
    db: aiosqlite.Connection,
    backup_ids: List[str],
) -> MergeLock:
    """
    Record that a merge of backup_ids is starting.

    Callers hold the exclusive lock (kind MERGE) for the same ids first.

    Raises:
        LockConflict: If a merge lock is already held
    """
    acquired_at = datetime.now(UTC)

    cursor = await db.execute(
        """
        INSERT INTO merge_lock (sentinel, backup_ids, acquired_at)
        VALUES (?, ?, ?)
        ON CONFLICT(sentinel) DO NOTHING
        """,
        (_MERGE_SENTINEL, json.dumps(backup_ids), acquired_at.isoformat()),
    )
    await db.commit()

    if cursor.rowcount != 1:
        holder = await get_merge_lock(db)
        held_ids = holder.backup_ids if holder else []
        raise LockConflict(
            explain_merge_lock_held(held_ids),
            details={"backup_ids": held_ids},
        )

    logger.info("merge_lock_acquired", backup_ids=backup_ids)
    return MergeLock(backup_ids=list(backup_ids), acquired_at=acquired_at)


async def release_merge_lock(db: aiosqlite.Connection) -> bool:
    """
    Release the merge lock.

    Returns:
        True if a lock was removed, False if none was held
    """
    cursor = await db.execute(
        "DELETE FROM merge_lock WHERE sentinel = ?",
        (_MERGE_SENTINEL,),
    )
    await db.commit()

    released = cursor.rowcount > 0
    if released:
        logger.info("merge_lock_released")
    return released


async def get_merge_lock(db: aiosqlite.Connection) -> MergeLock | None:
    async with db.execute(
        "SELECT backup_ids, acquired_at FROM merge_lock WHERE sentinel = ?",
        (_MERGE_SENTINEL,),
    ) as cursor:
        row = await cursor.fetchone()

    if row is None:
        return None

    return MergeLock(
        backup_ids=json.loads(row[0]),
        acquired_at=datetime.fromisoformat(row[1]),
    )


async def has_ongoing_merge_operation(db: aiosqlite.Connection) -> bool:
    return await get_merge_lock(db) is not None


# ============================================================================
# Incremental backup table sets
# ============================================================================


async def set_incremental_table_set(
    db: aiosqlite.Connection,
    root: str,
    tables: Iterable[str],
) -> None:
    """
    Replace the set of tables eligible for incremental backups on a root.

    An empty set removes the row.
    """
    table_list = sorted(set(tables))
    if not table_list:
        await clear_incremental_table_set(db, root)
        return

    await db.execute(
        """
        INSERT INTO incremental_table_sets (root, tables, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(root) DO UPDATE SET
            tables = excluded.tables,
            updated_at = excluded.updated_at
        """,
        (root, json.dumps(table_list), _now()),
    )
    await db.commit()

    logger.debug("incremental_table_set_updated", root=root, tables=table_list)


async def clear_incremental_table_set(db: aiosqlite.Connection, root: str) -> bool:
    """
    Remove every table from a root's incremental set.

    Returns:
        True if a non-empty set was cleared
    """
    cursor = await db.execute(
        "DELETE FROM incremental_table_sets WHERE root = ?",
        (root,),
    )
    await db.commit()

    cleared = cursor.rowcount > 0
    if cleared:
        logger.info("incremental_table_set_cleared", root=root)
    return cleared


async def get_incremental_table_set(db: aiosqlite.Connection, root: str) -> Set[str]:
    async with db.execute(
        "SELECT tables FROM incremental_table_sets WHERE root = ?",
        (root,),
    ) as cursor:
        row = await cursor.fetchone()

    return set(json.loads(row[0])) if row else set()


# ============================================================================
# Repair snapshot marker
# ============================================================================


async def create_repair_snapshot(db: aiosqlite.Connection) -> bool:
    """
    Set the repair snapshot marker.

    Returns:
        True if the marker was created, False if it already existed
    """
    cursor = await db.execute(
        """
        INSERT INTO repair_snapshot (sentinel, created_at)
        VALUES (?, ?)
        ON CONFLICT(sentinel) DO NOTHING
        """,
        (_REPAIR_SNAPSHOT_SENTINEL, _now()),
    )
    await db.commit()

    created = cursor.rowcount == 1
    if created:
        logger.info("repair_snapshot_marker_created")
    return created


async def delete_repair_snapshot(db: aiosqlite.Connection) -> bool:
    """
    Remove the repair snapshot marker.

    Returns:
        True if a marker was removed
    """
    cursor = await db.execute(
        "DELETE FROM repair_snapshot WHERE sentinel = ?",
        (_REPAIR_SNAPSHOT_SENTINEL,),
    )
    await db.commit()

    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("repair_snapshot_marker_deleted")
    return deleted


async def repair_snapshot_exists(db: aiosqlite.Connection) -> bool:
    async with db.execute(
        "SELECT 1 FROM repair_snapshot WHERE sentinel = ?",
        (_REPAIR_SNAPSHOT_SENTINEL,),
    ) as cursor:
        return await cursor.fetchone() is not None


# ============================================================================
# Statistics
# ============================================================================


async def get_store_stats(db: aiosqlite.Connection) -> dict:
    """
    Get store statistics.

    Returns:
        Dict with history counts and the current lock/marker state
    """
    stats: dict = {}

    # Total backups
    async with db.execute("SELECT COUNT(*) FROM backup_history") as cursor:
        row = await cursor.fetchone()
        stats["total_backups"] = row[0] if row else 0

    # Backups by state
    async with db.execute(
        "SELECT state, COUNT(*) FROM backup_history GROUP BY state"
    ) as cursor:
        stats["backups_by_state"] = {row[0]: row[1] async for row in cursor}

    # Live backups
    async with db.execute(
        """
        SELECT COUNT(*) FROM backup_history
        WHERE deleted_at IS NULL AND merged_into IS NULL
        """
    ) as cursor:
        row = await cursor.fetchone()
        stats["live_backups"] = row[0] if row else 0

    # Incremental table sets
    async with db.execute(
        "SELECT root, tables FROM incremental_table_sets ORDER BY root"
    ) as cursor:
        stats["incremental_table_sets"] = {
            row[0]: json.loads(row[1]) async for row in cursor
        }

    exclusive = await get_exclusive_lock(db)
    merge = await get_merge_lock(db)

    stats["exclusive_lock"] = (
        {"kind": exclusive.kind.value, "backup_ids": exclusive.backup_ids}
        if exclusive
        else None
    )
    stats["merge_lock"] = {"backup_ids": merge.backup_ids} if merge else None
    stats["repair_snapshot"] = await repair_snapshot_exists(db)

    return stats
