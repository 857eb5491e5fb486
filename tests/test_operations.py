# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Delete and Merge Tests.

These tests verify:
1. Delete soft-deletes rows, removes data and keeps incremental sets honest
2. Merge folds backups into the newest one behind the merge lock
3. A failed delete leaves its lock and marker for repair
4. A merge that fails before its commit point is rolled back
"""

import json
import os
import time
from datetime import datetime, UTC
from pathlib import Path

import pytest

from tbackup.coordinator import BackupCoordinator
from tbackup.engine.local import MANIFEST_FILENAME, MERGE_STAGING_SUFFIX
from tbackup.exceptions import (
    EngineError,
    LockConflict,
    NotFoundError,
    OperationFailure,
    ValidationError,
)
from tbackup.models import (
    BackupInfo,
    BackupRequest,
    BackupState,
    BackupType,
    OperationKind,
)
from tbackup.operations import delete_backups, merge_backups
from tbackup.repair import RepairAction, repair_backup_system
from tbackup.store import (
    acquire_exclusive_lock,
    append_backup_record,
    get_backup_record,
    get_exclusive_lock,
    get_incremental_table_set,
    get_merge_lock,
    list_backup_history,
    repair_snapshot_exists,
)

from conftest import SimulatedCrash


async def create_full(db, engine, root: str, tables=("orders", "customers")) -> BackupInfo:
    request = BackupRequest(backup_type=BackupType.FULL, root=root, tables=list(tables))
    info = await BackupCoordinator(db, engine).execute(request)
    assert info.state == BackupState.COMPLETE
    return info


async def create_incremental(db, engine, root: str, tables=("orders",)) -> BackupInfo:
    request = BackupRequest(backup_type=BackupType.INCREMENTAL, root=root, tables=list(tables))
    info = await BackupCoordinator(db, engine).execute(request)
    assert info.state == BackupState.COMPLETE
    return info


def touch_future(path: Path, content: bytes) -> None:
    path.write_bytes(content)
    future = time.time() + 60
    os.utime(path, (future, future))


# ============================================================================
# Delete
# ============================================================================

@pytest.mark.asyncio
async def test_delete_removes_data_and_soft_deletes_row(db, engine, test_config, backup_root):
    info = await create_full(db, engine, backup_root)

    result = await delete_backups(db, engine, [info.backup_id])

    assert result.deleted_ids == [info.backup_id]
    assert result.cleared_roots == [backup_root]

    stored = await get_backup_record(db, info.backup_id)
    assert stored is not None
    assert stored.deleted_at is not None
    assert not (Path(backup_root) / info.backup_id).exists()

    # No live baseline left on the root
    assert await get_incremental_table_set(db, backup_root) == set()
    assert await get_exclusive_lock(db) is None
    assert not await repair_snapshot_exists(db)
    assert not test_config.snapshot_path.exists()


@pytest.mark.asyncio
async def test_delete_keeps_baseline_covered_by_other_backup(db, engine, backup_root):
    first = await create_full(db, engine, backup_root)
    await create_full(db, engine, backup_root, tables=["orders"])

    result = await delete_backups(db, engine, [first.backup_id])

    assert result.cleared_roots == []
    # customers was only covered by the deleted backup
    assert await get_incremental_table_set(db, backup_root) == {"orders"}


@pytest.mark.asyncio
async def test_delete_unknown_backup(db, engine):
    with pytest.raises(NotFoundError):
        await delete_backups(db, engine, ["backup_missing"])

    assert await get_exclusive_lock(db) is None


@pytest.mark.asyncio
async def test_delete_twice_is_not_found(db, engine, backup_root):
    info = await create_full(db, engine, backup_root)
    await delete_backups(db, engine, [info.backup_id])

    with pytest.raises(NotFoundError):
        await delete_backups(db, engine, [info.backup_id])


@pytest.mark.asyncio
async def test_delete_running_backup_rejected(db, engine, backup_root):
    await append_backup_record(
        db,
        BackupInfo(
            backup_id="backup_running",
            backup_type=BackupType.FULL,
            state=BackupState.RUNNING,
            tables=["orders"],
            root=backup_root,
            start_ts=datetime.now(UTC),
        ),
    )

    with pytest.raises(ValidationError):
        await delete_backups(db, engine, ["backup_running"])


@pytest.mark.asyncio
async def test_delete_refused_while_lock_held(db, engine, backup_root):
    info = await create_full(db, engine, backup_root)
    await acquire_exclusive_lock(db, ["backup_other"], OperationKind.CREATE)

    with pytest.raises(LockConflict):
        await delete_backups(db, engine, [info.backup_id])

    assert (await get_backup_record(db, info.backup_id)).is_live


@pytest.mark.asyncio
async def test_failed_delete_left_for_repair(db, engine, backup_root, monkeypatch):
    first = await create_full(db, engine, backup_root)
    second = await create_full(db, engine, backup_root)
    original_delete = engine.delete_backup_data

    async def delete_then_break(backup_id, root):
        if backup_id == second.backup_id:
            raise EngineError("backup root unmounted")
        return await original_delete(backup_id, root)

    monkeypatch.setattr(engine, "delete_backup_data", delete_then_break)

    with pytest.raises(OperationFailure):
        await delete_backups(db, engine, [first.backup_id, second.backup_id])

    lock = await get_exclusive_lock(db)
    assert lock.kind == OperationKind.DELETE
    assert await repair_snapshot_exists(db)

    # The first backup went, the second is still live
    assert (await get_backup_record(db, first.backup_id)).deleted_at is not None
    assert (await get_backup_record(db, second.backup_id)).is_live

    result = await repair_backup_system(db)
    assert result.action == RepairAction.DELETE_LOCK_RELEASED
    assert await get_exclusive_lock(db) is None
    assert await repair_snapshot_exists(db)


# ============================================================================
# Merge
# ============================================================================

@pytest.mark.asyncio
async def test_merge_folds_into_newest(db, engine, data_dir, backup_root):
    past = time.time() - 3600
    for path in data_dir.rglob("*"):
        if path.is_file():
            os.utime(path, (past, past))

    full = await create_full(db, engine, backup_root)
    touch_future(data_dir / "orders" / "part-0001.dat", b"order-3,7.25\norder-4,1.00\n")
    incremental = await create_incremental(db, engine, backup_root)

    # Order of the ids on the command line does not matter
    result = await merge_backups(db, engine, [incremental.backup_id, full.backup_id])

    assert result.merged_into == incremental.backup_id
    assert result.source_ids == [full.backup_id]

    source = await get_backup_record(db, full.backup_id)
    assert source.merged_into == incremental.backup_id
    assert not (Path(backup_root) / full.backup_id).exists()

    manifest = json.loads(
        (Path(backup_root) / incremental.backup_id / MANIFEST_FILENAME).read_text()
    )
    assert manifest["merged_from"] == [full.backup_id, incremental.backup_id]
    assert set(manifest["tables"]) == {"orders", "customers"}
    orders = manifest["tables"]["orders"]
    assert orders["part-0000.dat"]["source_backup"] == full.backup_id
    assert orders["part-0001.dat"]["source_backup"] == incremental.backup_id
    for entry in orders.values():
        assert (Path(backup_root) / incremental.backup_id / entry["stored_as"]).exists()

    assert await get_exclusive_lock(db) is None
    assert await get_merge_lock(db) is None
    assert not await repair_snapshot_exists(db)

    live = await list_backup_history(db, include_deleted=False)
    assert [b.backup_id for b in live] == [incremental.backup_id]


@pytest.mark.asyncio
async def test_merge_needs_two_backups(db, engine, backup_root):
    info = await create_full(db, engine, backup_root)

    with pytest.raises(ValidationError):
        await merge_backups(db, engine, [info.backup_id, info.backup_id])


@pytest.mark.asyncio
async def test_merge_across_roots_rejected(db, engine, temp_dir):
    a = await create_full(db, engine, str(temp_dir / "root_a"))
    b = await create_full(db, engine, str(temp_dir / "root_b"))

    with pytest.raises(ValidationError):
        await merge_backups(db, engine, [a.backup_id, b.backup_id])

    assert await get_exclusive_lock(db) is None


@pytest.mark.asyncio
async def test_merge_failed_backup_rejected(db, engine, backup_root):
    from tbackup.coordinator import fail_at_stage
    from tbackup.models import BackupStage

    good = await create_full(db, engine, backup_root)
    failed = await BackupCoordinator(
        db, engine, failure_hook=fail_at_stage(BackupStage.COPY)
    ).execute(BackupRequest(backup_type=BackupType.FULL, root=backup_root, tables=["orders"]))

    with pytest.raises(ValidationError):
        await merge_backups(db, engine, [good.backup_id, failed.backup_id])


@pytest.mark.asyncio
async def test_merge_unknown_backup(db, engine, backup_root):
    info = await create_full(db, engine, backup_root)

    with pytest.raises(NotFoundError):
        await merge_backups(db, engine, [info.backup_id, "backup_missing"])


@pytest.mark.asyncio
async def test_merge_failure_before_commit_rolls_back(
    db, engine, test_config, backup_root, monkeypatch
):
    first = await create_full(db, engine, backup_root)
    second = await create_full(db, engine, backup_root)

    async def broken_merge(backup_ids, root):
        raise EngineError("out of space")

    monkeypatch.setattr(engine, "merge_backup_data", broken_merge)

    with pytest.raises(OperationFailure):
        await merge_backups(db, engine, [first.backup_id, second.backup_id])

    for info in (first, second):
        stored = await get_backup_record(db, info.backup_id)
        assert stored.is_live
        assert (Path(backup_root) / info.backup_id).exists()

    assert await get_exclusive_lock(db) is None
    assert await get_merge_lock(db) is None
    assert not await repair_snapshot_exists(db)
    assert not test_config.snapshot_path.exists()


@pytest.mark.asyncio
async def test_merge_failure_after_commit_left_for_repair(db, engine, backup_root, monkeypatch):
    first = await create_full(db, engine, backup_root)
    second = await create_full(db, engine, backup_root)

    async def broken_delete(backup_id, root):
        raise EngineError("permission denied")

    monkeypatch.setattr(engine, "delete_backup_data", broken_delete)

    with pytest.raises(OperationFailure):
        await merge_backups(db, engine, [first.backup_id, second.backup_id])

    # The merge is recorded; locks and marker wait for repair
    assert (await get_backup_record(db, first.backup_id)).merged_into == second.backup_id
    assert await get_merge_lock(db) is not None
    assert await repair_snapshot_exists(db)

    result = await repair_backup_system(db)
    assert result.action == RepairAction.MERGE_ABORTED
    assert await get_exclusive_lock(db) is None
    assert await get_merge_lock(db) is None
    assert not await repair_snapshot_exists(db)


@pytest.mark.asyncio
async def test_merge_stops_at_newest_full(db, engine, data_dir, backup_root):
    older = await create_full(db, engine, backup_root, tables=["orders"])
    (data_dir / "orders" / "part-0001.dat").unlink()
    newer = await create_full(db, engine, backup_root, tables=["orders"])

    await merge_backups(db, engine, [older.backup_id, newer.backup_id])

    manifest = json.loads(
        (Path(backup_root) / newer.backup_id / MANIFEST_FILENAME).read_text()
    )
    # The file removed before the newer full does not come back
    assert sorted(manifest["tables"]["orders"]) == ["part-0000.dat"]
    assert manifest["folded"] == [newer.backup_id]
    assert manifest["since"] is None
    assert not (Path(backup_root) / newer.backup_id / "orders" / "part-0001.dat.zst").exists()


@pytest.mark.asyncio
async def test_merge_crash_before_commit_leaves_target_data(
    db, engine, backup_root, monkeypatch
):
    first = await create_full(db, engine, backup_root)
    second = await create_full(db, engine, backup_root)
    target_manifest = Path(backup_root) / second.backup_id / MANIFEST_FILENAME
    before = target_manifest.read_bytes()

    async def crash(*args):
        raise SimulatedCrash("mark_backups_merged")

    monkeypatch.setattr("tbackup.operations.mark_backups_merged", crash)

    with pytest.raises(SimulatedCrash):
        await merge_backups(db, engine, [first.backup_id, second.backup_id])

    # The merged image is only staged; the target still holds its own data
    assert target_manifest.read_bytes() == before
    assert (Path(backup_root) / f"{second.backup_id}{MERGE_STAGING_SUFFIX}").is_dir()
    for info in (first, second):
        assert (await get_backup_record(db, info.backup_id)).is_live

    result = await repair_backup_system(db)
    assert result.action == RepairAction.MERGE_ABORTED
    assert await get_merge_lock(db) is None


@pytest.mark.asyncio
async def test_merge_failure_before_commit_discards_staging(db, engine, backup_root, monkeypatch):
    first = await create_full(db, engine, backup_root)
    second = await create_full(db, engine, backup_root)

    async def broken_mark(*args):
        raise OSError("database is locked")

    monkeypatch.setattr("tbackup.operations.mark_backups_merged", broken_mark)

    with pytest.raises(OperationFailure):
        await merge_backups(db, engine, [first.backup_id, second.backup_id])

    assert not (Path(backup_root) / f"{second.backup_id}{MERGE_STAGING_SUFFIX}").exists()
    assert (Path(backup_root) / first.backup_id).exists()
    assert await get_exclusive_lock(db) is None
