# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Coordinator Tests.

These tests verify the guarantees of a staged create:
1. A successful create is COMPLETE, records its baseline and frees the lock
2. An invalid request writes nothing
3. A failure at any stage leaves a FAILED row, an empty incremental set and
   no lock
4. A crash at any stage leaves state that repair turns into (3)
"""

import os
import time
from pathlib import Path

import pytest

from tbackup.coordinator import BackupCoordinator, fail_at_stage
from tbackup.engine.local import MANIFEST_FILENAME
from tbackup.exceptions import EngineError, LockConflict, ValidationError
from tbackup.models import (
    FAULT_INJECTABLE_STAGES,
    BackupRequest,
    BackupStage,
    BackupState,
    BackupType,
    OperationKind,
)
from tbackup.repair import RepairAction, repair_backup_system
from tbackup.store import (
    acquire_exclusive_lock,
    get_exclusive_lock,
    get_incremental_table_set,
    list_backup_history,
)

from conftest import SimulatedCrash, crash_at_stage


def full_request(root: str, tables=("orders", "customers")) -> BackupRequest:
    return BackupRequest(backup_type=BackupType.FULL, root=root, tables=list(tables))


def incremental_request(root: str, tables=("orders",)) -> BackupRequest:
    return BackupRequest(backup_type=BackupType.INCREMENTAL, root=root, tables=list(tables))


def age_files(data_dir: Path, seconds: int = 3600) -> None:
    """Push every table file's mtime into the past."""
    past = time.time() - seconds
    for path in data_dir.rglob("*"):
        if path.is_file():
            os.utime(path, (past, past))


# ============================================================================
# Successful creates
# ============================================================================

@pytest.mark.asyncio
async def test_full_backup_completes(db, engine, backup_root):
    info = await BackupCoordinator(db, engine).execute(full_request(backup_root))

    assert info.state == BackupState.COMPLETE
    assert info.backup_id.startswith("backup_")
    assert info.tables == ["orders", "customers"]
    assert info.end_ts is not None
    assert info.baseline_id is None

    assert await get_exclusive_lock(db) is None
    assert await get_incremental_table_set(db, backup_root) == {"orders", "customers"}
    assert (Path(backup_root) / info.backup_id / MANIFEST_FILENAME).exists()


@pytest.mark.asyncio
async def test_duplicate_and_blank_tables_are_normalized(db, engine, backup_root):
    request = full_request(backup_root, tables=["orders", " ", "orders ", "customers"])

    info = await BackupCoordinator(db, engine).execute(request)

    assert info.tables == ["orders", "customers"]


@pytest.mark.asyncio
async def test_incremental_chains_onto_latest_full(db, engine, data_dir, backup_root):
    age_files(data_dir)
    coordinator = BackupCoordinator(db, engine)
    full = await coordinator.execute(full_request(backup_root))

    # Only this file changes after the full backup
    changed = data_dir / "orders" / "part-0001.dat"
    changed.write_bytes(b"order-3,7.25\norder-4,99.99\n")
    future = time.time() + 60
    os.utime(changed, (future, future))

    incremental = await coordinator.execute(incremental_request(backup_root))

    assert incremental.state == BackupState.COMPLETE
    assert incremental.baseline_id == full.backup_id

    backup_dir = Path(backup_root) / incremental.backup_id
    stored = [p.relative_to(backup_dir).as_posix() for p in backup_dir.rglob("*.zst")]
    assert stored == ["orders/part-0001.dat.zst"]


@pytest.mark.asyncio
async def test_incremental_baseline_is_chosen_per_table(db, engine, data_dir, backup_root):
    age_files(data_dir)
    coordinator = BackupCoordinator(db, engine)
    full = await coordinator.execute(full_request(backup_root))

    # customers changes after the full backup but before any backup of it
    changed = data_dir / "customers" / "part-0000.dat"
    changed.write_bytes(b"cust-1,ada\ncust-2,grace\n")
    future = time.time() + 60
    os.utime(changed, (future, future))

    orders_only = await coordinator.execute(incremental_request(backup_root, tables=["orders"]))
    assert orders_only.baseline_id == full.backup_id

    customers = await coordinator.execute(incremental_request(backup_root, tables=["customers"]))

    # The newer orders-only backup never covered customers
    assert customers.baseline_id == full.backup_id

    backup_dir = Path(backup_root) / customers.backup_id
    stored = [p.relative_to(backup_dir).as_posix() for p in backup_dir.rglob("*.zst")]
    assert stored == ["customers/part-0000.dat.zst"]


@pytest.mark.asyncio
async def test_failure_hook_runs_before_every_interruptible_stage(db, engine, backup_root):
    seen = []

    await BackupCoordinator(db, engine, failure_hook=seen.append).execute(
        full_request(backup_root)
    )

    assert seen == list(FAULT_INJECTABLE_STAGES)
    assert BackupStage.FINALIZE not in seen


# ============================================================================
# Validation writes nothing
# ============================================================================

@pytest.mark.asyncio
async def test_empty_table_list_rejected(db, engine, backup_root):
    with pytest.raises(ValidationError):
        await BackupCoordinator(db, engine).execute(full_request(backup_root, tables=[" "]))

    assert await list_backup_history(db) == []


@pytest.mark.asyncio
async def test_unknown_table_rejected(db, engine, backup_root):
    with pytest.raises(ValidationError) as exc_info:
        await BackupCoordinator(db, engine).execute(
            full_request(backup_root, tables=["orders", "invoices"])
        )

    assert exc_info.value.details["tables"] == ["invoices"]
    assert await list_backup_history(db) == []
    assert await get_exclusive_lock(db) is None


@pytest.mark.asyncio
async def test_unreachable_root_rejected(db, engine, temp_dir):
    not_a_dir = temp_dir / "file"
    not_a_dir.write_text("x")

    with pytest.raises(ValidationError):
        await BackupCoordinator(db, engine).execute(full_request(str(not_a_dir)))

    assert await list_backup_history(db) == []


@pytest.mark.asyncio
async def test_incremental_without_full_baseline_rejected(db, engine, backup_root):
    with pytest.raises(ValidationError):
        await BackupCoordinator(db, engine).execute(incremental_request(backup_root))

    assert await list_backup_history(db) == []
    assert await get_exclusive_lock(db) is None


@pytest.mark.asyncio
async def test_incremental_for_table_outside_baseline_rejected(db, engine, backup_root):
    coordinator = BackupCoordinator(db, engine)
    await coordinator.execute(full_request(backup_root, tables=["orders"]))

    with pytest.raises(ValidationError) as exc_info:
        await coordinator.execute(incremental_request(backup_root, tables=["orders", "audit"]))

    assert exc_info.value.details["tables"] == ["audit"]


@pytest.mark.asyncio
async def test_create_refused_while_lock_held(db, engine, backup_root):
    await acquire_exclusive_lock(db, ["backup_other"], OperationKind.DELETE)

    with pytest.raises(LockConflict):
        await BackupCoordinator(db, engine).execute(full_request(backup_root))

    assert await list_backup_history(db) == []
    held = await get_exclusive_lock(db)
    assert held.backup_ids == ["backup_other"]


# ============================================================================
# Handled failures
# ============================================================================

@pytest.mark.parametrize("stage", FAULT_INJECTABLE_STAGES, ids=lambda s: s.value)
@pytest.mark.asyncio
async def test_failure_at_stage_fails_cleanly(db, engine, backup_root, stage):
    """
    A failure at any stage leaves exactly one new FAILED row, an empty
    incremental set for the root and no lock.
    """
    await BackupCoordinator(db, engine).execute(full_request(backup_root))
    before = await list_backup_history(db)

    info = await BackupCoordinator(db, engine, failure_hook=fail_at_stage(stage)).execute(
        full_request(backup_root)
    )

    assert info.state == BackupState.FAILED
    assert info.failed_stage == stage
    assert stage.value in info.failure_message

    after = await list_backup_history(db)
    assert len(after) == len(before) + 1
    assert after[-1].backup_id == info.backup_id
    assert after[-1].state == BackupState.FAILED

    assert await get_incremental_table_set(db, backup_root) == set()
    assert await get_exclusive_lock(db) is None
    assert not (Path(backup_root) / info.backup_id).exists()

    # Nothing left for repair to do
    result = await repair_backup_system(db)
    assert result.action == RepairAction.NONE


@pytest.mark.asyncio
async def test_failed_create_blocks_incremental_until_new_full(db, engine, backup_root):
    coordinator = BackupCoordinator(db, engine)
    await coordinator.execute(full_request(backup_root))

    failing = BackupCoordinator(db, engine, failure_hook=fail_at_stage(BackupStage.COPY))
    await failing.execute(full_request(backup_root))

    with pytest.raises(ValidationError):
        await coordinator.execute(incremental_request(backup_root))

    await coordinator.execute(full_request(backup_root))
    info = await coordinator.execute(incremental_request(backup_root))
    assert info.state == BackupState.COMPLETE


@pytest.mark.asyncio
async def test_engine_error_fails_backup(db, engine, backup_root, monkeypatch):
    async def broken_copy(*args, **kwargs):
        raise EngineError("root went read-only")

    monkeypatch.setattr(engine, "copy_tables", broken_copy)

    info = await BackupCoordinator(db, engine).execute(full_request(backup_root))

    assert info.state == BackupState.FAILED
    assert info.failed_stage == BackupStage.COPY
    assert "root went read-only" in info.failure_message
    assert await get_exclusive_lock(db) is None


@pytest.mark.asyncio
async def test_table_changed_after_snapshot_fails_copy(db, engine, data_dir, backup_root):
    def mutate_before_copy(stage: BackupStage) -> None:
        if stage == BackupStage.COPY:
            (data_dir / "orders" / "part-0000.dat").write_bytes(b"rewritten\n")

    info = await BackupCoordinator(db, engine, failure_hook=mutate_before_copy).execute(
        full_request(backup_root)
    )

    assert info.state == BackupState.FAILED
    assert info.failed_stage == BackupStage.COPY
    assert "changed after snapshot" in info.failure_message


def test_finalize_cannot_be_interrupted():
    with pytest.raises(ValueError):
        fail_at_stage(BackupStage.FINALIZE)


# ============================================================================
# Crashes (process death mid-create)
# ============================================================================

@pytest.mark.parametrize("stage", FAULT_INJECTABLE_STAGES, ids=lambda s: s.value)
@pytest.mark.asyncio
async def test_crash_at_stage_then_repair(db, engine, backup_root, stage):
    """
    A crash leaves the lock and a RUNNING row; repair fails the row, clears
    the root's incremental set and frees the lock.
    """
    await BackupCoordinator(db, engine).execute(full_request(backup_root))
    before = await list_backup_history(db)

    with pytest.raises(SimulatedCrash):
        await BackupCoordinator(db, engine, failure_hook=crash_at_stage(stage)).execute(
            full_request(backup_root)
        )

    lock = await get_exclusive_lock(db)
    assert lock.kind == OperationKind.CREATE
    dangling = (await list_backup_history(db))[-1]
    assert dangling.state == BackupState.RUNNING
    assert lock.backup_ids == [dangling.backup_id]

    result = await repair_backup_system(db)

    assert result.action == RepairAction.CREATE_FAILED
    assert result.failed_backup_ids == [dangling.backup_id]

    after = await list_backup_history(db)
    assert len(after) == len(before) + 1
    assert after[-1].state == BackupState.FAILED
    assert await get_incremental_table_set(db, backup_root) == set()
    assert await get_exclusive_lock(db) is None

    # Back to normal operation
    info = await BackupCoordinator(db, engine).execute(full_request(backup_root))
    assert info.state == BackupState.COMPLETE
