# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Coordinator - Staged execution of a backup create.

A create runs a fixed, strictly sequential pipeline:

    PREPARE -> SNAPSHOT -> COPY -> RECORD_BASELINE -> FINALIZE

Before the first stage the exclusive lock (CREATE) is acquired and the
backup is recorded RUNNING. FINALIZE marks it COMPLETE and releases the
lock. Any exception raised by a stage stops the pipeline and takes the
failure path: the row is marked FAILED, the root's incremental table set is
cleared, partial data is removed and the lock is released last.

If the process dies before the failure path finishes, the lock and the
RUNNING row stay behind; `backup repair` reconciles them.

A failure hook is called right before every stage except FINALIZE. It is a
no-op in production and the seam tests use to inject faults.
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Awaitable, Callable, Dict

import aiosqlite
import structlog
from ulid import ULID

from tbackup.engine.base import CopyResult, DataMovementEngine, TableSnapshot
from tbackup.errors import (
    explain_missing_baseline,
    explain_unknown_tables,
    explain_unreachable_root,
)
from tbackup.exceptions import StageFailure, StoreError, ValidationError
from tbackup.models import (
    FAULT_INJECTABLE_STAGES,
    BackupInfo,
    BackupRequest,
    BackupStage,
    BackupState,
    BackupType,
    OperationKind,
)
from tbackup.store import (
    acquire_exclusive_lock,
    append_backup_record,
    clear_incremental_table_set,
    get_backup_record,
    get_incremental_table_set,
    list_backup_history,
    release_exclusive_lock,
    set_incremental_table_set,
    update_backup_state,
)

logger = structlog.get_logger()

FailureHook = Callable[[BackupStage], None]


def no_failure_hook(stage: BackupStage) -> None:
    """Default hook: never interferes."""
    return None


def fail_at_stage(stage: BackupStage) -> FailureHook:
    """
    Build a hook that raises StageFailure right before the given stage.
    """
    if stage not in FAULT_INJECTABLE_STAGES:
        raise ValueError(f"Stage {stage.value} cannot be interrupted")

    def hook(current: BackupStage) -> None:
        if current == stage:
            raise StageFailure(
                f"Injected failure at stage {stage.value}",
                stage=stage.value,
            )

    return hook


def new_backup_id() -> str:
    return f"backup_{ULID()}"


@dataclass
class _BackupContext:
    """Values handed from one stage to the next."""

    info: BackupInfo
    baseline: BackupInfo | None = None
    snapshot: TableSnapshot | None = None
    copy_result: CopyResult | None = None


class BackupCoordinator:
    """
    Runs one backup request to completion or fails it safely.

    Args:
        db: State store connection
        engine: Data-movement engine
        failure_hook: Called with each interruptible stage before it runs
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        engine: DataMovementEngine,
        failure_hook: FailureHook | None = None,
    ):
        self.db = db
        self.engine = engine
        self.failure_hook = failure_hook or no_failure_hook
        self._stages: Dict[BackupStage, Callable[[_BackupContext], Awaitable[None]]] = {
            BackupStage.PREPARE: self._prepare,
            BackupStage.SNAPSHOT: self._snapshot,
            BackupStage.COPY: self._copy,
            BackupStage.RECORD_BASELINE: self._record_baseline,
            BackupStage.FINALIZE: self._finalize,
        }

    async def execute(self, request: BackupRequest) -> BackupInfo:
        """
        Run a backup request.

        Returns:
            The COMPLETE backup, or the FAILED backup if a stage failed

        Raises:
            ValidationError: If the request is invalid (nothing is written)
            LockConflict: If another exclusive operation holds the lock
            StoreError: If the failure path itself could not be completed
        """
        tables = await self._validate(request)
        baseline = None
        if request.backup_type == BackupType.INCREMENTAL:
            baseline = await self._find_baseline(request.root, tables)

        backup_id = new_backup_id()
        log = logger.bind(backup_id=backup_id, root=request.root)

        await acquire_exclusive_lock(self.db, [backup_id], OperationKind.CREATE)

        info = BackupInfo(
            backup_id=backup_id,
            backup_type=request.backup_type,
            state=BackupState.RUNNING,
            tables=tables,
            root=request.root,
            start_ts=datetime.now(UTC),
            baseline_id=baseline.backup_id if baseline else None,
        )
        try:
            await append_backup_record(self.db, info)
        except Exception:
            await release_exclusive_lock(self.db)
            raise

        log.info("backup_started", backup_type=request.backup_type.value, tables=tables)

        ctx = _BackupContext(info=info, baseline=baseline)
        stage = BackupStage.PREPARE
        try:
            for stage in BackupStage:
                if stage in FAULT_INJECTABLE_STAGES:
                    self.failure_hook(stage)
                log.debug("backup_stage_started", stage=stage.value)
                await self._stages[stage](ctx)
        except Exception as e:
            failure = e if isinstance(e, StageFailure) else StageFailure(
                f"Stage {stage.value} failed: {e}",
                stage=stage.value,
            )
            log.error("backup_stage_failed", stage=stage.value, error=str(e))
            return await self._fail(info, stage, failure)

        completed = await get_backup_record(self.db, backup_id)
        log.info(
            "backup_completed",
            files_copied=ctx.copy_result.files_copied if ctx.copy_result else 0,
        )
        return completed or info

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _validate(self, request: BackupRequest) -> list[str]:
        tables = list(dict.fromkeys(t.strip() for t in request.tables if t and t.strip()))
        if not tables:
            raise ValidationError("At least one table is required")

        if not request.root:
            raise ValidationError("A backup root is required")

        unknown = [t for t in tables if not await self.engine.table_exists(t)]
        if unknown:
            raise ValidationError(
                explain_unknown_tables(unknown),
                details={"tables": unknown},
            )

        if not await self.engine.root_reachable(request.root):
            raise ValidationError(
                explain_unreachable_root(request.root),
                details={"root": request.root},
            )

        if request.backup_type == BackupType.INCREMENTAL:
            eligible = await get_incremental_table_set(self.db, request.root)
            missing = [t for t in tables if t not in eligible]
            if missing:
                raise ValidationError(
                    explain_missing_baseline(request.root, missing),
                    details={"root": request.root, "tables": missing},
                )

        return tables

    async def _find_baseline(self, root: str, tables: list[str]) -> BackupInfo:
        """
        Backup an incremental chains onto.

        Each table's baseline is the newest live COMPLETE backup on the root
        that covered it. The oldest of those is returned, and its start time
        bounds the copy, so every table picks up what changed since its own
        last backup.
        """
        history = await list_backup_history(self.db, root=root, include_deleted=False)
        per_table: Dict[str, BackupInfo] = {}
        for info in history:
            if info.state != BackupState.COMPLETE:
                continue
            for table in info.tables:
                if table in tables:
                    per_table[table] = info

        missing = [t for t in tables if t not in per_table]
        if missing:
            raise ValidationError(
                explain_missing_baseline(root, missing),
                details={"root": root, "tables": missing},
            )
        return min(per_table.values(), key=lambda b: (b.start_ts, b.backup_id))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _prepare(self, ctx: _BackupContext) -> None:
        await self.engine.prepare_backup(ctx.info.backup_id, ctx.info.root)

    async def _snapshot(self, ctx: _BackupContext) -> None:
        ctx.snapshot = await self.engine.snapshot_tables(ctx.info.backup_id, ctx.info.tables)

    async def _copy(self, ctx: _BackupContext) -> None:
        since = ctx.baseline.start_ts if ctx.baseline else None
        ctx.copy_result = await self.engine.copy_tables(
            ctx.info.backup_id,
            ctx.info.root,
            ctx.snapshot,
            since=since,
        )

    async def _record_baseline(self, ctx: _BackupContext) -> None:
        existing = await get_incremental_table_set(self.db, ctx.info.root)
        await set_incremental_table_set(
            self.db,
            ctx.info.root,
            existing | set(ctx.info.tables),
        )

    async def _finalize(self, ctx: _BackupContext) -> None:
        await update_backup_state(self.db, ctx.info.backup_id, BackupState.COMPLETE)
        await release_exclusive_lock(self.db)

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    async def _fail(
        self,
        info: BackupInfo,
        stage: BackupStage,
        failure: StageFailure,
    ) -> BackupInfo:
        """
        Mark the backup FAILED and release the lock.

        The lock goes last: while it is held, repair still sees the
        attempt as in doubt.
        """
        log = logger.bind(backup_id=info.backup_id, root=info.root)

        try:
            failed = await update_backup_state(
                self.db,
                info.backup_id,
                BackupState.FAILED,
                failed_stage=stage,
                failure_message=failure.message,
            )
            # A row that already reached COMPLETE keeps its baseline
            if failed:
                await clear_incremental_table_set(self.db, info.root)
        except Exception as e:
            log.error("backup_failure_path_failed", stage=stage.value, error=str(e))
            raise StoreError(
                f"Could not record failure of {info.backup_id}; run 'backup repair'",
                details={"backup_id": info.backup_id, "stage": stage.value},
            ) from e

        if failed:
            try:
                await self.engine.delete_backup_data(info.backup_id, info.root)
            except Exception as e:
                log.warning("partial_backup_cleanup_failed", error=str(e))

        try:
            await release_exclusive_lock(self.db)
        except Exception as e:
            log.error("backup_failure_path_failed", stage=stage.value, error=str(e))
            raise StoreError(
                f"Could not release the lock held by {info.backup_id}; run 'backup repair'",
                details={"backup_id": info.backup_id, "stage": stage.value},
            ) from e

        log.warning("backup_failed", stage=stage.value, error=failure.message)

        record = await get_backup_record(self.db, info.backup_id)
        return record or info
