# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Models - Persisted records and the enums that describe them.

BackupInfo rows form an append-only audit log: a row is written RUNNING
and later moves only to COMPLETE or FAILED. Delete and merge never remove
rows, they stamp deleted_at / merged_into instead.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List


class BackupType(str, Enum):
    """Kind of backup image."""

    FULL = "full"
    INCREMENTAL = "incremental"


class BackupState(str, Enum):
    """Lifecycle state of a backup row."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class OperationKind(str, Enum):
    """Exclusive operations serialized by the exclusive lock."""

    CREATE = "create"
    DELETE = "delete"
    MERGE = "merge"


class BackupStage(str, Enum):
    """Ordered stages of a create pipeline."""

    PREPARE = "prepare"
    SNAPSHOT = "snapshot"
    COPY = "copy"
    RECORD_BASELINE = "record_baseline"
    FINALIZE = "finalize"


# Every stage but the terminal one can be interrupted by the failure hook
FAULT_INJECTABLE_STAGES = tuple(BackupStage)[:-1]


@dataclass
class BackupInfo:
    """One row of backup history."""

    backup_id: str  # backup_<ULID>, sorts by creation time
    backup_type: BackupType
    state: BackupState
    tables: List[str]
    root: str
    start_ts: datetime
    end_ts: datetime | None = None
    baseline_id: str | None = None
    failed_stage: BackupStage | None = None
    failure_message: str | None = None
    deleted_at: datetime | None = None
    merged_into: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (BackupState.COMPLETE, BackupState.FAILED)

    @property
    def is_live(self) -> bool:
        """True unless the backup was deleted or merged into another one."""
        return self.deleted_at is None and self.merged_into is None


@dataclass
class ExclusiveLock:
    """Singleton claim of cluster-wide exclusivity."""

    backup_ids: List[str]
    kind: OperationKind
    acquired_at: datetime


@dataclass
class MergeLock:
    """Singleton claim that a merge of backup_ids is under way."""

    backup_ids: List[str]
    acquired_at: datetime


@dataclass
class BackupRequest:
    """Arguments of a create command."""

    backup_type: BackupType
    root: str
    tables: List[str] = field(default_factory=list)
