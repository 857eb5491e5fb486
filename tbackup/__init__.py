# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup - Backup coordination and crash recovery for a table store.

Runs staged backup creates, deletes and merges under a persisted
exclusive lock, and repairs the state an interrupted operation leaves
behind. Package name: tbackup.
"""

__version__ = "0.1.0"

# Configuration
from tbackup.config import BackupConfig
from tbackup.env import create_config_from_env

# Core operations
from tbackup.coordinator import BackupCoordinator, fail_at_stage
from tbackup.operations import delete_backups, merge_backups
from tbackup.repair import RepairAction, RepairResult, repair_backup_system

# Data model
from tbackup.models import (
    BackupInfo,
    BackupRequest,
    BackupStage,
    BackupState,
    BackupType,
    OperationKind,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupConfig",
    "create_config_from_env",
    # Core operations
    "BackupCoordinator",
    "fail_at_stage",
    "delete_backups",
    "merge_backups",
    "repair_backup_system",
    "RepairAction",
    "RepairResult",
    # Data model
    "BackupInfo",
    "BackupRequest",
    "BackupStage",
    "BackupState",
    "BackupType",
    "OperationKind",
]
