# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Persistent State Store - Backup history, locks and markers.
"""

from tbackup.store.sqlite_store import (
    init_store_db,
    append_backup_record,
    get_backup_record,
    list_backup_history,
    update_backup_state,
    mark_backups_deleted,
    mark_backups_merged,
    acquire_exclusive_lock,
    release_exclusive_lock,
    get_exclusive_lock,
    has_ongoing_exclusive_operation,
    acquire_merge_lock,
    release_merge_lock,
    get_merge_lock,
    has_ongoing_merge_operation,
    set_incremental_table_set,
    clear_incremental_table_set,
    get_incremental_table_set,
    create_repair_snapshot,
    delete_repair_snapshot,
    repair_snapshot_exists,
    get_store_stats,
)

__all__ = [
    # History
    "init_store_db",
    "append_backup_record",
    "get_backup_record",
    "list_backup_history",
    "update_backup_state",
    "mark_backups_deleted",
    "mark_backups_merged",
    # Exclusive lock
    "acquire_exclusive_lock",
    "release_exclusive_lock",
    "get_exclusive_lock",
    "has_ongoing_exclusive_operation",
    # Merge lock
    "acquire_merge_lock",
    "release_merge_lock",
    "get_merge_lock",
    "has_ongoing_merge_operation",
    # Incremental table sets
    "set_incremental_table_set",
    "clear_incremental_table_set",
    "get_incremental_table_set",
    # Repair snapshot marker
    "create_repair_snapshot",
    "delete_repair_snapshot",
    "repair_snapshot_exists",
    # Stats
    "get_store_stats",
]
