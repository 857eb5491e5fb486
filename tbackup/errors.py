# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for tbackup.

These helpers centralize wording for operator-facing errors so that
the coordinator, repair procedure and CLI present consistent,
actionable messages.
"""


def explain_lock_held(kind: str, backup_ids: list[str]) -> str:
    """
    Explain that another exclusive operation holds the lock.
    """

    return (
        f"Another exclusive backup operation is in progress or has crashed "
        f"(kind={kind}, backups={','.join(backup_ids)}). "
        "If no other process is running, run 'backup repair' first."
    )


def explain_merge_lock_held(backup_ids: list[str]) -> str:
    """
    Explain that a merge lock is already held.
    """

    return (
        f"A merge operation is in progress or has crashed "
        f"(backups={','.join(backup_ids)}). Run 'backup repair' first."
    )


def explain_missing_baseline(root: str, missing: list[str]) -> str:
    """
    Explain that an incremental backup has no full baseline to chain onto.
    """

    return (
        f"Cannot run an incremental backup on {root!r}: tables "
        f"{', '.join(sorted(missing))} have no valid full backup on this root. "
        "Run 'backup create full' for these tables first."
    )


def explain_unknown_tables(missing: list[str]) -> str:
    """
    Explain that some requested tables do not exist.
    """

    return f"Unknown tables: {', '.join(sorted(missing))}."


def explain_unreachable_root(root: str) -> str:
    """
    Explain that the backup root cannot be used.
    """

    return (
        f"Backup root {root!r} is not reachable. "
        "It must be a writable directory (or creatable under a writable parent)."
    )


def explain_repair_inconsistency(observed: dict) -> str:
    """
    Explain that repair refused an unexpected lock/marker combination.
    """

    return (
        "Backup system state does not match any known crashed operation; "
        f"refusing to guess. Observed: {observed}. "
        "Inspect the state with 'backup status' before intervening manually."
    )


def explain_invalid_stage_env(value: str | None) -> str:
    """
    Explain that TBACKUP_FAIL_AT_STAGE is invalid.
    """

    return (
        f"Invalid TBACKUP_FAIL_AT_STAGE value: {value!r}. "
        "Expected a stage name (prepare, snapshot, copy, record_baseline) "
        "or its index."
    )


def explain_invalid_zstd_level_env(value: str | None) -> str:
    """
    Explain that TBACKUP_ZSTD_LEVEL is invalid.
    """

    return (
        f"Invalid TBACKUP_ZSTD_LEVEL value: {value!r}. "
        "It must be an integer between 1 and 22."
    )
