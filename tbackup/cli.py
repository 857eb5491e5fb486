# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""CLI for backup creation, repair and maintenance.

Usage:
    backup create full /backups/nightly -t orders,customers
    backup create incremental /backups/nightly -t orders
    backup repair
    backup delete backup_01J... backup_01J...
    backup merge backup_01J...,backup_01J...
    backup history --root /backups/nightly --all
    backup describe backup_01J...
    backup status

Commands:
    create    - Run a full or incremental backup of the given tables
    repair    - Reconcile state left behind by an interrupted operation
    delete    - Delete backups
    merge     - Merge backups of one root into the newest of them
    history   - List backup history
    describe  - Show one backup
    status    - Show locks, marker and history counts

Exit codes:
    0 success, 1 failed operation, 2 invalid request or unknown backup,
    3 another exclusive operation is running, 4 repair found an
    inconsistent state.
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List

import aiosqlite
import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tbackup.config import BackupConfig
from tbackup.coordinator import BackupCoordinator, fail_at_stage
from tbackup.engine import LocalEngine
from tbackup.engine.local import MERGE_STAGING_SUFFIX
from tbackup.env import create_config_from_env
from tbackup.exceptions import (
    ConfigurationError,
    LockConflict,
    NotFoundError,
    RepairInconsistency,
    TBackupError,
    ValidationError,
)
from tbackup.exit import get_exit_sink
from tbackup.models import BackupInfo, BackupRequest, BackupState, BackupType
from tbackup.operations import delete_backups, merge_backups
from tbackup.repair import RepairAction, repair_backup_system
from tbackup.store import (
    get_backup_record,
    get_store_stats,
    init_store_db,
    list_backup_history,
)

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_LOCKED = 3
EXIT_INCONSISTENT = 4


# ============================================================================
# Helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _load_config(args: argparse.Namespace) -> BackupConfig:
    return create_config_from_env(
        state_dir=Path(args.state_dir) if args.state_dir else None,
        data_dir=Path(args.data_dir) if args.data_dir else None,
    )


@asynccontextmanager
async def _open_store(config: BackupConfig) -> AsyncIterator[aiosqlite.Connection]:
    await init_store_db(config.store_path)
    async with aiosqlite.connect(config.store_path) as db:
        yield db


def _split_ids(values: List[str]) -> List[str]:
    ids: List[str] = []
    for value in values:
        ids.extend(part.strip() for part in value.split(",") if part.strip())
    return ids


def _fmt_ts(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _state_style(state: BackupState) -> str:
    return {
        BackupState.COMPLETE: "green",
        BackupState.FAILED: "red",
        BackupState.RUNNING: "yellow",
    }[state]


async def _merge_leftovers(
    db: aiosqlite.Connection,
    config: BackupConfig,
    backup_ids: List[str],
) -> List[Path]:
    """Engine files an interrupted merge leaves on disk."""
    paths: List[Path] = []
    if backup_ids:
        # Merge locks list ids oldest first; the target is last
        target = await get_backup_record(db, backup_ids[-1])
        if target is not None:
            paths.append(Path(target.root) / f"{target.backup_id}{MERGE_STAGING_SUFFIX}")
    paths.append(config.snapshot_path)
    return [p for p in paths if p.exists()]


def exit_code_for(error: TBackupError) -> int:
    """Map an error onto the CLI exit code."""
    if isinstance(error, RepairInconsistency):
        return EXIT_INCONSISTENT
    if isinstance(error, LockConflict):
        return EXIT_LOCKED
    if isinstance(error, (ValidationError, NotFoundError, ConfigurationError)):
        return EXIT_INVALID
    return EXIT_FAILED


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_create(args: argparse.Namespace) -> int:
    """Async implementation for create command.

    Returns:
        0 when the backup completed, 1 when it failed.
    """
    config = _load_config(args)
    engine = LocalEngine(config)
    hook = fail_at_stage(config.fail_at_stage) if config.fail_at_stage else None

    request = BackupRequest(
        backup_type=BackupType(args.backup_type),
        root=args.root,
        tables=_split_ids([args.tables]),
    )

    async with _open_store(config) as db:
        coordinator = BackupCoordinator(db, engine, failure_hook=hook)
        info = await coordinator.execute(request)

    if info.state == BackupState.COMPLETE:
        console.print(
            f"[bold green]v[/bold green] Backup [bold cyan]{info.backup_id}[/bold cyan] complete "
            f"({len(info.tables)} tables)"
        )
        return EXIT_OK

    console.print(
        f"[bold red]x[/bold red] Backup [bold]{info.backup_id}[/bold] failed at stage "
        f"[yellow]{info.failed_stage.value if info.failed_stage else '?'}[/yellow]: "
        f"{escape(info.failure_message or '')}"
    )
    return EXIT_FAILED


async def _async_repair(args: argparse.Namespace) -> int:
    config = _load_config(args)

    async with _open_store(config) as db:
        result = await repair_backup_system(db)
        leftovers = []
        if result.action == RepairAction.MERGE_ABORTED:
            leftovers = await _merge_leftovers(db, config, result.backup_ids)

    if result.action == RepairAction.NONE:
        console.print("Nothing to repair.", style="dim")
        return EXIT_OK

    console.print(f"[bold green]v[/bold green] Repair: [cyan]{result.action.value}[/cyan]")
    if result.failed_backup_ids:
        console.print(f"  Marked failed: {', '.join(result.failed_backup_ids)}")
    if result.cleared_roots:
        console.print(f"  Cleared incremental sets: {', '.join(result.cleared_roots)}")
    if result.marker_kept:
        console.print("  [yellow]Repair snapshot kept; run 'backup repair' again to drop it.[/yellow]")
    if leftovers:
        console.print("  [yellow]The aborted merge left files behind; remove them by hand:[/yellow]")
        for path in leftovers:
            console.print(f"    {escape(str(path))}", soft_wrap=True)
    return EXIT_OK


async def _async_delete(args: argparse.Namespace) -> int:
    config = _load_config(args)
    engine = LocalEngine(config)

    async with _open_store(config) as db:
        result = await delete_backups(db, engine, _split_ids(args.backup_ids))

    console.print(f"[bold green]v[/bold green] Deleted {len(result.deleted_ids)} backup(s)")
    for backup_id in result.deleted_ids:
        console.print(f"  {backup_id}", style="dim")
    return EXIT_OK


async def _async_merge(args: argparse.Namespace) -> int:
    config = _load_config(args)
    engine = LocalEngine(config)

    async with _open_store(config) as db:
        result = await merge_backups(db, engine, _split_ids([args.backup_ids]))

    console.print(
        f"[bold green]v[/bold green] Merged {len(result.source_ids)} backup(s) into "
        f"[bold cyan]{result.merged_into}[/bold cyan]"
    )
    return EXIT_OK


async def _async_history(args: argparse.Namespace) -> int:
    config = _load_config(args)

    async with _open_store(config) as db:
        history = await list_backup_history(db, root=args.root, include_deleted=args.all)

    if not history:
        console.print("No backups recorded.", style="dim")
        return EXIT_OK

    table = Table(title="Backup History")
    table.add_column("Backup", no_wrap=True)
    table.add_column("Type")
    table.add_column("State")
    table.add_column("Root")
    table.add_column("Tables")
    table.add_column("Started", style="dim")
    table.add_column("Ended", style="dim")

    for info in history:
        state = f"[{_state_style(info.state)}]{info.state.value}[/{_state_style(info.state)}]"
        if info.merged_into:
            state += " (merged)"
        elif info.deleted_at:
            state += " (deleted)"
        table.add_row(
            info.backup_id,
            info.backup_type.value,
            state,
            info.root,
            ",".join(info.tables),
            _fmt_ts(info.start_ts),
            _fmt_ts(info.end_ts),
        )

    console.print(table)
    return EXIT_OK


def _describe_table(info: BackupInfo) -> Table:
    table = Table(title=info.backup_id, show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Type", info.backup_type.value)
    table.add_row("State", f"[{_state_style(info.state)}]{info.state.value}[/{_state_style(info.state)}]")
    table.add_row("Root", info.root)
    table.add_row("Tables", ", ".join(info.tables))
    table.add_row("Started", _fmt_ts(info.start_ts))
    table.add_row("Ended", _fmt_ts(info.end_ts))
    if info.baseline_id:
        table.add_row("Baseline", info.baseline_id)
    if info.failed_stage:
        table.add_row("Failed stage", info.failed_stage.value)
    if info.failure_message:
        table.add_row("Failure", escape(info.failure_message))
    if info.deleted_at:
        table.add_row("Deleted", _fmt_ts(info.deleted_at))
    if info.merged_into:
        table.add_row("Merged into", info.merged_into)
    return table


async def _async_describe(args: argparse.Namespace) -> int:
    config = _load_config(args)

    async with _open_store(config) as db:
        info = await get_backup_record(db, args.backup_id)

    if info is None:
        raise NotFoundError(f"Unknown backup: {args.backup_id}")

    console.print(_describe_table(info))
    return EXIT_OK


async def _async_status(args: argparse.Namespace) -> int:
    config = _load_config(args)

    async with _open_store(config) as db:
        stats = await get_store_stats(db)

    table = Table(title="Backup Status", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("State store", str(config.store_path))
    table.add_row("Backups", str(stats["total_backups"]))
    table.add_row("Live backups", str(stats["live_backups"]))
    for state, count in sorted(stats["backups_by_state"].items()):
        table.add_row(f"  {state}", str(count))

    exclusive = stats["exclusive_lock"]
    table.add_row(
        "Exclusive lock",
        f"[yellow]{exclusive['kind']}[/yellow] {', '.join(exclusive['backup_ids'])}"
        if exclusive
        else "[green]free[/green]",
    )
    merge = stats["merge_lock"]
    table.add_row(
        "Merge lock",
        f"[yellow]held[/yellow] {', '.join(merge['backup_ids'])}" if merge else "[green]free[/green]",
    )
    table.add_row(
        "Repair snapshot",
        "[yellow]present[/yellow]" if stats["repair_snapshot"] else "[green]absent[/green]",
    )
    for root, tables in stats["incremental_table_sets"].items():
        table.add_row(f"Incremental set {root}", ", ".join(tables))

    console.print(table)

    if exclusive or stats["repair_snapshot"]:
        console.print(
            "[dim]An operation is in progress or was interrupted. Run[/dim] "
            "[cyan]backup repair[/cyan] [dim]if no backup process is running.[/dim]"
        )
    return EXIT_OK


# ============================================================================
# Sync command wrappers
# ============================================================================


def cmd_create(args: argparse.Namespace) -> int:
    """Handle create command. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_create(args))


def cmd_repair(args: argparse.Namespace) -> int:
    """Handle repair command. Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_repair(args))


def cmd_delete(args: argparse.Namespace) -> int:
    return asyncio.run(_async_delete(args))


def cmd_merge(args: argparse.Namespace) -> int:
    return asyncio.run(_async_merge(args))


def cmd_history(args: argparse.Namespace) -> int:
    return asyncio.run(_async_history(args))


def cmd_describe(args: argparse.Namespace) -> int:
    return asyncio.run(_async_describe(args))


def cmd_status(args: argparse.Namespace) -> int:
    return asyncio.run(_async_status(args))


# ============================================================================
# Entry points
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backup",
        description="Backup coordination and crash recovery",
    )

    # Global options
    parser.add_argument(
        "--state-dir",
        default=None,
        help="Directory holding the state store (env: TBACKUP_STATE_DIR)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory whose subdirectories are the tables (env: TBACKUP_DATA_DIR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug events to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # create command
    p_create = subparsers.add_parser("create", help="Run a full or incremental backup")
    p_create.add_argument(
        "backup_type",
        choices=[t.value for t in BackupType],
        help="Backup type",
    )
    p_create.add_argument("root", help="Backup root directory")
    p_create.add_argument(
        "-t",
        "--tables",
        required=True,
        help="Comma-separated list of tables (e.g., orders,customers)",
    )
    p_create.set_defaults(func=cmd_create)

    # repair command
    p_repair = subparsers.add_parser(
        "repair",
        help="Reconcile state left behind by an interrupted operation",
    )
    p_repair.set_defaults(func=cmd_repair)

    # delete command
    p_delete = subparsers.add_parser("delete", help="Delete backups")
    p_delete.add_argument("backup_ids", nargs="+", help="Backup ids to delete")
    p_delete.set_defaults(func=cmd_delete)

    # merge command
    p_merge = subparsers.add_parser("merge", help="Merge backups into the newest of them")
    p_merge.add_argument("backup_ids", help="Comma-separated list of backup ids")
    p_merge.set_defaults(func=cmd_merge)

    # history command
    p_history = subparsers.add_parser("history", help="List backup history")
    p_history.add_argument("--root", default=None, help="Only show backups of this root")
    p_history.add_argument(
        "--all",
        action="store_true",
        help="Include deleted and merged backups",
    )
    p_history.set_defaults(func=cmd_history)

    # describe command
    p_describe = subparsers.add_parser("describe", help="Show one backup")
    p_describe.add_argument("backup_id", help="Backup id")
    p_describe.set_defaults(func=cmd_describe)

    # status command
    p_status = subparsers.add_parser("status", help="Show locks, marker and history counts")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: List[str] | None = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to the matching handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return args.func(args)
    except TBackupError as e:
        console.print(f"[bold red]x[/bold red] {escape(e.message)}")
        return exit_code_for(e)


def run() -> None:
    """Console script entry point."""
    get_exit_sink().exit(main())


if __name__ == "__main__":
    run()
