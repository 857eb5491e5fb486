# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

Builds a BackupConfig from a small set of well-known environment
variables. Explicit keyword overrides (typically CLI options) win over
the environment.
"""

from __future__ import annotations

import os
from pathlib import Path

from tbackup.config import BackupConfig
from tbackup.errors import explain_invalid_stage_env, explain_invalid_zstd_level_env
from tbackup.exceptions import ConfigurationError
from tbackup.models import FAULT_INJECTABLE_STAGES, BackupStage


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_zstd_level(value: str | None) -> int:
    if not value:
        return 10
    try:
        level = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_zstd_level_env(value)) from exc
    if not 1 <= level <= 22:
        raise ConfigurationError(explain_invalid_zstd_level_env(value))
    return level


def parse_stage(value: str | None) -> BackupStage | None:
    """Parse a stage given by name ("copy") or by index ("2")."""
    if not value:
        return None
    value = value.strip().lower()
    if value.isdigit():
        index = int(value)
        if index < len(FAULT_INJECTABLE_STAGES):
            return FAULT_INJECTABLE_STAGES[index]
        raise ConfigurationError(explain_invalid_stage_env(value))
    try:
        stage = BackupStage(value)
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_stage_env(value)) from exc
    if stage not in FAULT_INJECTABLE_STAGES:
        raise ConfigurationError(explain_invalid_stage_env(value))
    return stage


def create_config_from_env(**overrides) -> BackupConfig:
    """
    Create a BackupConfig from environment variables.

    Optional environment variables:
        - TBACKUP_STATE_DIR: state store directory (default: ./tbackup_state)
        - TBACKUP_DATA_DIR: table data directory (default: ./tbackup_data)
        - TBACKUP_COMPRESS: '1'/'0' to toggle zstd compression (default: 1)
        - TBACKUP_ZSTD_LEVEL: 1-22 (default: 10)
        - TBACKUP_FAIL_AT_STAGE: stage name or index to fail at (test mode)

    Keyword overrides that are None are ignored.
    """

    state_dir = os.getenv("TBACKUP_STATE_DIR")
    data_dir = os.getenv("TBACKUP_DATA_DIR")

    values = {
        "state_dir": Path(state_dir) if state_dir else Path("./tbackup_state"),
        "data_dir": Path(data_dir) if data_dir else Path("./tbackup_data"),
        "compress_backups": _parse_bool(os.getenv("TBACKUP_COMPRESS"), True),
        "zstd_level": _parse_zstd_level(os.getenv("TBACKUP_ZSTD_LEVEL")),
        "fail_at_stage": parse_stage(os.getenv("TBACKUP_FAIL_AT_STAGE")),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    return BackupConfig(**values)
