# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while an operation is running.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from tbackup.models import FAULT_INJECTABLE_STAGES, BackupStage

STORE_FILENAME = "backup_state.db"
SNAPSHOT_FILENAME = "repair_snapshot.db"


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for backup coordination.

    The state directory holds the persistent state store and the
    metadata snapshot taken before risky delete/merge mutations.
    """

    # Directory holding the state store database
    state_dir: Path = field(default_factory=lambda: Path("./tbackup_state"))

    # Directory whose subdirectories are the tables that can be backed up
    data_dir: Path = field(default_factory=lambda: Path("./tbackup_data"))

    # Compress copied files using zstd
    compress_backups: bool = True

    # zstd level used when compress_backups is enabled
    zstd_level: int = 10

    # Inject a StageFailure before this stage (test mode)
    fail_at_stage: BackupStage | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not 1 <= self.zstd_level <= 22:
            errors.append(f"zstd_level must be between 1 and 22, got {self.zstd_level}")

        if self.fail_at_stage is not None and self.fail_at_stage not in FAULT_INJECTABLE_STAGES:
            errors.append(
                f"fail_at_stage must be one of "
                f"{[s.value for s in FAULT_INJECTABLE_STAGES]}, got {self.fail_at_stage.value}"
            )

        if self.state_dir == self.data_dir:
            errors.append("state_dir and data_dir must be different directories")

        # Raise all errors at once
        if errors:
            from tbackup.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def store_path(self) -> Path:
        return self.state_dir / STORE_FILENAME

    @property
    def snapshot_path(self) -> Path:
        return self.state_dir / SNAPSHOT_FILENAME

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return BackupConfig(**current)
