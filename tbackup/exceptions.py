# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Exceptions - Custom exceptions for the tbackup package.
"""


class TBackupError(Exception):
    """Base exception for all tbackup errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(TBackupError):
    """Raised when configuration is invalid."""

    pass


class ValidationError(TBackupError):
    """Raised when a request has bad arguments or names unknown tables."""

    pass


class StageFailure(TBackupError):
    """Raised when a backup stage fails, either for real or by injection."""

    def __init__(self, message: str, stage: str | None = None, details: dict | None = None):
        super().__init__(message, details)
        self.stage = stage


class LockConflict(TBackupError):
    """Raised when the exclusive (or merge) lock is already held."""

    pass


class RepairInconsistency(TBackupError):
    """Raised when repair finds a lock/marker combination it cannot reason about."""

    pass


class NotFoundError(TBackupError):
    """Raised when a backup id is unknown."""

    pass


class StoreError(TBackupError):
    """Raised when persistent state store operations fail."""

    pass


class EngineError(TBackupError):
    """Raised when the data-movement engine fails."""

    pass


class OperationFailure(TBackupError):
    """Raised when a delete or merge operation fails."""

    pass
