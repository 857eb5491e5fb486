# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Data-movement engines - Table snapshot, copy, delete and merge.
"""

from tbackup.engine.base import CopyResult, DataMovementEngine, FileEntry, TableSnapshot
from tbackup.engine.local import LocalEngine

__all__ = [
    "DataMovementEngine",
    "LocalEngine",
    # Types
    "CopyResult",
    "FileEntry",
    "TableSnapshot",
]
