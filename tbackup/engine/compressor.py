# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Compressor - zstd compression for copied table files.

Large payloads are compressed in a thread pool so the event loop keeps
running while a big table file is being copied.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import structlog
import zstandard as zstd

from tbackup.exceptions import EngineError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=4)

DEFAULT_ZSTD_LEVEL = 10
COMPRESSED_SUFFIX = ".zst"

# Payloads above this size are compressed off the event loop
_OFFLOAD_THRESHOLD = 1024 * 1024


async def compress_for_backup(
    name: str,
    raw_bytes: bytes,
    zstd_level: int = DEFAULT_ZSTD_LEVEL,
) -> bytes:
    """
    Compress data for backup storage.

    Args:
        name: File name (for logging)
        raw_bytes: Raw file data
        zstd_level: zstd compression level (1-22)

    Returns:
        Compressed bytes
    """
    try:
        compressed = await _run(_compress_zstd_sync, raw_bytes, zstd_level)

        compression_ratio = len(raw_bytes) / len(compressed) if compressed else 0
        logger.debug(
            "compression_complete",
            name=name,
            original_size=len(raw_bytes),
            compressed_size=len(compressed),
            compression_ratio=f"{compression_ratio:.2f}x",
        )

        return compressed

    except Exception as e:
        raise EngineError(
            f"Compression failed for {name}: {e}",
            details={"name": name, "original_size": len(raw_bytes)},
        ) from e


async def decompress_backup(compressed_bytes: bytes) -> bytes:
    """
    Decompress backup data.

    tbackup has no restore command; this is the inverse of
    ``compress_for_backup`` for checking stored copies against the
    ``sha256`` recorded in their manifest.

    Args:
        compressed_bytes: zstd-compressed data

    Returns:
        Decompressed bytes
    """
    try:
        return await _run(_decompress_zstd_sync, compressed_bytes)
    except Exception as e:
        raise EngineError(f"Decompression failed: {e}") from e


async def _run(func, data: bytes, *args):
    if len(data) > _OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, func, data, *args)
    return func(data, *args)


def _compress_zstd_sync(data: bytes, level: int = DEFAULT_ZSTD_LEVEL) -> bytes:
    """Synchronous zstd compression."""
    cctx = zstd.ZstdCompressor(level=level)
    return cctx.compress(data)


def _decompress_zstd_sync(data: bytes) -> bytes:
    """Synchronous zstd decompression."""
    dctx = zstd.ZstdDecompressor()
    return dctx.decompress(data)
