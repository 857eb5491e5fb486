# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
tbackup Exit - Process-wide exit sink.

The CLI never calls ``sys.exit`` directly; it hands its status to the active
sink. Tests swap in a CapturingExitSink to observe the status without the
interpreter going away.
"""

import sys
import threading
from contextlib import contextmanager
from typing import Iterator


class ExitIntercepted(Exception):
    """Raised by CapturingExitSink instead of terminating."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"exit({status}) intercepted")


class ExitSink:
    """Terminates the process."""

    def exit(self, status: int) -> None:
        sys.exit(status)


class CapturingExitSink(ExitSink):
    """Records the requested status and raises ExitIntercepted."""

    def __init__(self):
        self.exit_code: int | None = None

    def exit(self, status: int) -> None:
        self.exit_code = status
        raise ExitIntercepted(status)


_sink: ExitSink = ExitSink()
_sink_lock = threading.Lock()


def get_exit_sink() -> ExitSink:
    with _sink_lock:
        return _sink


def set_exit_sink(sink: ExitSink) -> ExitSink:
    """
    Install a new exit sink.

    Returns:
        The sink that was active before
    """
    global _sink
    with _sink_lock:
        previous = _sink
        _sink = sink
        return previous


@contextmanager
def capture_exit() -> Iterator[CapturingExitSink]:
    """
    Install a CapturingExitSink for the duration of the block.

    The previous sink is restored even if the block raises.

    Example:
        >>> with capture_exit() as sink:
        ...     try:
        ...         get_exit_sink().exit(3)
        ...     except ExitIntercepted:
        ...         pass
        >>> sink.exit_code
        3
    """
    sink = CapturingExitSink()
    previous = set_exit_sink(sink)
    try:
        yield sink
    finally:
        set_exit_sink(previous)
