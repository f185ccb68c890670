# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
In-memory log sink.

Keeps the most recent formatted log lines so the control API can show
them the way a desktop client shows its log pane, and clear them on request.
"""

import logging
import threading
from collections import deque
from typing import Deque, List, Optional


class LogBuffer:
    """Bounded, thread-safe store of formatted log lines."""

    def __init__(self, max_lines: int = 500):
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self, limit: Optional[int] = None) -> List[str]:
        """Return buffered lines, oldest first (the last ``limit`` if given)."""
        with self._lock:
            lines = list(self._lines)
        if limit is not None and limit >= 0:
            return lines[-limit:] if limit else []
        return lines

    def clear(self) -> int:
        """Drop all buffered lines, returning how many were removed."""
        with self._lock:
            count = len(self._lines)
            self._lines.clear()
        return count

    def resize(self, max_lines: int) -> None:
        with self._lock:
            self._lines = deque(self._lines, maxlen=max_lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class LogBufferHandler(logging.Handler):
    """logging.Handler that mirrors records into a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level: int = logging.NOTSET):
        super().__init__(level)
        self.buffer = buffer
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(self.format(record))
        except Exception:
            self.handleError(record)


_buffer: Optional[LogBuffer] = None


def get_log_buffer() -> LogBuffer:
    """Get the process-wide log buffer (singleton)."""
    global _buffer
    if _buffer is None:
        _buffer = LogBuffer()
    return _buffer
