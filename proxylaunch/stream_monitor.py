# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
Child process output pumps.

Each output stream of the proxy gets its own read loop so a quiet stderr
never holds back stdout lines, and the other way round.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from .errors import StreamReadError

logger = logging.getLogger(__name__)

# Sink for the child's own output, kept apart from our diagnostics
output_logger = logging.getLogger("proxylaunch.proxy")

STDOUT = "stdout"
STDERR = "stderr"


def log_output_line(channel: str, line: str) -> None:
    """Default sink: stdout at INFO, stderr at WARNING."""
    if channel == STDERR:
        output_logger.warning("ERROR: %s", line)
    else:
        output_logger.info("OUTPUT: %s", line)


class OutputStreamMonitor:
    """
    Pumps a process's stdout and stderr line by line.

    Every line goes to ``sink(channel, line)``. Stdout lines containing
    ``readiness_marker`` also trigger ``on_marker()``; deduplication is
    left to the receiver.
    """

    def __init__(
        self,
        stdout: Optional[asyncio.StreamReader],
        stderr: Optional[asyncio.StreamReader],
        readiness_marker: Optional[str] = None,
        on_marker: Optional[Callable[[], None]] = None,
        sink: Callable[[str, str], None] = log_output_line,
    ):
        self._streams = {STDOUT: stdout, STDERR: stderr}
        self.readiness_marker = readiness_marker
        self._on_marker = on_marker
        self._sink = sink
        self._tasks: List[asyncio.Task] = []
        self.lines_read = {STDOUT: 0, STDERR: 0}

    def start(self) -> None:
        """Start one read task per attached stream."""
        if self._tasks:
            return
        for channel, stream in self._streams.items():
            if stream is None:
                continue
            task = asyncio.create_task(self._pump(channel, stream), name=f"proxy-{channel}")
            self._tasks.append(task)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for both loops to reach end-of-stream; cancel them after ``timeout``."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.debug("Cancelled %d output reader(s) still open after %ss", len(pending), timeout)
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pump(self, channel: str, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("%s", StreamReadError(channel, e))
                return

            if not raw:
                logger.debug("Proxy %s closed after %d lines", channel, self.lines_read[channel])
                return

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self.lines_read[channel] += 1
            self._deliver(channel, line)

    def _deliver(self, channel: str, line: str) -> None:
        try:
            self._sink(channel, line)
        except Exception as e:
            logger.warning("Output sink error: %s", e)

        if (
            channel == STDOUT
            and self.readiness_marker
            and self._on_marker is not None
            and self.readiness_marker in line
        ):
            try:
                self._on_marker()
            except Exception as e:
                logger.warning("Readiness callback error: %s", e)
