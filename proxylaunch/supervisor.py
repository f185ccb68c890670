# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Process Supervisor

Owns the lifecycle of the intercepting proxy child process.

Lifecycle:
  stopped -> starting   process spawned, output monitors attached
  starting -> running   readiness marker seen on stdout (once per start)
  * -> stopping         stop() requested, terminate sent
  stopping -> stopped   process exited (killed after stop_timeout)
  starting/running -> stopped   process exited on its own (logged)

start() and stop() are serialized by a single asyncio.Lock, so a stop
issued while a start is in flight runs after the start completes. Every
state change happens on the event loop.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from .config import DEFAULT_READINESS_MARKER
from .errors import ExecutableNotFoundError, ProcessStartError
from .events import EventBus
from .stream_monitor import OutputStreamMonitor

logger = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for some proxy dumps
STREAM_LIMIT = 1024 * 1024


class ProxyState(str, Enum):
    """Lifecycle state of the supervised proxy."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class ProxyProcessHandle:
    """Thin wrapper around the proxy's asyncio process."""

    def __init__(self, process: asyncio.subprocess.Process, executable: Path):
        self._process = process
        self.executable = executable

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def is_alive(self) -> bool:
        return self._process.returncode is None

    def terminate(self) -> None:
        if self.is_alive():
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.is_alive():
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit. Returns the exit code, or None if still alive after ``timeout``."""
        try:
            return await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            return None

    def __repr__(self) -> str:
        return f"<ProxyProcessHandle pid={self.pid} returncode={self.returncode}>"


class ProcessSupervisor:
    """
    Starts, watches and stops a single proxy process.

    Usage:
        supervisor = ProcessSupervisor()
        await supervisor.start(Path("/usr/bin/mitmdump"), ["-s", "addon.py"])
        if await supervisor.wait_until_ready(timeout=10):
            ...
        await supervisor.stop()
    """

    def __init__(
        self,
        stop_timeout: float = 5.0,
        events: Optional[EventBus] = None,
    ):
        self.stop_timeout = stop_timeout
        self.events = events

        self._state = ProxyState.STOPPED
        self._handle: Optional[ProxyProcessHandle] = None
        self._monitor: Optional[OutputStreamMonitor] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._cycle = 0
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[[ProxyState], None]] = []

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def state(self) -> ProxyState:
        return self._state

    @property
    def handle(self) -> Optional[ProxyProcessHandle]:
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle else None

    def on_state_change(self, callback: Callable[[ProxyState], None]) -> None:
        """Register a state change callback."""
        self._listeners.append(callback)

    async def start(
        self,
        executable: Union[str, Path],
        args: Sequence[str] = (),
        working_directory: Optional[Union[str, Path]] = None,
        readiness_marker: str = DEFAULT_READINESS_MARKER,
    ) -> ProxyProcessHandle:
        """
        Spawn the proxy process.

        Returns as soon as the process exists; use wait_until_ready() to
        wait for the readiness marker. If a process is already alive its
        handle is returned and nothing is spawned.

        Raises:
            ExecutableNotFoundError: executable is not an existing file
            ProcessStartError: the OS failed to spawn the process
        """
        async with self._lock:
            if self._handle is not None and self._handle.is_alive():
                logger.debug("Proxy already running with PID %d", self._handle.pid)
                return self._handle

            executable = Path(executable)
            if not executable.is_file():
                raise ExecutableNotFoundError(executable)

            cwd = str(working_directory) if working_directory is not None else None
            logger.info("Starting proxy: %s %s", executable, " ".join(args))
            try:
                process = await asyncio.create_subprocess_exec(
                    str(executable), *args,
                    cwd=cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                logger.error("Failed to start proxy: %s", e)
                raise ProcessStartError(f"Failed to start {executable}: {e}") from e

            self._cycle += 1
            cycle = self._cycle
            self._ready = asyncio.Event()
            self._handle = ProxyProcessHandle(process, executable)
            self._set_state(ProxyState.STARTING)

            self._monitor = OutputStreamMonitor(
                process.stdout,
                process.stderr,
                readiness_marker=readiness_marker,
                on_marker=lambda: self._on_marker_observed(cycle),
            )
            self._monitor.start()
            self._exit_task = asyncio.create_task(
                self._watch_exit(self._handle, self._monitor, cycle),
                name="proxy-exit-watcher",
            )

            logger.info("Proxy started with PID %d", process.pid)
            return self._handle

    async def wait_until_ready(self, timeout: float) -> bool:
        """
        Wait for the starting -> running transition.

        Returns True once running, False if the process exits first or
        ``timeout`` seconds pass.
        """
        if self._state == ProxyState.RUNNING:
            return True
        if self._state != ProxyState.STARTING or self._ready is None:
            return False

        ready_task = asyncio.create_task(self._ready.wait())
        waiters = {ready_task}
        if self._exit_task is not None:
            waiters.add(self._exit_task)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_task.cancel()
        return self._state == ProxyState.RUNNING

    async def stop(self) -> None:
        """
        Stop the proxy. No-op when nothing is running.

        Sends terminate, waits up to stop_timeout, then kills.
        """
        async with self._lock:
            handle = self._handle
            if handle is None:
                return

            if handle.is_alive():
                self._set_state(ProxyState.STOPPING)
                handle.terminate()
                if await handle.wait(self.stop_timeout) is None:
                    logger.warning(
                        "Proxy (PID %d) did not exit within %ss, killing",
                        handle.pid, self.stop_timeout,
                    )
                    handle.kill()
                    await handle.wait()
                logger.info("Proxy stopped (exit code %s)", handle.returncode)

            if self._exit_task is not None:
                await self._exit_task
            self._clear()
            self._set_state(ProxyState.STOPPED)

    async def shutdown(self) -> None:
        """Tear the proxy down when the host application exits."""
        await self.stop()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _on_marker_observed(self, cycle: int) -> None:
        """Readiness callback from the output monitor."""
        if cycle != self._cycle or self._state != ProxyState.STARTING:
            return
        self._set_state(ProxyState.RUNNING)
        if self._ready is not None:
            self._ready.set()
        logger.info("Proxy is ready")

    async def _watch_exit(
        self,
        handle: ProxyProcessHandle,
        monitor: OutputStreamMonitor,
        cycle: int,
    ) -> None:
        """Reap the process and drain its output; report exits nobody asked for."""
        returncode = await handle.wait()
        await monitor.join(timeout=self.stop_timeout)

        if cycle != self._cycle or self._state == ProxyState.STOPPING:
            return
        if self._state in (ProxyState.STARTING, ProxyState.RUNNING):
            logger.warning("Proxy exited unexpectedly with code %s", returncode)
            self._clear()
            self._set_state(ProxyState.STOPPED)

    def _clear(self) -> None:
        self._handle = None
        self._monitor = None
        self._exit_task = None
        self._ready = None

    def _set_state(self, state: ProxyState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.debug("Proxy state %s -> %s", previous.value, state.value)
        if self.events is not None:
            self.events.publish({"type": "proxy_state", "state": state.value, "pid": self.pid})
        for callback in self._listeners:
            try:
                callback(state)
            except Exception as e:
                logger.warning("State callback error: %s", e)
