# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Launch Coordinator

Makes sure the proxy is up, then starts the target application with its
HTTP and HTTPS traffic pointed at it. The target is fire-and-forget: no
output capture, no handle kept.
"""

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .config import LaunchSettings, ProxyConfig
from .errors import (
    ProcessStartError,
    ProxyLaunchError,
    ProxyUnavailable,
    ScriptNotFound,
    TargetNotFound,
)
from .events import EventBus, StatusLevel
from .proxy_config import ProxyConfigWriter
from .supervisor import ProcessSupervisor, ProxyState

logger = logging.getLogger(__name__)

# Tool names tried on PATH when the configured executable is not a file
PROXY_TOOL_NAMES = ("mitmdump", "mitmproxy")


@dataclass(frozen=True)
class LaunchConfig:
    """Everything needed to start one target behind the proxy."""
    target_executable_path: Path
    proxy_host: str = "localhost"
    proxy_port: int = 8080
    no_proxy: Tuple[str, ...] = ("127.0.0.1", "localhost")

    @classmethod
    def from_settings(
        cls,
        launch: LaunchSettings,
        proxy: ProxyConfig,
        target: Optional[Path] = None,
    ) -> "LaunchConfig":
        return cls(
            target_executable_path=Path(target) if target else launch.target_executable,
            proxy_host=proxy.listen_host,
            proxy_port=proxy.listen_port,
            no_proxy=tuple(launch.no_proxy),
        )

    @property
    def proxy_url(self) -> str:
        return f"http://{self.proxy_host}:{self.proxy_port}"

    def environment(self, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Child environment: ``base`` (default os.environ) plus the proxy variables."""
        env = dict(os.environ if base is None else base)
        env["http_proxy"] = self.proxy_url
        env["https_proxy"] = self.proxy_url
        env["NO_PROXY"] = ",".join(self.no_proxy)
        return env


@dataclass(frozen=True)
class LaunchResult:
    pid: int
    target: Path


def find_proxy_executable(configured: Path) -> Optional[Path]:
    """
    Locate the proxy tool.

    Searches in priority order:
    1. The configured path, if it is a file
    2. The configured name on PATH
    3. mitmdump / mitmproxy on PATH
    """
    if configured.is_file():
        return configured

    for name in (str(configured), *PROXY_TOOL_NAMES):
        found = shutil.which(name)
        if found:
            return Path(found)
    return None


def spawn_detached(
    command: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[Path] = None,
) -> subprocess.Popen:
    """Start a process that outlives us: no pipes, own session or process group."""
    kwargs = {
        "env": env,
        "cwd": str(cwd) if cwd is not None else None,
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "close_fds": True,
    }
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    return subprocess.Popen(list(command), **kwargs)


class LaunchCoordinator:
    """Starts the proxy on demand and launches targets through it."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        proxy: ProxyConfig,
        config_writer: Optional[ProxyConfigWriter] = None,
        events: Optional[EventBus] = None,
    ):
        self.supervisor = supervisor
        self.proxy = proxy
        self.config_writer = config_writer
        self.events = events or EventBus()

    def check_setup(self) -> Dict[str, bool]:
        """Log whether the proxy tool and addon script are in place."""
        logger.info("Checking setup...")
        script = self.proxy.script
        script_found = script.is_file()
        if script_found:
            logger.info("Proxy script found at %s", script)
        else:
            logger.error("Proxy script not found at %s. Expected: %s", script, script.resolve())

        executable = find_proxy_executable(self.proxy.executable)
        if executable:
            logger.info("Proxy tool found at %s", executable)
        else:
            logger.error("Proxy tool not found at %s", self.proxy.executable)

        return {"proxy_script": script_found, "proxy_executable": executable is not None}

    def proxy_arguments(self) -> Tuple[str, ...]:
        return ("-s", str(self.proxy.script), *self.proxy.extra_args)

    async def ensure_proxy(self) -> None:
        """
        Start the proxy if needed and wait for it to become ready.

        Raises:
            ConfigurationError: proxy tool, addon script or addon config missing
            ProcessStartError: spawn failed
            ProxyUnavailable: not ready within ready_timeout
        """
        if self.supervisor.state == ProxyState.RUNNING:
            return

        if self.supervisor.state == ProxyState.STOPPED:
            logger.info("Starting proxy...")
            script = self.proxy.script
            if not script.is_file():
                logger.error("Proxy script not found at %s. Expected: %s", script, script.resolve())
                raise ScriptNotFound(script)
            if self.config_writer is not None:
                self.config_writer.write()
            executable = find_proxy_executable(self.proxy.executable) or self.proxy.executable
            await self.supervisor.start(
                executable,
                self.proxy_arguments(),
                working_directory=self.proxy.base_directory,
                readiness_marker=self.proxy.readiness_marker,
            )

        if not await self.supervisor.wait_until_ready(self.proxy.ready_timeout):
            raise ProxyUnavailable(
                f"Proxy not ready after {self.proxy.ready_timeout:g}s "
                f"(state: {self.supervisor.state.value})"
            )

    async def launch(self, config: LaunchConfig) -> LaunchResult:
        """
        Launch the target application behind the proxy.

        Raises:
            ProxyUnavailable: proxy did not come up
            TargetNotFound: target executable missing
            ProcessStartError / ConfigurationError: from starting the proxy
        """
        self.events.set_status("Launching...", StatusLevel.BUSY)
        try:
            await self.ensure_proxy()
        except ProxyUnavailable as e:
            logger.error("%s", e)
            self.events.set_status("Proxy Failed", StatusLevel.ERROR)
            raise
        except ProxyLaunchError as e:
            logger.error("Failed to start proxy: %s", e)
            self.events.set_status("Error", StatusLevel.ERROR)
            raise

        target = config.target_executable_path
        if not target.is_file():
            logger.error("Target not found at %s. Expected: %s", target, target.resolve())
            self.events.set_status("Error", StatusLevel.ERROR)
            raise TargetNotFound(target)

        try:
            process = await asyncio.to_thread(spawn_detached, [str(target)], config.environment())
        except OSError as e:
            logger.error("Failed to launch %s: %s", target, e)
            self.events.set_status("Error", StatusLevel.ERROR)
            if isinstance(e, FileNotFoundError):
                raise TargetNotFound(target) from e
            raise ProcessStartError(f"Failed to launch {target}: {e}") from e

        logger.info("%s launched with PID %d via %s", target.name, process.pid, config.proxy_url)
        self.events.set_status("Running", StatusLevel.OK)
        return LaunchResult(pid=process.pid, target=target)

    async def stop_proxy(self) -> None:
        await self.supervisor.stop()
        self.events.set_status("Ready", StatusLevel.OK)
