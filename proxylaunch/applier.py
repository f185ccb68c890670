# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Update Applier

A running binary cannot overwrite itself, so the update is finished by a
small script started just before we exit:

  1. wait a few seconds for this process to go away
  2. delete the old executable
  3. rename the downloaded "<name>_new" file to the old name
  4. start it again
  5. delete the script

Only frozen builds (a single executable) can be swapped this way. When
running from source the new file is left where it was downloaded and the
user replaces the binary by hand.
"""

import asyncio
import logging
import os
import shlex
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from .errors import UpdateIOError
from .launcher import spawn_detached

logger = logging.getLogger(__name__)

NEW_SUFFIX = "_new"
DEFAULT_EXECUTABLE_NAME = "proxylaunch.exe" if os.name == "nt" else "proxylaunch"

WINDOWS = "windows"
POSIX = "posix"


def new_executable_name(name: str) -> str:
    """``app.exe`` -> ``app_new.exe``; ``app`` -> ``app_new``."""
    stem, dot, extension = name.rpartition(".")
    if dot and stem:
        return f"{stem}{NEW_SUFFIX}.{extension}"
    return f"{name}{NEW_SUFFIX}"


def current_executable() -> Optional[Path]:
    """The running binary for frozen builds, None when running from source."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    return None


def current_platform() -> Optional[str]:
    if os.name == "nt":
        return WINDOWS
    if os.name == "posix":
        return POSIX
    return None


def render_windows_script(current: Path, new: Path, delay: int) -> str:
    lines = [
        "@echo off",
        f"echo Updating {current.stem}...",
        # ping waits roughly one second per echo after the first
        f"ping -n {delay + 1} 127.0.0.1 > nul",
        f'if exist "{current}" (',
        f'    del "{current}"',
        ")",
        f'if exist "{new}" (',
        f'    rename "{new}" "{current.name}"',
        f'    start "" "{current}"',
        ")",
        'del "%~f0"',
    ]
    return "\r\n".join(lines) + "\r\n"


def render_posix_script(current: Path, new: Path, delay: int) -> str:
    cur = shlex.quote(str(current))
    nxt = shlex.quote(str(new))
    lines = [
        "#!/bin/sh",
        f"sleep {delay}",
        f"if [ -f {cur} ]; then",
        f"    rm -f {cur}",
        "fi",
        f"if [ -f {nxt} ]; then",
        f"    mv {nxt} {cur}",
        f"    chmod +x {cur}",
        f"    nohup {cur} >/dev/null 2>&1 &",
        "fi",
        'rm -f "$0"',
    ]
    return "\n".join(lines) + "\n"


@dataclass(frozen=True)
class UpdateScript:
    """Restart script written for one update."""
    path: Path
    content: str
    platform: str
    current_executable: Path
    new_executable: Path


def _terminate_self() -> None:
    # SIGTERM lets the server shut down cleanly and stop the proxy
    os.kill(os.getpid(), signal.SIGTERM)


class UpdateApplier:
    """Names the replacement binary, writes the restart script, hands off."""

    def __init__(
        self,
        executable: Optional[Path] = None,
        platform_name: Optional[str] = None,
        restart_delay: int = 3,
        terminate: Callable[[], None] = _terminate_self,
    ):
        self.executable = Path(executable) if executable is not None else current_executable()
        self.platform_name = platform_name if platform_name is not None else current_platform()
        self.restart_delay = restart_delay
        self._terminate = terminate

    @property
    def supports_self_replace(self) -> bool:
        return self.executable is not None and self.platform_name in (WINDOWS, POSIX)

    def new_executable_path(self) -> Path:
        """Where the downloaded binary goes: next to the current one."""
        if self.executable is not None:
            return self.executable.with_name(new_executable_name(self.executable.name))
        return Path.cwd() / new_executable_name(DEFAULT_EXECUTABLE_NAME)

    def build_script(self, downloaded_path: Path, current: Optional[Path] = None) -> UpdateScript:
        current = Path(current) if current is not None else self.executable
        if current is None:
            raise ValueError("No current executable to replace")
        downloaded_path = Path(downloaded_path)

        if self.platform_name == WINDOWS:
            content = render_windows_script(current, downloaded_path, self.restart_delay)
            path = current.with_name(f"update_{current.stem}.bat")
        else:
            content = render_posix_script(current, downloaded_path, self.restart_delay)
            path = current.with_name(f"update_{current.stem}.sh")

        return UpdateScript(
            path=path,
            content=content,
            platform=self.platform_name,
            current_executable=current,
            new_executable=downloaded_path,
        )

    def apply(self, downloaded_path: Path, current: Optional[Path] = None) -> Optional[UpdateScript]:
        """
        Prepare the swap of ``current`` (default: the running binary) for ``downloaded_path``.

        Returns:
            The written UpdateScript, or None when the binary must be
            replaced manually.

        Raises:
            UpdateIOError: The script could not be written
        """
        if current is None and not self.supports_self_replace:
            logger.info(
                "Automatic replacement not available; new version saved to %s",
                downloaded_path,
            )
            return None

        script = self.build_script(downloaded_path, current)
        try:
            # newline="" keeps the CRLF endings cmd.exe expects
            with open(script.path, "w", encoding="utf-8", newline="") as f:
                f.write(script.content)
            if script.platform == POSIX:
                script.path.chmod(0o755)
        except OSError as e:
            logger.error("Failed to create update script: %s", e)
            raise UpdateIOError(f"Failed to create update script {script.path}: {e}") from e

        logger.info("Created update script: %s", script.path)
        return script

    async def restart(self, script: UpdateScript) -> None:
        """
        Start the update script and terminate this process.

        Raises:
            UpdateIOError: The script could not be started
        """
        if script.platform == WINDOWS:
            command = ["cmd", "/c", "start", "", str(script.path)]
        else:
            command = ["/bin/sh", str(script.path)]

        try:
            await asyncio.to_thread(spawn_detached, command, None, script.path.parent)
        except OSError as e:
            logger.error("Failed to execute update script: %s", e)
            raise UpdateIOError(f"Failed to execute update script: {e}") from e

        logger.info("Restarting to complete the update...")
        self._terminate()
