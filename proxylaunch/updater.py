# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Update Manager

Self-update from a small JSON manifest published next to the releases.

Update flow:
  1. Fetch the manifest and compare its version with the running one
  2. Major update: point the user at the download page
  3. Minor update: ask, then download the new binary next to the old one
  4. Write a restart script that swaps the binaries
  5. Ask again, then run the script and exit

Every step that needs a decision goes through the EventBus as a
notification; nothing here blocks on the user.

Manifest format:
  {"version": "1.4", "majorUpdate": false,
   "downloadUrl": "https://.../proxylaunch.exe", "patchNotes": "..."}
"""

import asyncio
import json
import logging
import webbrowser
from typing import Awaitable, Callable, Optional, Set, Tuple

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__
from .applier import UpdateApplier
from .downloader import Downloader, DownloadProgress
from .errors import NetworkError, ParseError, ProxyLaunchError
from .events import EventBus, Notification, NotificationKind, StatusLevel

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

ACTION_VISIT = "visit_download_page"
ACTION_INSTALL = "install"
ACTION_RESTART = "restart"
ACTION_DISMISS = "dismiss"
ACTION_LATER = "later"
ACTION_OK = "ok"


# =============================================================================
# DATA MODELS
# =============================================================================

class UpdateManifest(BaseModel):
    """Remote description of the latest release."""
    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(..., min_length=1, description="Release version, dot separated")
    major_update: bool = Field(..., alias="majorUpdate", description="Requires a fresh install")
    download_url: str = Field(..., alias="downloadUrl", min_length=1, description="Binary or download page")
    patch_notes: str = Field(default="", alias="patchNotes", description="Shown to the user")


# =============================================================================
# VERSION COMPARISON
# =============================================================================

def parse_version(version_str: str) -> Tuple[int, ...]:
    """Parse a dot separated version into a tuple of ints.

    Only ASCII digits are accepted in each component; anything else
    ("1.3b", "v1.3", "") raises ValueError.
    """
    parts = []
    for part in version_str.strip().split("."):
        if not part or not part.isascii() or not part.isdigit():
            raise ValueError(f"Invalid version component {part!r} in {version_str!r}")
        parts.append(int(part))
    return tuple(parts)


def is_newer_version(current: str, candidate: str) -> bool:
    """Check if ``candidate`` is newer than ``current``.

    Shorter versions are zero-padded ("1.3" == "1.3.0"). When either side
    does not parse, falls back to plain string comparison.
    """
    try:
        cur = parse_version(current)
        cand = parse_version(candidate)
    except ValueError as e:
        logger.warning("Invalid version format: %s", e)
        return candidate != current and candidate > current

    width = max(len(cur), len(cand))
    cur += (0,) * (width - len(cur))
    cand += (0,) * (width - len(cand))
    return cand > cur


def format_update_message(manifest: UpdateManifest, question: str, major: bool = False) -> str:
    kind = "major update" if major else "update"
    message = f"A new {kind} (v{manifest.version}) is available!\n\n"
    if manifest.patch_notes:
        message += f"What's new:\n{manifest.patch_notes}\n\n"
    return message + question


# =============================================================================
# UPDATE CHECKER
# =============================================================================

class UpdateChecker:
    """Fetches the manifest and decides whether it describes a newer release."""

    def __init__(
        self,
        url: str,
        current_version: str = __version__,
        connect_timeout: float = 5.0,
        read_timeout: float = 5.0,
    ):
        self.url = url
        self.current_version = current_version
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

    def _get_headers(self):
        return {
            "Accept": "application/json",
            "User-Agent": f"proxylaunch/{self.current_version}",
        }

    async def fetch_manifest(self) -> Optional[UpdateManifest]:
        """
        GET the manifest.

        Returns:
            The parsed manifest, or None when the server answers with
            anything but 200.

        Raises:
            NetworkError: Connection failure or timeout
            ParseError: Body is not valid UTF-8 JSON or misses required fields
        """
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.url, headers=self._get_headers()) as resp:
                    logger.info("Update server response code: %d", resp.status)
                    if resp.status != 200:
                        logger.error("Update server returned code %d", resp.status)
                        return None
                    body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Connection to update server failed: %s", e or type(e).__name__)
            raise NetworkError(f"Connection to update server failed: {e or type(e).__name__}") from e

        try:
            manifest = UpdateManifest.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            logger.error("Failed to parse update info: %s", e)
            raise ParseError(f"Failed to parse update info: {e}") from e

        logger.info(
            "Update info parsed: v%s (Major update: %s)",
            manifest.version, manifest.major_update,
        )
        return manifest

    async def check_for_updates(self) -> Optional[UpdateManifest]:
        """
        Returns the manifest when it is newer than the running version.

        Raises:
            NetworkError, ParseError: see fetch_manifest()
        """
        logger.info("Checking for updates (current version: %s)...", self.current_version)
        manifest = await self.fetch_manifest()
        if manifest is None:
            return None

        if not is_newer_version(self.current_version, manifest.version):
            logger.info("proxylaunch is up to date (v%s)", self.current_version)
            return None
        return manifest


# =============================================================================
# UPDATE MANAGER
# =============================================================================

class UpdateManager:
    """Runs update checks and drives the install pipeline.

    Usage:
        manager = UpdateManager(checker, Downloader(), UpdateApplier(), events)
        await manager.run_check()
        # the user answers the notification through events.respond()
    """

    def __init__(
        self,
        checker: UpdateChecker,
        downloader: Downloader,
        applier: UpdateApplier,
        events: EventBus,
        before_restart: Optional[Callable[[], Awaitable[None]]] = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
    ):
        self.checker = checker
        self.downloader = downloader
        self.applier = applier
        self.events = events
        self.before_restart = before_restart
        self._open_browser = open_browser

        self._install_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self.last_notification: Optional[Notification] = None

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def update_in_progress(self) -> bool:
        return self._install_lock.locked()

    async def run_check(self) -> Optional[UpdateManifest]:
        """Check once and notify the user. Never raises on network or parse errors."""
        try:
            manifest = await self.checker.check_for_updates()
        except (NetworkError, ParseError) as e:
            logger.error("Update check failed: %s", e)
            return None

        if manifest is None:
            return None

        if manifest.major_update:
            self._offer_major_update(manifest)
        else:
            self._offer_update(manifest)
        return manifest

    async def install_update(self, manifest: UpdateManifest) -> None:
        """
        Download and stage ``manifest``'s binary.

        Failures end up in the log, the status line and an error
        notification.

        Raises:
            RuntimeError: Another install is already running
        """
        if self._install_lock.locked():
            raise RuntimeError("An update is already in progress")

        async with self._install_lock:
            self.events.set_status("Downloading update...", StatusLevel.BUSY)
            destination = self.applier.new_executable_path()
            try:
                path = await self.downloader.download(
                    manifest.download_url,
                    destination,
                    on_progress=self._report_progress,
                )
                logger.info("Update downloaded successfully to %s", path.resolve())
                script = self.applier.apply(path)
            except ProxyLaunchError as e:
                logger.error("Failed to download update: %s", e)
                self.events.set_status("Update failed", StatusLevel.ERROR)
                self.events.notify(
                    NotificationKind.ERROR,
                    "Update Failed",
                    f"Failed to download update: {e}",
                    actions=[ACTION_OK],
                )
                return

            self.events.set_status("Update downloaded!", StatusLevel.OK)

            if script is None:
                self.events.notify(
                    NotificationKind.UPDATE_MANUAL,
                    "Update Downloaded",
                    f"Version {manifest.version} was saved to {path.resolve()}.\n\n"
                    "Close proxylaunch and replace the current executable with it.",
                    actions=[ACTION_OK],
                )
                return

            notification = self.events.notify(
                NotificationKind.UPDATE_READY,
                "Update Ready",
                "Update downloaded. proxylaunch needs to restart to apply it.\n\n"
                "Restart now?",
                actions=[ACTION_RESTART, ACTION_LATER],
            )
            self._spawn(self._await_restart(notification, script), "update-restart")

    async def close(self) -> None:
        """Cancel background tasks still waiting for an answer."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def _offer_major_update(self, manifest: UpdateManifest) -> None:
        logger.info("Major update available: v%s", manifest.version)
        notification = self.events.notify(
            NotificationKind.MAJOR_UPDATE,
            "Major Update Available",
            format_update_message(manifest, "Would you like to visit the download page?", major=True),
            actions=[ACTION_VISIT, ACTION_DISMISS],
        )
        self.last_notification = notification
        self._spawn(self._await_visit(notification, manifest), "update-visit")

    def _offer_update(self, manifest: UpdateManifest) -> None:
        logger.info("Minor update available: v%s", manifest.version)
        notification = self.events.notify(
            NotificationKind.UPDATE_AVAILABLE,
            "Update Available",
            format_update_message(manifest, "Would you like to download and install it now?"),
            actions=[ACTION_INSTALL, ACTION_DISMISS],
        )
        self.last_notification = notification
        self._spawn(self._await_install(notification, manifest), "update-install")

    async def _await_visit(self, notification: Notification, manifest: UpdateManifest) -> None:
        if await self.events.wait_for_response(notification) != ACTION_VISIT:
            return
        await self.open_download_page(manifest.download_url)

    async def _await_install(self, notification: Notification, manifest: UpdateManifest) -> None:
        if await self.events.wait_for_response(notification) != ACTION_INSTALL:
            return
        try:
            await self.install_update(manifest)
        except RuntimeError as e:
            logger.warning("%s", e)

    async def _await_restart(self, notification: Notification, script) -> None:
        if await self.events.wait_for_response(notification) != ACTION_RESTART:
            logger.info("Update will be applied on the next manual restart")
            return

        if self.before_restart is not None:
            try:
                await self.before_restart()
            except Exception as e:
                logger.warning("Pre-restart cleanup failed: %s", e)

        try:
            await self.applier.restart(script)
        except ProxyLaunchError as e:
            self.events.set_status("Update failed", StatusLevel.ERROR)
            self.events.notify(
                NotificationKind.ERROR,
                "Update Failed",
                f"Failed to apply update: {e}",
                actions=[ACTION_OK],
            )

    async def open_download_page(self, url: str) -> bool:
        """Hand ``url`` to the system browser; notify with the URL when that fails."""
        try:
            opened = await asyncio.to_thread(self._open_browser, url)
        except Exception as e:
            logger.error("Failed to open download URL: %s", e)
            opened = False

        if not opened:
            self.events.notify(
                NotificationKind.ERROR,
                "Error",
                f"Failed to open download page. Please visit:\n{url}",
                actions=[ACTION_OK],
            )
        return bool(opened)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _report_progress(self, progress: DownloadProgress) -> None:
        self.events.set_status(f"Downloading: {progress.percent_complete}%", StatusLevel.BUSY)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
