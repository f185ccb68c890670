# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Downloader

Streams an update payload to disk, reporting progress in fixed percentage
steps when the server announces a content length.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiohttp

from . import __version__
from .errors import NetworkError, UpdateIOError

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 8192
PROGRESS_STEP = 5


@dataclass(frozen=True)
class DownloadProgress:
    """Snapshot of a running download."""
    bytes_read: int
    total_bytes: int
    percent_complete: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bytes_read": self.bytes_read,
            "total_bytes": self.total_bytes,
            "percent_complete": self.percent_complete,
        }


class Downloader:
    """
    HTTP downloader for update binaries.

    Partial files are left in place when a transfer fails; the next
    attempt overwrites them.
    """

    def __init__(
        self,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        chunk_size: int = DOWNLOAD_CHUNK_SIZE,
        progress_step: int = PROGRESS_STEP,
    ):
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size
        self.progress_step = progress_step

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.connect_timeout,
            sock_read=self.read_timeout,
        )

    async def download(
        self,
        url: str,
        destination: Path,
        on_progress: Optional[Callable[[DownloadProgress], None]] = None,
    ) -> Path:
        """
        Download ``url`` to ``destination``.

        Args:
            url: Payload URL
            destination: File to create or overwrite
            on_progress: Called at each progress_step crossing (known length only)

        Returns:
            The destination path.

        Raises:
            NetworkError: Connection failure, timeout, or non-2xx status
            UpdateIOError: Local write failure
        """
        destination = Path(destination)
        logger.info("Downloading update from: %s", url)
        headers = {"User-Agent": f"proxylaunch/{__version__}"}

        try:
            # Raw bytes: Content-Length must match what lands on disk
            async with aiohttp.ClientSession(timeout=self._timeout(), auto_decompress=False) as session:
                async with session.get(url, headers=headers) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise NetworkError(
                            f"Download server returned code {resp.status}",
                            status=resp.status,
                        )

                    total_size = resp.content_length or 0
                    if total_size > 0:
                        downloaded = await self._copy_with_progress(resp, destination, total_size, on_progress)
                        if downloaded != total_size:
                            raise NetworkError(
                                f"Transfer incomplete: received {downloaded} of {total_size} bytes"
                            )
                    else:
                        downloaded = await self._copy(resp, destination)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Download failed: %s", e)
            raise NetworkError(f"Failed to download update: {e or type(e).__name__}") from e
        except OSError as e:
            logger.error("Download failed: %s", e)
            raise UpdateIOError(f"Failed to write {destination}: {e}") from e

        logger.info(
            "Downloaded %s (%.1f MB)",
            destination.name,
            downloaded / (1024 * 1024),
        )
        return destination

    async def _copy(self, resp: aiohttp.ClientResponse, destination: Path) -> int:
        downloaded = 0
        with open(destination, "wb") as f:
            async for chunk in resp.content.iter_chunked(self.chunk_size):
                f.write(chunk)
                downloaded += len(chunk)
        return downloaded

    async def _copy_with_progress(
        self,
        resp: aiohttp.ClientResponse,
        destination: Path,
        total_size: int,
        on_progress: Optional[Callable[[DownloadProgress], None]],
    ) -> int:
        downloaded = 0
        last_reported = 0
        with open(destination, "wb") as f:
            async for chunk in resp.content.iter_chunked(self.chunk_size):
                f.write(chunk)
                downloaded += len(chunk)

                percent = min(downloaded * 100 // total_size, 100)
                if percent >= last_reported + self.progress_step:
                    last_reported = percent
                    if on_progress is not None:
                        self._notify(on_progress, DownloadProgress(downloaded, total_size, percent))
        return downloaded

    @staticmethod
    def _notify(callback: Callable[[DownloadProgress], None], progress: DownloadProgress) -> None:
        try:
            callback(progress)
        except Exception as e:
            logger.warning("Progress callback error: %s", e)
