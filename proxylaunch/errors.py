# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch error types.

Configuration problems, process failures, and update failures are kept
apart so callers can tell a missing file from a broken spawn or a flaky
network.
"""

from pathlib import Path
from typing import Optional, Union


class ProxyLaunchError(Exception):
    """Base class for all proxylaunch errors."""
    pass


class ConfigurationError(ProxyLaunchError):
    """A required file or setting is missing or invalid. Not retried."""
    pass


class ExecutableNotFoundError(ConfigurationError):
    """The proxy executable does not exist on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(f"Executable not found at {self.path}")


class ScriptNotFound(ConfigurationError):
    """The proxy addon script does not exist on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(f"Proxy script not found at {self.path}")


class TargetNotFound(ConfigurationError):
    """The target application does not exist on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        super().__init__(f"Target application not found at {self.path}")


class ProcessStartError(ProxyLaunchError):
    """The OS refused to spawn a process."""
    pass


class ProxyUnavailable(ProxyLaunchError):
    """The proxy did not become ready within the grace period."""
    pass


class StreamReadError(ProxyLaunchError):
    """Reading a child's output stream failed."""

    def __init__(self, channel: str, cause: BaseException):
        self.channel = channel
        self.cause = cause
        super().__init__(f"Proxy {channel} stream error: {cause}")


class NetworkError(ProxyLaunchError):
    """Timeout, connection failure, or unexpected HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ParseError(ProxyLaunchError):
    """The update manifest could not be parsed."""
    pass


class UpdateIOError(ProxyLaunchError):
    """Writing a downloaded payload or restart script failed."""
    pass
