# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""
proxylaunch Configuration Module

Handles loading and managing launcher configuration from YAML files.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field

from .log_buffer import LogBufferHandler, get_log_buffer

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_URL = "https://raw.githubusercontent.com/digimine9/CRMPlus/main/crmplus.json"
DEFAULT_READINESS_MARKER = "Proxy server started"


class ServerConfig(BaseModel):
    """Control API settings."""
    host: str = Field(default="127.0.0.1", description="Control API bind address")
    port: int = Field(default=8765, description="Control API port")


class ProxyConfig(BaseModel):
    """Intercepting proxy (mitmproxy) settings."""
    executable: Path = Field(default=Path("mitmdump"), description="Proxy tool path, or a bare name looked up on PATH")
    script: Path = Field(default=Path("./proxy/proxy_script.py"), description="Addon script passed with -s")
    base_directory: Path = Field(default=Path("."), description="Working directory of the proxy process")
    extra_args: List[str] = Field(default_factory=lambda: ["--set", "block_global=false"], description="Additional proxy arguments")
    listen_host: str = Field(default="localhost", description="Host the proxy listens on")
    listen_port: int = Field(default=8080, ge=1, le=65535, description="Port the proxy listens on")
    readiness_marker: str = Field(default=DEFAULT_READINESS_MARKER, description="Stdout text that signals the proxy is ready")
    ready_timeout: float = Field(default=10.0, gt=0, description="Seconds to wait for the readiness marker")
    stop_timeout: float = Field(default=5.0, gt=0, description="Seconds to wait for a graceful stop before killing")


class LaunchSettings(BaseModel):
    """Target application settings."""
    target_executable: Path = Field(
        default=Path("C:/Program Files/Epic Games/Fortnite/FortniteGame/Binaries/Win64/FortniteLauncher.exe"),
        description="Application launched behind the proxy",
    )
    no_proxy: List[str] = Field(default_factory=lambda: ["127.0.0.1", "localhost"], description="Hosts excluded from proxying")


class AddonFlagsConfig(BaseModel):
    """Flags written to the addon's config.json before the proxy starts."""
    enable_all_skins: bool = Field(default=True)
    enable_all_backblings: bool = Field(default=True)
    enable_all_pickaxes: bool = Field(default=True)
    enable_all_emotes: bool = Field(default=True)
    enable_all_wraps: bool = Field(default=True)
    file_name: str = Field(default="config.json", description="File name inside the proxy base directory")


class UpdatesConfig(BaseModel):
    """Self-update settings."""
    manifest_url: str = Field(default=DEFAULT_MANIFEST_URL, description="Remote version manifest")
    check_on_startup: bool = Field(default=True, description="Check for updates when the service starts")
    connect_timeout: float = Field(default=5.0, gt=0, description="Connect timeout in seconds")
    read_timeout: float = Field(default=5.0, gt=0, description="Manifest read timeout in seconds")
    download_read_timeout: float = Field(default=30.0, gt=0, description="Download read timeout in seconds")
    chunk_size: int = Field(default=8192, ge=1024, description="Download chunk size in bytes")
    progress_step: int = Field(default=5, ge=1, le=100, description="Percentage points between progress reports")
    restart_delay: int = Field(default=3, ge=1, description="Seconds the restart script waits before swapping binaries")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level (WARNING, INFO, DEBUG)")
    file: Optional[Path] = Field(default=None, description="Log file path (null = console only)")
    max_size_mb: int = Field(default=10, description="Max log file size in MB")
    backup_count: int = Field(default=3, description="Number of backup log files")
    buffer_lines: int = Field(default=500, ge=10, description="Log lines kept in memory for the control API")


class Config(BaseModel):
    """Main configuration container."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    launch: LaunchSettings = Field(default_factory=LaunchSettings)
    addon_flags: AddonFlagsConfig = Field(default_factory=AddonFlagsConfig)
    updates: UpdatesConfig = Field(default_factory=UpdatesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: Optional[str] = None) -> Config:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file. If None, uses PROXYLAUNCH_CONFIG env var
              or defaults to ./config.yaml

    Returns:
        Config object with loaded settings
    """
    if path is None:
        path = os.environ.get("PROXYLAUNCH_CONFIG", "./config.yaml")

    config_path = Path(path)

    if config_path.exists():
        logger.info("Loading configuration from: %s", config_path)
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}

            return Config(
                server=ServerConfig(**data.get("server", {})),
                proxy=ProxyConfig(**data.get("proxy", {})),
                launch=LaunchSettings(**data.get("launch", {})),
                addon_flags=AddonFlagsConfig(**data.get("addon_flags", {})),
                updates=UpdatesConfig(**data.get("updates", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except Exception as e:
            logger.warning("Failed to load config file: %s. Using defaults.", e)
            return Config()
    else:
        logger.info("Config file not found at %s. Using defaults.", config_path)
        return Config()


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure logging based on configuration.

    Args:
        config: Logging configuration settings
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    # Console plus the in-memory buffer read by the control API
    buffer = get_log_buffer()
    buffer.resize(config.buffer_lines)
    handlers = [logging.StreamHandler(), LogBufferHandler(buffer)]

    if config.file:
        try:
            config.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.handlers.RotatingFileHandler(
                config.file,
                maxBytes=config.max_size_mb * 1024 * 1024,
                backupCount=config.backup_count,
                encoding="utf-8",
            ))
        except Exception as e:
            # If file logging fails, continue with console-only logging
            print(f"Warning: Could not setup file logging: {e}", file=sys.stderr)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers
    )

    logging.getLogger("uvicorn").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)

    if config.file:
        logger.info("Logging configured: level=%s, file=%s", config.level, config.file)
    else:
        logger.info("Logging configured: level=%s (console only)", config.level)


# Global config instance - loaded on import
config = load_config()
