# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2025 The proxylaunch Authors

"""Writes the flag file read by the proxy addon script."""

import json
import logging
from pathlib import Path
from typing import Dict

from .config import AddonFlagsConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Addon keys, in the order the addon documents them
FLAG_KEYS = {
    "enableAllSkins": "enable_all_skins",
    "enableAllBackblings": "enable_all_backblings",
    "enableAllPickaxes": "enable_all_pickaxes",
    "enableAllEmotes": "enable_all_emotes",
    "enableAllWraps": "enable_all_wraps",
}


def addon_flags(settings: AddonFlagsConfig) -> Dict[str, bool]:
    """Map settings onto the addon's JSON keys."""
    return {key: bool(getattr(settings, attr)) for key, attr in FLAG_KEYS.items()}


class ProxyConfigWriter:
    """Serializes addon flags into ``<base_directory>/<file_name>``."""

    def __init__(self, settings: AddonFlagsConfig, base_directory: Path):
        self.settings = settings
        self.path = Path(base_directory) / settings.file_name

    def write(self) -> Path:
        """
        Write the flag file atomically.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        data = addon_flags(self.settings)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            temp_path.replace(self.path)
        except OSError as e:
            raise ConfigurationError(f"Failed to write addon config {self.path}: {e}") from e

        logger.info("Config written to %s", self.path)
        return self.path
