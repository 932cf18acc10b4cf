"""Platform-aware path utilities for Vectra.

Provides a single source of truth for config, storage, and log paths so
Windows hosts can map to APPDATA/LOCALAPPDATA while Unix-like platforms
continue to use XDG-style defaults.
"""
from __future__ import annotations

import os
import platform
from pathlib import Path


def _is_windows() -> bool:
    return platform.system().lower().startswith("windows")


def get_config_root() -> Path:
    """Return the base configuration directory.

    Environment overrides (VECTRA_CONFIG_DIR) take precedence. On Windows we
    align with %APPDATA%\\Vectra\\config; otherwise ~/.config/vectra is used.
    """

    override = os.environ.get("VECTRA_CONFIG_DIR")
    if override:
        return Path(override).expanduser()

    if _is_windows():
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "Vectra" / "config"

    return Path.home() / ".config" / "vectra"


def get_config_file() -> Path:
    """Return the service configuration file path."""

    override = os.environ.get("VECTRA_CONFIG_FILE")
    if override:
        return Path(override).expanduser()
    return get_config_root() / "config.yaml"


def get_storage_root() -> Path:
    """Return the directory holding the JSON collections of the catalog store."""

    override = os.environ.get("VECTRA_STORAGE_DIR")
    if override:
        return Path(override).expanduser()

    if _is_windows():
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / "Vectra" / "data"

    return Path.home() / ".local" / "share" / "vectra"


def get_log_path() -> Path:
    """Return the primary server log path."""

    override = os.environ.get("VECTRA_LOG_PATH")
    if override:
        return Path(override).expanduser()

    if _is_windows():
        local_appdata = os.environ.get("LOCALAPPDATA")
        if local_appdata:
            return Path(local_appdata) / "Vectra" / "logs" / "server.log"

    return get_config_root() / "server.log"


def ensure_file_path(path: Path) -> Path:
    """Ensure the parent directory exists and the file is present."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    return path
