"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return base.expanduser() / sanitized


APP_NAME = "SpareTime"


DATA_DIR = Path(os.environ.get("SPARETIME_DATA_DIR") or get_default_data_dir(APP_NAME))
SECRETS_DIR = DATA_DIR / "secrets"
LOG_DIR = DATA_DIR / "logs"

DB_PATH = DATA_DIR / "sparetime.db"
DEVICE_SECRET_PATH = SECRETS_DIR / "device_secret"
CLIENT_SECRET_PATH = SECRETS_DIR / "client_secret.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class DriveSyncSettings:
    backup_file_name: str = "sparetime-backup.json"
    backup_version: int = 2
    scopes: tuple[str, ...] = ("https://www.googleapis.com/auth/drive.appdata",)
    revoke_url: str = "https://oauth2.googleapis.com/revoke"
    poll_interval_sec: int = 5 * 60
    debounce_sec: float = 2.0
    max_retries: int = 5
    initial_backoff_sec: float = 1.0
    max_backoff_sec: float = 32.0
    kdf_iterations: int = 600_000
    auth_timeout_sec: int = 300
    network_probe_host: str = "www.googleapis.com"
    network_probe_port: int = 443
    network_probe_interval_sec: int = 15


DRIVE_SYNC = DriveSyncSettings()


@dataclass(frozen=True)
class RetentionSettings:
    deleted_task_days: int = 30


RETENTION = RetentionSettings()


@dataclass(frozen=True)
class LoggingSettings:
    path: Path = SYNC_LOG_PATH
    max_bytes: int = 1_000_000
    backup_count: int = 3
    level: str = os.environ.get("SPARETIME_LOG_LEVEL", "INFO")


LOGGING = LoggingSettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "SECRETS_DIR",
    "LOG_DIR",
    "DB_PATH",
    "DEVICE_SECRET_PATH",
    "CLIENT_SECRET_PATH",
    "SYNC_LOG_PATH",
    "DRIVE_SYNC",
    "RETENTION",
    "LOGGING",
    "DriveSyncSettings",
    "get_default_data_dir",
]
