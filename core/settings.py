"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
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
    """Return an OS-specific user data directory for ``app_name``.

    ``PLATEMATE_DATA_DIR`` wins over the platform default.
    """

    platform_id = (platform or sys.platform).lower()
    environ = dict(env if env is not None else os.environ)
    override = environ.get("PLATEMATE_DATA_DIR")
    if override:
        return Path(override).expanduser()

    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "PlateMate"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"

for _dir in (DATA_DIR, LOG_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "offline.db"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class LogSettings:
    path: Path = SYNC_LOG_PATH
    level: str = os.environ.get("PLATEMATE_LOG_LEVEL", "INFO")
    max_bytes: int = 1_000_000
    backup_count: int = 3


LOGGING = LogSettings()


@dataclass(frozen=True)
class ApiSettings:
    base_url: str = os.environ.get("PLATEMATE_API_URL", "https://platemate-api.onrender.com")
    diary_path: str = "/api/diary"
    analyze_path: str = "/api/analyze"
    health_path: str = "/"
    request_timeout_sec: float = 30.0


API = ApiSettings()


@dataclass(frozen=True)
class OfflineSyncSettings:
    queue_storage_key: str = "platemate_offline_queue"
    max_retries: int = 3
    max_listeners: int = 64
    reachability_interval_sec: int = 15
    resource_families: Mapping[str, str] = field(
        default_factory=lambda: {
            "diary": API.diary_path,
            "analysis": API.analyze_path,
        }
    )


OFFLINE_SYNC = OfflineSyncSettings()


@dataclass(frozen=True)
class InvalidationSettings:
    batch_delay_sec: float = 0.5


INVALIDATION = InvalidationSettings()


def build_api_url(path: str, base_url: Optional[str] = None) -> str:
    """Join ``path`` onto the API base URL; an empty base keeps it relative."""

    base = API.base_url if base_url is None else base_url
    normalized = path if path.startswith("/") else f"/{path}"
    return f"{base.rstrip('/')}{normalized}"


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "DB_PATH",
    "SYNC_LOG_PATH",
    "LOGGING",
    "API",
    "OFFLINE_SYNC",
    "INVALIDATION",
    "build_api_url",
    "get_default_data_dir",
]
