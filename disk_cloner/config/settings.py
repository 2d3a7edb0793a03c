"""Settings storage for clone/resize tuning knobs."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DISK_CLONER_SETTINGS_PATH",
        Path.home() / ".config" / "disk-cloner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_CONNECT_ATTEMPTS = 3
DEFAULT_CONNECT_RETRY_DELAY = 2
DEFAULT_DISCONNECT_ATTEMPTS = 3
DEFAULT_DISCONNECT_RETRY_DELAY = 1
DEFAULT_PARTITION_WAIT_ATTEMPTS = 10
DEFAULT_PARTITION_WAIT_DELAY = 1
DEFAULT_NBD_SLOT_COUNT = 16

DEFAULT_SETTINGS: dict[str, Any] = {
    "dry_run": False,
    "connect_attempts": DEFAULT_CONNECT_ATTEMPTS,
    "connect_retry_delay": DEFAULT_CONNECT_RETRY_DELAY,
    "disconnect_attempts": DEFAULT_DISCONNECT_ATTEMPTS,
    "disconnect_retry_delay": DEFAULT_DISCONNECT_RETRY_DELAY,
    "partition_wait_attempts": DEFAULT_PARTITION_WAIT_ATTEMPTS,
    "partition_wait_delay": DEFAULT_PARTITION_WAIT_DELAY,
    "nbd_max_part": 16,
    "nbd_slot_count": DEFAULT_NBD_SLOT_COUNT,
    "lock_dir": "/run/lock/disk-cloner",
    "block_copy_size": "1M",
    "block_copy_fallback_size": "512K",
    "default_image_format": "qcow2",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    if default is None:
        default = DEFAULT_SETTINGS.get(key)
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int | None = None) -> int:
    """Read an integer setting, falling back to the default on bad values."""
    fallback = default if default is not None else DEFAULT_SETTINGS.get(key, 0)
    value = get_setting(key, fallback)
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(fallback)


load_settings()
