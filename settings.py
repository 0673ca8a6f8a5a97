"""Settings: JSON file under the cache dir, overlaid by environment."""

from __future__ import annotations

from typing import Any

import json
import logging
import os
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
CACHE_DIR = APP_DIR / ".cache"
SETTINGS_FILE = CACHE_DIR / "settings.json"

_ENV_PREFIX = "RELAY_"

DEFAULTS: dict[str, Any] = {
    "ffmpeg_path": "ffmpeg",
    "uploads_dir": str(APP_DIR / "uploads"),
    "db_path": str(CACHE_DIR / "relay.db"),
    "stop_grace_secs": 5.0,
    "uptime_interval_secs": 1.0,
    "probe_timeout_secs": 10.0,
    "default_rtmp_url": "rtmp://localhost:1935/live",
}


def _coerce(value: str, default: Any) -> Any:
    """Convert an environment string to the type of its default."""
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, float):
        return float(value)
    if isinstance(default, int):
        return int(value)
    return value


def load_settings() -> dict[str, Any]:
    """Load settings: defaults, then settings.json, then RELAY_* env vars."""
    settings = dict(DEFAULTS)
    if SETTINGS_FILE.exists():
        try:
            settings.update(json.loads(SETTINGS_FILE.read_text()))
        except (OSError, json.JSONDecodeError) as e:
            log.warning("Ignoring unreadable settings file %s: %s", SETTINGS_FILE, e)
    for key, default in DEFAULTS.items():
        env_value = os.environ.get(_ENV_PREFIX + key.upper())
        if env_value is None:
            continue
        try:
            settings[key] = _coerce(env_value, default)
        except ValueError:
            log.warning("Ignoring invalid %s%s=%r", _ENV_PREFIX, key.upper(), env_value)
    return settings


def save_settings(updates: dict[str, Any]) -> dict[str, Any]:
    """Persist known keys to settings.json and return the merged settings."""
    unknown = set(updates) - set(DEFAULTS)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
    current: dict[str, Any] = {}
    if SETTINGS_FILE.exists():
        current = json.loads(SETTINGS_FILE.read_text())
    current.update(updates)
    SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_FILE.write_text(json.dumps(current, indent=2))
    return load_settings()
