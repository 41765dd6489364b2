"""Global configuration.

Secrets (bot token, schedule API key) come from the environment, usually a
.env file.  Everything else lives in an optional config.json; sane defaults
are used when the file is absent or a value is unusable.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = BASE_DIR / "config.json"

DEFAULT_SCHEDULE_URL = "https://api.rasp.yandex-net.ru/v3.0/search/"
DEFAULT_TIMEZONE = "Europe/Moscow"

DEFAULTS: dict[str, Any] = {
    "polling_interval_seconds": 10,
    "pollers": 1,
    "max_concurrent_deliveries": 10,
    "delivery_timeout_seconds": 10,
    "session_ttl_minutes": 30,
    "timezone": DEFAULT_TIMEZONE,
    "schedule_base_url": DEFAULT_SCHEDULE_URL,
    "data_dir": "data",
}

# Keys that must hold a positive number
_POSITIVE_KEYS = (
    "polling_interval_seconds",
    "pollers",
    "max_concurrent_deliveries",
    "delivery_timeout_seconds",
)


def load_global_config(path: Path = CONFIG_PATH) -> dict[str, Any]:
    """Read config.json and merge it over the defaults."""
    cfg = dict(DEFAULTS)
    if not path.exists():
        return cfg
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return cfg
    if not isinstance(raw, dict):
        logger.warning("Ignoring %s: top level is not an object", path)
        return cfg

    for key in DEFAULTS:
        if key in raw:
            cfg[key] = raw[key]

    for key in _POSITIVE_KEYS:
        value = cfg[key]
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            logger.warning("Invalid %s=%r, using %r", key, value, DEFAULTS[key])
            cfg[key] = DEFAULTS[key]

    # session_ttl_minutes: 0, false or null disables idle expiry
    ttl = cfg["session_ttl_minutes"]
    if ttl is False or ttl is None or ttl == 0:
        cfg["session_ttl_minutes"] = None
    elif not isinstance(ttl, (int, float)) or ttl < 0:
        logger.warning("Invalid session_ttl_minutes=%r, using %r", ttl, DEFAULTS["session_ttl_minutes"])
        cfg["session_ttl_minutes"] = DEFAULTS["session_ttl_minutes"]

    try:
        ZoneInfo(str(cfg["timezone"]))
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using %s", cfg["timezone"], DEFAULT_TIMEZONE)
        cfg["timezone"] = DEFAULT_TIMEZONE

    return cfg


def env_secrets() -> dict[str, str]:
    """Return the secrets read from the environment (empty when unset)."""
    return {
        "bot_token": os.environ.get("BOT_TOKEN", ""),
        "yandex_api_key": os.environ.get("YANDEX_API_KEY", ""),
    }


def make_clock(tz_name: str):
    """Return a zero-argument callable giving the current time in *tz_name*."""
    tz = ZoneInfo(tz_name)

    def now() -> datetime:
        return datetime.now(tz)

    return now
