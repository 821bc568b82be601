from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    # Files shared with the rip workers
    AUTORIP_STATUS_DIR = os.getenv('AUTORIP_STATUS_DIR', '/var/lib/autorip/status')
    AUTORIP_HISTORY_FILE = os.getenv('AUTORIP_HISTORY_FILE', '/var/lib/autorip/history.json')
    AUTORIP_DRIVE_STATS_FILE = os.getenv('AUTORIP_DRIVE_STATS_FILE', '/var/lib/autorip/drive_stats.json')
    AUTORIP_LOG_DIR = os.getenv('AUTORIP_LOG_DIR', '/tmp')

    # Crash detection
    AUTORIP_CRASH_TIMEOUT = _env_float('AUTORIP_CRASH_TIMEOUT', 300.0)
    AUTORIP_PROBE_TIMEOUT = _env_float('AUTORIP_PROBE_TIMEOUT', 5.0)

    # Recovery
    AUTORIP_AUTO_RESET = _env_bool('AUTORIP_AUTO_RESET', True)
    AUTORIP_BUS_CACHE_TTL = _env_float('AUTORIP_BUS_CACHE_TTL', 60.0)
    AUTORIP_USB_SETTLE_DELAY = _env_float('AUTORIP_USB_SETTLE_DELAY', 1.0)
    AUTORIP_REENUMERATE_DELAY = _env_float('AUTORIP_REENUMERATE_DELAY', 3.0)

    # Health tiers (7-day crash counts)
    AUTORIP_HEALTH_WARNING_CRASHES = _env_int('AUTORIP_HEALTH_WARNING_CRASHES', 3)
    AUTORIP_HEALTH_REPLACE_CRASHES = _env_int('AUTORIP_HEALTH_REPLACE_CRASHES', 5)

    # Tick intervals in seconds
    AUTORIP_REFRESH_INTERVAL = _env_float('AUTORIP_REFRESH_INTERVAL', 2.0)
    AUTORIP_CRASH_CHECK_INTERVAL = _env_float('AUTORIP_CRASH_CHECK_INTERVAL', 5.0)
    AUTORIP_STATS_FLUSH_INTERVAL = _env_float('AUTORIP_STATS_FLUSH_INTERVAL', 30.0)

    # Host hardware description
    AUTORIP_SYS_ROOT = os.getenv('AUTORIP_SYS_ROOT', '/sys')
    AUTORIP_DEV_DIR = os.getenv('AUTORIP_DEV_DIR', '/dev')

    # Query surface
    AUTORIP_WEB_HOST = os.getenv('AUTORIP_WEB_HOST', '127.0.0.1')
    AUTORIP_WEB_PORT = _env_int('AUTORIP_WEB_PORT', 8080)

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

    # Tests build the app without background ticks
    START_MONITOR = _env_bool('AUTORIP_START_MONITOR', True)

    # Seconds between SSE keep-alive comments
    EVENT_KEEPALIVE_SECONDS = _env_float('AUTORIP_EVENT_KEEPALIVE', 15.0)
