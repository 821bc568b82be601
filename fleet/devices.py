"""Optical drive enumeration."""

import logging
import os
import re
from typing import List

logger = logging.getLogger(__name__)

OPTICAL_DEVICE_PATTERN = re.compile(r'^sr(\d+)$')


def is_optical_device(name: str) -> bool:
    """Return True for kernel names like ``sr0``."""
    return bool(OPTICAL_DEVICE_PATTERN.match(name or ''))


def device_sort_key(name: str) -> int:
    match = OPTICAL_DEVICE_PATTERN.match(name)
    return int(match.group(1)) if match else -1


def list_optical_devices(dev_dir: str = '/dev') -> List[str]:
    """
    List optical drive device names present under ``dev_dir``.

    Args:
        dev_dir: Directory holding device nodes

    Returns:
        Device names ordered by drive number (sr0, sr1, ..., sr10)
    """
    try:
        names = os.listdir(dev_dir)
    except OSError as e:
        logger.error(f"Cannot enumerate devices in {dev_dir}: {e}")
        return []

    return sorted((name for name in names if is_optical_device(name)), key=device_sort_key)
