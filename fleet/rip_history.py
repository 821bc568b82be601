"""Read-only access to rip history and per-drive worker logs."""

import json
import logging
import os
from collections import deque
from typing import Any, Dict, List

from .devices import is_optical_device
from .errors import RipHistoryError

logger = logging.getLogger(__name__)


class RipHistory:
    """Reads the history file and log files written by the rip workers."""

    def __init__(self, history_file: str = '/var/lib/autorip/history.json', log_dir: str = '/tmp'):
        self.history_file = history_file
        self.log_dir = log_dir

    def page(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Get a page of rip history entries.

        Args:
            limit: Maximum number of entries
            offset: Number of entries to skip

        Returns:
            List of history entries in file order

        Raises:
            RipHistoryError: If the history file is not a JSON array
        """
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must not be negative")

        try:
            with open(self.history_file, 'r') as f:
                history = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            raise RipHistoryError(f"Cannot read history file {self.history_file}: {e}") from e

        if not isinstance(history, list):
            raise RipHistoryError(f"History file {self.history_file} is not a list")
        return history[offset:offset + limit]

    def log_path(self, device: str) -> str:
        if not is_optical_device(device):
            raise ValueError(f"Invalid device name: {device}")
        return os.path.join(self.log_dir, f"autorip-{device}.log")

    def tail_log(self, device: str, lines: int = 100) -> str:
        """
        Get the last lines of a drive's rip log.

        Returns:
            Log text, empty if the drive has no log yet
        """
        path = self.log_path(device)
        if lines <= 0:
            return ""
        try:
            with open(path, 'r', errors='replace') as f:
                return ''.join(deque(f, maxlen=lines)).rstrip('\n')
        except FileNotFoundError:
            return ""
