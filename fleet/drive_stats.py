"""Crash and reset statistics per drive, with a derived health tier."""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .models import HealthTier

logger = logging.getLogger(__name__)

EVENT_CRASH = "crash"
EVENT_RESET = "reset"

HISTORY_RETENTION_DAYS = 30


@dataclass
class DriveHealthRecord:
    """Lifetime counters and rolling event history for one drive."""
    crash_count: int = 0
    reset_count: int = 0
    last_crash: Optional[datetime] = None
    last_reset: Optional[datetime] = None
    history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class DriveHealthSnapshot:
    """Read-only view of a drive's statistics, derived counters included."""
    device: str
    crash_count: int
    reset_count: int
    last_crash: Optional[datetime]
    last_reset: Optional[datetime]
    history: tuple
    crashes_7d: int
    crashes_30d: int
    health: HealthTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device,
            "crashCount": self.crash_count,
            "resetCount": self.reset_count,
            "lastCrash": self.last_crash.isoformat() if self.last_crash else None,
            "lastReset": self.last_reset.isoformat() if self.last_reset else None,
            "crashHistory": [
                {"timestamp": event["timestamp"].isoformat(), "type": event["type"]}
                for event in self.history
            ],
            "crashesThisWeek": self.crashes_7d,
            "crashesThisMonth": self.crashes_30d,
            "health": self.health.value,
        }


def classify_health(crashes_7d: int, warning_threshold: int = 3, replace_threshold: int = 5) -> HealthTier:
    """Map a 7-day crash count onto a health tier."""
    if crashes_7d >= replace_threshold:
        return HealthTier.REPLACE
    if crashes_7d >= warning_threshold:
        return HealthTier.WARNING
    return HealthTier.GOOD


class DriveStatsLedger:
    """
    Records crash/reset events per drive and persists them as JSON.

    Recording only touches memory. Durable writes happen in ``flush()``, which
    the fleet monitor calls on a fixed interval and once more on shutdown.
    """

    def __init__(self,
                 stats_file_path: str = "/var/lib/autorip/drive_stats.json",
                 warning_threshold: int = 3,
                 replace_threshold: int = 5,
                 now_fn: Callable[[], datetime] = datetime.now):
        """
        Initialize the ledger and load any persisted statistics.

        Args:
            stats_file_path: JSON file holding the ledger
            warning_threshold: 7-day crash count at which a drive is flagged
            replace_threshold: 7-day crash count at which replacement is advised
            now_fn: Clock used for event timestamps and derived counters
        """
        self._stats_file_path = stats_file_path
        self.warning_threshold = warning_threshold
        self.replace_threshold = replace_threshold
        self._now = now_fn
        self._records: Dict[str, DriveHealthRecord] = {}
        self._dirty = False
        self._lock = threading.RLock()
        self.load()

    @property
    def dirty(self) -> bool:
        return self._dirty

    def record_crash(self, device: str) -> None:
        """Append a crash event for a device."""
        now = self._now()
        with self._lock:
            record = self._records.setdefault(device, DriveHealthRecord())
            record.crash_count += 1
            record.last_crash = now
            record.history.append({"timestamp": now, "type": EVENT_CRASH})
            self._dirty = True
            total = record.crash_count
        logger.info(f"Recorded crash for {device} (total: {total})")

    def record_reset(self, device: str) -> None:
        """Append a reset event for a device."""
        now = self._now()
        with self._lock:
            record = self._records.setdefault(device, DriveHealthRecord())
            record.reset_count += 1
            record.last_reset = now
            record.history.append({"timestamp": now, "type": EVENT_RESET})
            self._dirty = True
            total = record.reset_count
        logger.info(f"Recorded reset for {device} (total: {total})")

    def reset_device(self, device: str) -> bool:
        """
        Discard all statistics for a device, e.g. after hardware replacement.

        Returns:
            True if the device had statistics
        """
        with self._lock:
            existed = self._records.pop(device, None) is not None
            self._dirty = True
        logger.info(f"Reset stats for {device}")
        return existed

    def get(self, device: str) -> DriveHealthSnapshot:
        """Get statistics for one device; unknown devices report zeros."""
        with self._lock:
            record = self._records.get(device) or DriveHealthRecord()
            return self._snapshot(device, record)

    def get_all(self) -> Dict[str, DriveHealthSnapshot]:
        """Get statistics for every device with recorded events."""
        with self._lock:
            return {
                device: self._snapshot(device, record)
                for device, record in self._records.items()
            }

    def _snapshot(self, device: str, record: DriveHealthRecord) -> DriveHealthSnapshot:
        now = self._now()
        month_ago = now - timedelta(days=HISTORY_RETENTION_DAYS)
        week_ago = now - timedelta(days=7)

        recent = [dict(event) for event in record.history if event["timestamp"] > month_ago]
        crashes_30d = sum(1 for event in recent if event["type"] == EVENT_CRASH)
        crashes_7d = sum(
            1 for event in recent
            if event["type"] == EVENT_CRASH and event["timestamp"] > week_ago
        )

        return DriveHealthSnapshot(
            device=device,
            crash_count=record.crash_count,
            reset_count=record.reset_count,
            last_crash=record.last_crash,
            last_reset=record.last_reset,
            history=tuple(recent),
            crashes_7d=crashes_7d,
            crashes_30d=crashes_30d,
            health=classify_health(crashes_7d, self.warning_threshold, self.replace_threshold),
        )

    def prune(self) -> int:
        """
        Drop history older than the retention window. Counters are kept.

        Returns:
            Number of events removed
        """
        cutoff = self._now() - timedelta(days=HISTORY_RETENTION_DAYS)
        removed = 0
        with self._lock:
            for record in self._records.values():
                before = len(record.history)
                record.history = [event for event in record.history if event["timestamp"] > cutoff]
                removed += before - len(record.history)
            if removed:
                self._dirty = True
        return removed

    def load(self) -> None:
        """Load statistics from persistent storage."""
        records: Dict[str, DriveHealthRecord] = {}
        try:
            if os.path.exists(self._stats_file_path):
                with open(self._stats_file_path, 'r') as f:
                    data = json.load(f)
                for device, entry in data.get('drives', {}).items():
                    records[device] = self._record_from_dict(entry)
                logger.info(f"Loaded stats for {len(records)} drives")
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(f"Error loading drive stats from {self._stats_file_path}: {e}")
            records = {}

        with self._lock:
            self._records = records
            self._dirty = False
        self.prune()

    def flush(self, force: bool = False) -> bool:
        """
        Write statistics to disk if anything changed since the last write.

        Failures are logged and the ledger stays dirty so the next call retries.

        Returns:
            True if the ledger is clean on return
        """
        self.prune()
        with self._lock:
            if not self._dirty and not force:
                return True
            data = {
                'drives': {
                    device: self._record_to_dict(record)
                    for device, record in self._records.items()
                },
                'last_updated': self._now().isoformat(),
            }
            self._dirty = False

        try:
            directory = os.path.dirname(self._stats_file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            temp_file = self._stats_file_path + '.tmp'
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(temp_file, self._stats_file_path)
            return True
        except OSError as e:
            logger.error(f"Error saving drive stats to {self._stats_file_path}: {e}")
            with self._lock:
                self._dirty = True
            return False

    def close(self) -> None:
        """Flush synchronously; used on shutdown."""
        self.flush()

    @staticmethod
    def _record_to_dict(record: DriveHealthRecord) -> Dict[str, Any]:
        return {
            'crashCount': record.crash_count,
            'resetCount': record.reset_count,
            'lastCrash': record.last_crash.isoformat() if record.last_crash else None,
            'lastReset': record.last_reset.isoformat() if record.last_reset else None,
            'history': [
                {'timestamp': event['timestamp'].isoformat(), 'type': event['type']}
                for event in record.history
            ],
        }

    @staticmethod
    def _record_from_dict(entry: Dict[str, Any]) -> DriveHealthRecord:
        def _parse(value):
            return datetime.fromisoformat(value) if value else None

        return DriveHealthRecord(
            crash_count=int(entry.get('crashCount', 0)),
            reset_count=int(entry.get('resetCount', 0)),
            last_crash=_parse(entry.get('lastCrash')),
            last_reset=_parse(entry.get('lastReset')),
            history=[
                {'timestamp': datetime.fromisoformat(event['timestamp']), 'type': event['type']}
                for event in entry.get('history', [])
                if event.get('type') in (EVENT_CRASH, EVENT_RESET)
            ],
        )
