"""Drive status aggregation and heartbeat-based crash detection."""

import json
import logging
import math
import os
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .devices import device_sort_key, list_optical_devices
from .models import CrashEvent, DriveState, DriveStatus
from .system_executor import ProbeResult, SystemCommandExecutor

logger = logging.getLogger(__name__)

_STATES = {state.value: state for state in DriveState}


def _as_float(value: Any, default: Optional[float] = 0) -> Optional[float]:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _as_int(value: Any, default: int = 0) -> int:
    number = _as_float(value, None)
    return int(number) if number is not None else default


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_status_record(device: str, data: Any, log_dir: str = '/tmp') -> DriveStatus:
    """
    Build a DriveStatus from a decoded status record.

    Anything that is not a JSON object, and any unknown state, yields an idle
    drive. Numeric fields tolerate strings and missing values.
    """
    default_log = os.path.join(log_dir, f"autorip-{device}.log")
    if not isinstance(data, dict):
        return DriveStatus(device=device, log_file=default_log)

    state = data.get('state')
    progress = _as_float(data.get('progress'), 0)
    return DriveStatus(
        device=device,
        state=_STATES.get(state, DriveState.IDLE) if isinstance(state, str) else DriveState.IDLE,
        disc_name=_as_str(data.get('discName')),
        disc_type=_as_str(data.get('discType')),
        progress=min(max(progress, 0), 100),
        operation=_as_str(data.get('operation')),
        title_current=_as_int(data.get('titleCurrent')),
        title_total=_as_int(data.get('titleTotal')),
        error_message=_as_str(data.get('errorMessage')),
        start_time=_as_float(data.get('startTime'), None),
        elapsed=_as_float(data.get('elapsed'), 0),
        heartbeat=_as_float(data.get('heartbeat'), None),
        eta=_as_str(data.get('eta')),
        log_file=_as_str(data.get('logFile')) or default_log,
    )


ProbeFn = Callable[[str], ProbeResult]


class StatusAggregator:
    """
    Owns the in-memory drive map built from externally written status records.

    ``refresh()`` re-reads every record. ``check_for_crashes()`` additionally
    probes drives whose heartbeat went stale while ripping and marks the ones
    that fail to answer within the probe bound as crashed, queueing one
    CrashEvent per transition for ``crash_events()``.
    """

    def __init__(self,
                 status_dir: str = '/var/lib/autorip/status',
                 dev_dir: str = '/dev',
                 log_dir: str = '/tmp',
                 crash_timeout: float = 300,
                 probe_timeout: float = 5,
                 prober: Optional[ProbeFn] = None,
                 executor: Optional[SystemCommandExecutor] = None,
                 max_probe_workers: int = 4,
                 clock: Callable[[], float] = time.time,
                 now_fn: Callable[[], datetime] = datetime.now):
        self.status_dir = status_dir
        self.dev_dir = dev_dir
        self.log_dir = log_dir
        self.crash_timeout = crash_timeout
        self.probe_timeout = probe_timeout
        self.max_probe_workers = max_probe_workers
        self._executor = executor or SystemCommandExecutor()
        self._prober = prober or self._default_probe
        self._clock = clock
        self._now = now_fn

        self._drives: Dict[str, DriveStatus] = {}
        self._crash_heartbeats: Dict[str, float] = {}
        self._pending: deque = deque()
        self._lock = threading.RLock()
        self._revision = 0

    @property
    def revision(self) -> int:
        """Counter bumped whenever any drive's status changes."""
        return self._revision

    def ensure_status_dir(self) -> None:
        try:
            os.makedirs(self.status_dir, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create status directory {self.status_dir}: {e}")

    def read_status(self, device: str) -> DriveStatus:
        """Read one device's status record; unreadable records mean idle."""
        path = os.path.join(self.status_dir, f"{device}.json")
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            data = None
        except (OSError, ValueError) as e:
            logger.debug(f"Unreadable status record {path}: {e}")
            data = None
        try:
            return parse_status_record(device, data, self.log_dir)
        except (TypeError, ValueError, OverflowError) as e:
            logger.debug(f"Malformed status record {path}: {e}")
            return parse_status_record(device, None, self.log_dir)

    def refresh(self) -> List[DriveStatus]:
        """
        Re-enumerate drives and re-read every status record.

        Returns:
            Current snapshot of all drives
        """
        devices = list_optical_devices(self.dev_dir)
        records = {device: self.read_status(device) for device in devices}
        now = self._clock()

        with self._lock:
            changed = False
            for device, status in records.items():
                previous = self._drives.get(device)

                if previous is not None and previous.state == DriveState.CRASHED:
                    if not self._clears_crash(device, status, now):
                        continue
                    logger.info(f"Drive {device} recovered from crash (state: {status.state.value})")
                    self._crash_heartbeats.pop(device, None)
                elif status.state == DriveState.CRASHED:
                    # Only a failed probe may declare a crash
                    status = replace(status, state=DriveState.ERROR)

                if previous != status:
                    self._drives[device] = status
                    changed = True

            for device in list(self._drives):
                if device not in records:
                    logger.info(f"Drive {device} disappeared")
                    del self._drives[device]
                    self._crash_heartbeats.pop(device, None)
                    changed = True

            if changed:
                self._revision += 1
            return self._ordered()

    def _clears_crash(self, device: str, status: DriveStatus, now: float) -> bool:
        if status.state == DriveState.CRASHED or status.heartbeat is None:
            return False
        crashed_at = self._crash_heartbeats.get(device)
        if crashed_at is not None and status.heartbeat <= crashed_at:
            return False
        return now - status.heartbeat <= self.crash_timeout

    def snapshot(self) -> List[DriveStatus]:
        """Current drive map without touching the filesystem."""
        with self._lock:
            return self._ordered()

    def get(self, device: str) -> Optional[DriveStatus]:
        with self._lock:
            return self._drives.get(device)

    def devices_in_state(self, devices: Iterable[str], state: DriveState) -> List[str]:
        """Filter ``devices`` down to the ones currently in ``state``."""
        with self._lock:
            return [
                device for device in devices
                if device in self._drives and self._drives[device].state == state
            ]

    def find_crash_suspects(self, now: Optional[float] = None) -> List[Tuple[str, float, float]]:
        """
        Find ripping drives whose heartbeat is older than the crash timeout.

        Returns:
            List of (device, heartbeat, heartbeat_age)
        """
        now = self._clock() if now is None else now
        suspects = []
        with self._lock:
            for status in self._ordered():
                if status.state != DriveState.RIPPING:
                    continue
                age = status.heartbeat_age(now)
                if age is not None and age > self.crash_timeout:
                    suspects.append((status.device, status.heartbeat, age))
        return suspects

    def check_for_crashes(self) -> List[CrashEvent]:
        """
        Refresh, probe crash suspects and mark unresponsive drives crashed.

        Returns:
            CrashEvents for drives that transitioned during this call
        """
        self.refresh()
        suspects = self.find_crash_suspects()
        if not suspects:
            return []

        for device, _, age in suspects:
            logger.info(f"Drive {device} is a crash suspect (heartbeat stale for {int(age)}s), probing")

        results = self._probe_all([device for device, _, _ in suspects])

        events = []
        with self._lock:
            for device, heartbeat, age in suspects:
                result = results.get(device)
                if result != ProbeResult.TIMEOUT:
                    logger.info(f"Drive {device} answered probe ({result.value}), treating as slow")
                    continue

                current = self._drives.get(device)
                if (current is None or current.state != DriveState.RIPPING or
                        current.heartbeat != heartbeat):
                    # A fresher record arrived while probing
                    continue

                message = f"Drive unresponsive (heartbeat: {int(age)}s, probe timed out)"
                self._drives[device] = replace(current, state=DriveState.CRASHED, error_message=message)
                self._crash_heartbeats[device] = heartbeat
                self._revision += 1

                event = CrashEvent(device=device, timestamp=self._now(), message=message, heartbeat_age=age)
                self._pending.append(event)
                events.append(event)
                logger.warning(f"Drive {device} crashed: {message}")
        return events

    def crash_events(self) -> Iterator[CrashEvent]:
        """Yield queued CrashEvents in order, consuming them."""
        while True:
            with self._lock:
                if not self._pending:
                    return
                event = self._pending.popleft()
            yield event

    def _probe_all(self, devices: List[str]) -> Dict[str, ProbeResult]:
        workers = max(1, min(len(devices), self.max_probe_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="DriveProbe") as pool:
            return dict(zip(devices, pool.map(self._safe_probe, devices)))

    def _safe_probe(self, device: str) -> ProbeResult:
        try:
            return self._prober(device)
        except Exception as e:
            logger.error(f"Probe of {device} failed: {e}")
            return ProbeResult.FAILED

    def _default_probe(self, device: str) -> ProbeResult:
        return self._executor.probe_device(f"/dev/{device}", timeout=self.probe_timeout)

    def _ordered(self) -> List[DriveStatus]:
        return [self._drives[device] for device in sorted(self._drives, key=device_sort_key)]
