"""Data models for optical drive fleet monitoring."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum


class DriveState(Enum):
    """Lifecycle state of an optical drive."""
    IDLE = "idle"
    DETECTING = "detecting"
    RIPPING = "ripping"
    EJECTING = "ejecting"
    ERROR = "error"
    CRASHED = "crashed"


class BusType(Enum):
    """Kind of hardware reset domain a drive sits on."""
    PCI = "pci"
    SATA = "sata"
    USB = "usb"
    UNKNOWN = "unknown"


class HealthTier(Enum):
    """Replacement recommendation derived from recent crashes."""
    GOOD = "good"
    WARNING = "warning"
    REPLACE = "replace"


@dataclass
class DriveStatus:
    """Current status of one drive, built from its status record."""
    device: str
    state: DriveState = DriveState.IDLE
    disc_name: str = ""
    disc_type: str = ""
    progress: float = 0
    operation: str = ""
    title_current: int = 0
    title_total: int = 0
    error_message: str = ""
    start_time: Optional[float] = None
    elapsed: float = 0
    heartbeat: Optional[float] = None
    eta: str = ""
    log_file: str = ""

    @property
    def device_path(self) -> str:
        return f"/dev/{self.device}"

    def heartbeat_age(self, now: float) -> Optional[float]:
        """Seconds since the last heartbeat, or None if there never was one."""
        if self.heartbeat is None:
            return None
        return now - self.heartbeat

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase layout used by status records."""
        return {
            "device": self.device,
            "devicePath": self.device_path,
            "state": self.state.value,
            "discName": self.disc_name,
            "discType": self.disc_type,
            "progress": self.progress,
            "eta": self.eta,
            "operation": self.operation,
            "titleCurrent": self.title_current,
            "titleTotal": self.title_total,
            "errorMessage": self.error_message,
            "startTime": self.start_time,
            "elapsed": self.elapsed,
            "heartbeat": self.heartbeat,
            "logFile": self.log_file,
        }


@dataclass
class Bus:
    """A hardware reset domain and the drives attached to it."""
    id: str
    type: BusType
    path: str
    controller: str
    devices: List[str] = field(default_factory=list)
    reset_supported: bool = False
    reset_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "path": self.path,
            "controller": self.controller,
            "drives": [
                {"device": device, "devicePath": f"/dev/{device}"}
                for device in self.devices
            ],
            "resetSupported": self.reset_supported,
            "resetPath": self.reset_path,
        }


@dataclass(frozen=True)
class CrashEvent:
    """Emitted once when a drive transitions into the crashed state."""
    device: str
    timestamp: datetime
    message: str
    heartbeat_age: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device": self.device,
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "heartbeatAge": self.heartbeat_age,
        }


@dataclass(frozen=True)
class ResetEvent:
    """Emitted after a bus reset was executed."""
    bus_id: str
    bus_type: BusType
    devices: List[str]
    recorded_devices: List[str]
    timestamp: datetime
    automatic: bool
    trigger_device: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus": self.bus_id,
            "busType": self.bus_type.value,
            "devices": list(self.devices),
            "recordedDevices": list(self.recorded_devices),
            "timestamp": self.timestamp.isoformat(),
            "automatic": self.automatic,
            "manual": not self.automatic,
            "drive": self.trigger_device,
        }
