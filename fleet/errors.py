"""Exceptions raised by the fleet recovery components."""

from typing import List


class FleetError(Exception):
    """Base class for fleet management errors."""


class BusError(FleetError):
    """Base class for errors tied to a specific bus."""

    def __init__(self, bus_id: str, message: str):
        super().__init__(message)
        self.bus_id = bus_id


class BusNotFoundError(BusError):
    """Raised when a bus id is not part of the discovered topology."""

    def __init__(self, bus_id: str):
        super().__init__(bus_id, f"Bus {bus_id} not found")


class ResetUnsupportedError(BusError):
    """Raised when the bus exposes no reset primitive."""

    def __init__(self, bus_id: str):
        super().__init__(bus_id, f"Reset not supported for bus {bus_id}")


class BusBusyError(BusError):
    """Raised when a reset is requested for a bus that is already resetting."""

    def __init__(self, bus_id: str):
        super().__init__(bus_id, f"Reset already in progress for bus {bus_id}")


class ResetFailedError(BusError):
    """Raised when writing the reset primitive failed."""

    def __init__(self, bus_id: str, reason: str):
        super().__init__(bus_id, f"Reset failed for bus {bus_id}: {reason}. May require root privileges.")
        self.reason = reason


class ConfirmationRequired(BusError):
    """Raised when a manual reset would interrupt active rips."""

    def __init__(self, bus_id: str, active_devices: List[str]):
        super().__init__(
            bus_id,
            f"Active rips on bus {bus_id}: {', '.join(active_devices)}",
        )
        self.active_devices = list(active_devices)


class RipHistoryError(FleetError):
    """Raised when the rip history file exists but cannot be parsed."""
