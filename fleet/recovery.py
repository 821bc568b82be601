"""Crash recovery: decides when a bus reset is safe and carries it out."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .bus_manager import BusTopologyResolver
from .drive_stats import DriveStatsLedger
from .errors import (
    BusBusyError, BusNotFoundError, ConfirmationRequired, ResetFailedError, ResetUnsupportedError,
)
from .events import EVENT_CRASH, EVENT_RESET, EventBroadcaster
from .models import Bus, CrashEvent, DriveState, ResetEvent
from .status_collector import StatusAggregator

logger = logging.getLogger(__name__)


class RecoveryDecision(Enum):
    """What the orchestrator did about a crashed drive."""
    AUTO_RESET = "auto_reset"
    DEFERRED = "deferred"
    DISABLED = "disabled"
    NO_BUS = "no_bus"
    UNSUPPORTED = "unsupported"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    RECOVERED = "recovered"


@dataclass
class RecoveryOutcome:
    """Result of one automatic recovery attempt."""
    device: str
    decision: RecoveryDecision
    bus_id: Optional[str] = None
    active_devices: List[str] = field(default_factory=list)
    reset_event: Optional[ResetEvent] = None
    message: str = ""


class RecoveryOrchestrator:
    """
    Resets the bus of a crashed drive unless a sibling drive is mid-rip.

    The same safety check guards operator-triggered resets, which may
    override it with an explicit confirmation.
    """

    def __init__(self,
                 aggregator: StatusAggregator,
                 resolver: BusTopologyResolver,
                 ledger: DriveStatsLedger,
                 broadcaster: Optional[EventBroadcaster] = None,
                 auto_reset: bool = True,
                 now_fn: Callable[[], datetime] = datetime.now):
        self.aggregator = aggregator
        self.resolver = resolver
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.auto_reset = auto_reset
        self._now = now_fn
        self._deferred: set = set()
        self._deferred_lock = threading.Lock()

    @property
    def deferred_devices(self) -> List[str]:
        with self._deferred_lock:
            return sorted(self._deferred)

    def handle_crash(self, event: CrashEvent) -> RecoveryOutcome:
        """
        React to a drive entering the crashed state.

        Args:
            event: CrashEvent from the status aggregator

        Returns:
            RecoveryOutcome describing the decision taken
        """
        logger.warning(f"Drive {event.device} detected as crashed: {event.message}")
        self.ledger.record_crash(event.device)

        drive = self.aggregator.get(event.device)
        payload = drive.to_dict() if drive else {"device": event.device}
        payload.update(event.to_dict())
        self._publish(EVENT_CRASH, payload)

        if not self.auto_reset:
            logger.info(f"Auto-reset disabled, leaving {event.device} crashed")
            return RecoveryOutcome(device=event.device, decision=RecoveryDecision.DISABLED)

        return self._attempt_auto_reset(event.device)

    def retry_deferred(self) -> List[RecoveryOutcome]:
        """Re-run the safety check for drives whose reset was deferred."""
        outcomes = []
        for device in self.deferred_devices:
            drive = self.aggregator.get(device)
            if drive is None or drive.state != DriveState.CRASHED:
                self._forget(device)
                continue
            outcomes.append(self._attempt_auto_reset(device))
        return outcomes

    def _attempt_auto_reset(self, device: str) -> RecoveryOutcome:
        bus = self.resolver.get_bus_for_device(device)
        if bus is None:
            logger.warning(f"[AUTO-RESET] Cannot find bus for {device}")
            self._forget(device)
            return RecoveryOutcome(device=device, decision=RecoveryDecision.NO_BUS)

        if not bus.reset_supported:
            logger.warning(f"[AUTO-RESET] Bus {bus.id} of {device} does not support reset")
            self._forget(device)
            return RecoveryOutcome(device=device, decision=RecoveryDecision.UNSUPPORTED, bus_id=bus.id)

        self.aggregator.refresh()
        if self.aggregator.devices_in_state([device], DriveState.CRASHED) != [device]:
            self._forget(device)
            return RecoveryOutcome(device=device, decision=RecoveryDecision.RECOVERED, bus_id=bus.id)

        active = self.aggregator.devices_in_state(bus.devices, DriveState.RIPPING)
        if active:
            message = f"Cannot reset bus {bus.id} - active rips on: {', '.join(active)}"
            logger.warning(f"[AUTO-RESET] {message}")
            with self._deferred_lock:
                self._deferred.add(device)
            return RecoveryOutcome(
                device=device,
                decision=RecoveryDecision.DEFERRED,
                bus_id=bus.id,
                active_devices=active,
                message=message,
            )

        logger.info(f"[AUTO-RESET] Resetting bus {bus.id} for crashed drive {device}")
        try:
            reset_event = self._execute_reset(bus, automatic=True, trigger_device=device)
        except BusBusyError as e:
            logger.info(f"[AUTO-RESET] {e}")
            self._forget(device)
            return RecoveryOutcome(device=device, decision=RecoveryDecision.IN_PROGRESS, bus_id=bus.id,
                                   message=str(e))
        except (BusNotFoundError, ResetUnsupportedError, ResetFailedError) as e:
            logger.error(f"[AUTO-RESET] {e}")
            self._forget(device)
            return RecoveryOutcome(device=device, decision=RecoveryDecision.FAILED, bus_id=bus.id,
                                   message=str(e))

        return RecoveryOutcome(
            device=device,
            decision=RecoveryDecision.AUTO_RESET,
            bus_id=bus.id,
            reset_event=reset_event,
        )

    def manual_reset(self, bus_id: str, confirm: bool = False) -> ResetEvent:
        """
        Reset a bus on operator request.

        Args:
            bus_id: Bus to reset
            confirm: Proceed even if drives on the bus are ripping

        Returns:
            ResetEvent describing the executed reset

        Raises:
            BusNotFoundError: Unknown bus id
            ResetUnsupportedError: Bus cannot be reset
            ConfirmationRequired: Drives are ripping and ``confirm`` is unset
            BusBusyError: A reset of this bus is already running
            ResetFailedError: The hardware write failed
        """
        bus = self.resolver.get_bus(bus_id)
        if not bus.reset_supported:
            raise ResetUnsupportedError(bus_id)

        self.aggregator.refresh()
        active = self.aggregator.devices_in_state(bus.devices, DriveState.RIPPING)
        if active and not confirm:
            logger.info(f"Manual reset of bus {bus_id} needs confirmation, active rips on: {', '.join(active)}")
            raise ConfirmationRequired(bus_id, active)
        if active:
            logger.warning(f"Manual reset of bus {bus_id} confirmed despite active rips on: {', '.join(active)}")

        return self._execute_reset(bus, automatic=False)

    def _execute_reset(self, bus: Bus, automatic: bool, trigger_device: Optional[str] = None) -> ResetEvent:
        crashed = self.aggregator.devices_in_state(bus.devices, DriveState.CRASHED)
        if trigger_device and trigger_device not in crashed:
            crashed.insert(0, trigger_device)

        self.resolver.reset(bus.id)

        for device in crashed:
            self.ledger.record_reset(device)
        for device in bus.devices:
            self._forget(device)

        event = ResetEvent(
            bus_id=bus.id,
            bus_type=bus.type,
            devices=list(bus.devices),
            recorded_devices=crashed,
            timestamp=self._now(),
            automatic=automatic,
            trigger_device=trigger_device,
        )
        self._publish(EVENT_RESET, event.to_dict())
        return event

    def _forget(self, device: str) -> None:
        with self._deferred_lock:
            self._deferred.discard(device)

    def _publish(self, event_type: str, data) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(event_type, data)
