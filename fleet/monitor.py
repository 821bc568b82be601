"""Wires the fleet components together and drives their periodic ticks."""

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .bus_manager import BusTopologyResolver
from .drive_stats import DriveStatsLedger
from .events import EVENT_DRIVES, EventBroadcaster
from .recovery import RecoveryOrchestrator
from .rip_history import RipHistory
from .status_collector import StatusAggregator
from .system_executor import SystemCommandExecutor

logger = logging.getLogger(__name__)


class FleetMonitor:
    """
    Owns the fleet components and the three background ticks.

    - status refresh: re-reads status records, publishes ``drives`` on change
    - crash check: probes stale drives and hands crashes to the orchestrator
    - stats flush: persists the drive stats ledger
    """

    def __init__(self,
                 aggregator: StatusAggregator,
                 resolver: BusTopologyResolver,
                 ledger: DriveStatsLedger,
                 orchestrator: RecoveryOrchestrator,
                 broadcaster: EventBroadcaster,
                 history: RipHistory,
                 refresh_interval: float = 2.0,
                 crash_check_interval: float = 5.0,
                 flush_interval: float = 30.0,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.aggregator = aggregator
        self.resolver = resolver
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.broadcaster = broadcaster
        self.history = history
        self.refresh_interval = refresh_interval
        self.crash_check_interval = crash_check_interval
        self.flush_interval = flush_interval
        self._scheduler = scheduler
        self._published_revision: Optional[int] = None
        self._publish_lock = threading.Lock()
        self._running = False
        self._stopped = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'FleetMonitor':
        """Build a monitor and its components from AUTORIP_* settings."""
        executor = SystemCommandExecutor()
        broadcaster = EventBroadcaster()
        aggregator = StatusAggregator(
            status_dir=config['AUTORIP_STATUS_DIR'],
            dev_dir=config['AUTORIP_DEV_DIR'],
            log_dir=config['AUTORIP_LOG_DIR'],
            crash_timeout=config['AUTORIP_CRASH_TIMEOUT'],
            probe_timeout=config['AUTORIP_PROBE_TIMEOUT'],
            executor=executor,
        )
        resolver = BusTopologyResolver(
            sys_root=config['AUTORIP_SYS_ROOT'],
            dev_dir=config['AUTORIP_DEV_DIR'],
            cache_ttl=config['AUTORIP_BUS_CACHE_TTL'],
            usb_settle_delay=config['AUTORIP_USB_SETTLE_DELAY'],
            reenumerate_delay=config['AUTORIP_REENUMERATE_DELAY'],
            executor=executor,
        )
        ledger = DriveStatsLedger(
            stats_file_path=config['AUTORIP_DRIVE_STATS_FILE'],
            warning_threshold=config['AUTORIP_HEALTH_WARNING_CRASHES'],
            replace_threshold=config['AUTORIP_HEALTH_REPLACE_CRASHES'],
        )
        orchestrator = RecoveryOrchestrator(
            aggregator, resolver, ledger,
            broadcaster=broadcaster,
            auto_reset=config['AUTORIP_AUTO_RESET'],
        )
        history = RipHistory(
            history_file=config['AUTORIP_HISTORY_FILE'],
            log_dir=config['AUTORIP_LOG_DIR'],
        )
        return cls(
            aggregator, resolver, ledger, orchestrator, broadcaster, history,
            refresh_interval=config['AUTORIP_REFRESH_INTERVAL'],
            crash_check_interval=config['AUTORIP_CRASH_CHECK_INTERVAL'],
            flush_interval=config['AUTORIP_STATS_FLUSH_INTERVAL'],
        )

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background ticks."""
        if self._running:
            logger.warning("Fleet monitor is already running")
            return

        self.aggregator.ensure_status_dir()
        self.refresh_tick()

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
        job_options = {'max_instances': 1, 'coalesce': True, 'replace_existing': True}
        self._scheduler.add_job(self.refresh_tick, trigger="interval", seconds=self.refresh_interval,
                                id='status_refresh', **job_options)
        self._scheduler.add_job(self.crash_check_tick, trigger="interval", seconds=self.crash_check_interval,
                                id='crash_check', **job_options)
        self._scheduler.add_job(self.flush_tick, trigger="interval", seconds=self.flush_interval,
                                id='stats_flush', **job_options)
        self._scheduler.start()
        self._running = True
        logger.info(
            f"Fleet monitor started (status dir {self.aggregator.status_dir}, "
            f"auto-reset {'enabled' if self.orchestrator.auto_reset else 'disabled'})"
        )

    def stop(self) -> None:
        """Stop the ticks and flush the ledger once."""
        if self._stopped:
            return
        self._stopped = True

        if self._scheduler is not None and self._running:
            # Let an in-flight crash check record its crash/reset before the final flush
            self._scheduler.shutdown(wait=True)
        self._running = False
        self.ledger.close()
        logger.info("Fleet monitor stopped")

    def refresh_tick(self) -> None:
        try:
            self.aggregator.refresh()
            self._publish_if_changed()
        except Exception as e:
            logger.error(f"Error refreshing drive status: {e}", exc_info=True)

    def crash_check_tick(self) -> None:
        try:
            self.aggregator.check_for_crashes()
            for event in self.aggregator.crash_events():
                self.orchestrator.handle_crash(event)
            self.orchestrator.retry_deferred()
            self._publish_if_changed()
        except Exception as e:
            logger.error(f"Error checking for crashes: {e}", exc_info=True)

    def flush_tick(self) -> None:
        self.ledger.flush()

    def enriched_drives(self) -> List[Dict[str, Any]]:
        """Current drive states, each with its health statistics."""
        drives = []
        for status in self.aggregator.snapshot():
            drive = status.to_dict()
            drive['stats'] = self.ledger.get(status.device).to_dict()
            drives.append(drive)
        return drives

    def _publish_if_changed(self) -> None:
        with self._publish_lock:
            revision = self.aggregator.revision
            if revision == self._published_revision:
                return
            self._published_revision = revision
        self.broadcaster.publish(EVENT_DRIVES, self.enriched_drives())
