"""Bus topology discovery and bus-level reset for optical drives."""

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from .devices import device_sort_key, list_optical_devices
from .errors import BusBusyError, BusNotFoundError, ResetFailedError, ResetUnsupportedError
from .models import Bus, BusType
from .system_executor import SystemCommandExecutor

logger = logging.getLogger(__name__)

PCI_ADDRESS_PATTERN = re.compile(r'^[0-9a-f]{4}:[0-9a-f]{2}:[0-9a-f]{2}\.[0-7]$', re.IGNORECASE)
USB_DEVICE_PATTERN = re.compile(r'^\d+-\d+(\.\d+)*$')
USB_ROOT_PATTERN = re.compile(r'^usb\d+$')
SCSI_HOST_PATTERN = re.compile(r'^host\d+$')


@dataclass(frozen=True)
class NodeClassification:
    """A hardware node that defines the reset domain of a drive."""
    kind: BusType
    bus_id: str
    node_path: str
    reset_path: Optional[str]
    controller_path: Optional[str]

    @property
    def reset_supported(self) -> bool:
        return self.reset_path is not None


def _is_under_usb(node_path: str) -> bool:
    return any(USB_ROOT_PATTERN.match(part) for part in node_path.split(os.sep))


def find_parent_pci(node_path: str, sys_root: str = '/sys') -> Optional[str]:
    """Find the nearest ancestor that is a PCI function."""
    current = os.path.dirname(node_path)
    while current.startswith(sys_root) and current != sys_root:
        if (PCI_ADDRESS_PATTERN.match(os.path.basename(current)) and
                os.path.exists(os.path.join(current, 'vendor'))):
            return current
        current = os.path.dirname(current)
    return None


def classify_node(node_path: str, sys_root: str = '/sys') -> Optional[NodeClassification]:
    """
    Classify one sysfs node as a reset domain.

    Args:
        node_path: Absolute sysfs path of an ancestor of the drive
        sys_root: Root of the sysfs tree

    Returns:
        NodeClassification if the node is a USB port, a resettable PCI
        function or a SCSI host on a SATA controller, None otherwise
    """
    name = os.path.basename(node_path)

    if (USB_DEVICE_PATTERN.match(name) and _is_under_usb(node_path) and
            os.path.exists(os.path.join(node_path, 'authorized'))):
        return NodeClassification(
            kind=BusType.USB,
            bus_id=f"usb-{name}",
            node_path=node_path,
            reset_path=os.path.join(node_path, 'authorized'),
            controller_path=node_path,
        )

    if PCI_ADDRESS_PATTERN.match(name) and os.path.exists(os.path.join(node_path, 'reset')):
        return NodeClassification(
            kind=BusType.PCI,
            bus_id=f"pci-{name}",
            node_path=node_path,
            reset_path=os.path.join(node_path, 'reset'),
            controller_path=node_path,
        )

    # usb-storage registers SCSI hosts too; those belong to the USB port above
    if (SCSI_HOST_PATTERN.match(name) and not _is_under_usb(node_path) and
            os.path.isdir(os.path.join(node_path, 'scsi_host'))):
        pci_path = find_parent_pci(node_path, sys_root)
        if pci_path is None:
            return NodeClassification(
                kind=BusType.SATA,
                bus_id=f"sata-{name}",
                node_path=node_path,
                reset_path=None,
                controller_path=None,
            )
        reset_path = os.path.join(pci_path, 'reset')
        return NodeClassification(
            kind=BusType.SATA,
            bus_id=f"sata-{os.path.basename(pci_path)}",
            node_path=pci_path,
            reset_path=reset_path if os.path.exists(reset_path) else None,
            controller_path=pci_path,
        )

    return None


class BusTopologyResolver:
    """Maps drives to their hardware reset domains and resets those domains."""

    def __init__(self,
                 sys_root: str = '/sys',
                 dev_dir: str = '/dev',
                 cache_ttl: float = 60.0,
                 usb_settle_delay: float = 1.0,
                 reenumerate_delay: float = 3.0,
                 executor: Optional[SystemCommandExecutor] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        """
        Initialize the resolver.

        Args:
            sys_root: Root of the sysfs tree
            dev_dir: Directory holding device nodes
            cache_ttl: Seconds a discovery result stays valid
            usb_settle_delay: Seconds a USB port stays deauthorized during reset
            reenumerate_delay: Seconds to wait for devices to come back after reset
            executor: Command executor used for lspci lookups
        """
        self.sys_root = os.path.realpath(sys_root)
        self.dev_dir = dev_dir
        self.cache_ttl = cache_ttl
        self.usb_settle_delay = usb_settle_delay
        self.reenumerate_delay = reenumerate_delay
        self._executor = executor or SystemCommandExecutor()
        self._sleep = sleep
        self._monotonic = monotonic

        self._cache: Optional[List[Bus]] = None
        self._cache_time = 0.0
        self._cache_lock = threading.Lock()
        self._reset_locks: Dict[str, threading.Lock] = {}
        self._reset_locks_guard = threading.Lock()

    def discover(self, use_cache: bool = True) -> List[Bus]:
        """
        Discover all buses and their attached optical drives.

        Args:
            use_cache: Whether a result younger than the cache TTL may be reused

        Returns:
            List of Bus objects, one per reset domain
        """
        with self._cache_lock:
            if (use_cache and self._cache is not None and
                    self._monotonic() - self._cache_time < self.cache_ttl):
                return self._copy(self._cache)

        buses: Dict[str, Bus] = {}
        for device in list_optical_devices(self.dev_dir):
            try:
                bus = self._build_bus(device, self.resolve_device(device))
            except OSError as e:
                logger.error(f"Error getting bus for {device}: {e}")
                bus = self._build_bus(device, None)

            existing = buses.get(bus.id)
            if existing is None:
                buses[bus.id] = bus
            elif device not in existing.devices:
                existing.devices.append(device)
                existing.devices.sort(key=device_sort_key)

        result = list(buses.values())
        with self._cache_lock:
            self._cache = result
            self._cache_time = self._monotonic()
        logger.debug(f"Discovered {len(result)} buses")
        return self._copy(result)

    def resolve_device(self, device: str) -> Optional[NodeClassification]:
        """
        Walk a drive's sysfs ancestry up to the nearest reset domain.

        Returns:
            NodeClassification, or None if no ancestor qualifies
        """
        device_link = os.path.join(self.sys_root, 'block', device, 'device')
        if not os.path.exists(device_link):
            return None

        current = os.path.realpath(device_link)
        while current.startswith(self.sys_root) and current != self.sys_root:
            classification = classify_node(current, self.sys_root)
            if classification is not None:
                return classification
            current = os.path.dirname(current)
        return None

    def get_bus(self, bus_id: str) -> Bus:
        """
        Look up a bus by id, re-discovering once if the cache does not know it.

        Raises:
            BusNotFoundError: If no such bus exists
        """
        for use_cache in (True, False):
            for bus in self.discover(use_cache=use_cache):
                if bus.id == bus_id:
                    return bus
        raise BusNotFoundError(bus_id)

    def get_bus_for_device(self, device: str) -> Optional[Bus]:
        """Get the bus a drive is attached to."""
        for bus in self.discover():
            if device in bus.devices:
                return bus
        return None

    def invalidate(self) -> None:
        """Drop the cached topology so the next discovery walks sysfs again."""
        with self._cache_lock:
            self._cache = None
            self._cache_time = 0.0

    def reset(self, bus_id: str) -> Bus:
        """
        Power-cycle a bus. Performs no safety checks.

        Args:
            bus_id: Id of the bus to reset

        Returns:
            The bus as it was before the reset

        Raises:
            BusNotFoundError: Unknown bus id
            ResetUnsupportedError: Bus exposes no reset primitive
            BusBusyError: A reset of this bus is already running
            ResetFailedError: Writing the reset primitive failed
        """
        bus = self.get_bus(bus_id)
        if not bus.reset_supported or not bus.reset_path:
            raise ResetUnsupportedError(bus_id)

        lock = self._reset_lock(bus_id)
        if not lock.acquire(blocking=False):
            raise BusBusyError(bus_id)

        try:
            logger.info(f"Resetting bus {bus_id} ({bus.type.value}) at {bus.reset_path}")
            try:
                if bus.type == BusType.USB:
                    self._write_attribute(bus.reset_path, '0')
                    self._sleep(self.usb_settle_delay)
                    self._write_attribute(bus.reset_path, '1')
                else:
                    self._write_attribute(bus.reset_path, '1')
            except OSError as e:
                logger.error(f"Reset failed for bus {bus_id}: {e}")
                raise ResetFailedError(bus_id, str(e)) from e

            self._sleep(self.reenumerate_delay)
            logger.info(f"Bus {bus_id} reset complete")
            return bus
        finally:
            self.invalidate()
            lock.release()

    def is_resetting(self, bus_id: str) -> bool:
        lock = self._reset_locks.get(bus_id)
        return lock is not None and lock.locked()

    def _reset_lock(self, bus_id: str) -> threading.Lock:
        with self._reset_locks_guard:
            return self._reset_locks.setdefault(bus_id, threading.Lock())

    def _build_bus(self, device: str, classification: Optional[NodeClassification]) -> Bus:
        if classification is None:
            return Bus(
                id=f"unknown-{device}",
                type=BusType.UNKNOWN,
                path=os.path.join(self.sys_root, 'block', device),
                controller='Unknown',
                devices=[device],
                reset_supported=False,
                reset_path=None,
            )

        return Bus(
            id=classification.bus_id,
            type=classification.kind,
            path=classification.node_path,
            controller=self._describe_controller(classification),
            devices=[device],
            reset_supported=classification.reset_supported,
            reset_path=classification.reset_path,
        )

    def _describe_controller(self, classification: NodeClassification) -> str:
        if classification.kind == BusType.USB:
            return self._usb_controller(classification.controller_path)
        if classification.controller_path is None:
            return 'Unknown SATA'
        return self._pci_controller(classification.controller_path)

    @staticmethod
    def _usb_controller(usb_path: str) -> str:
        manufacturer = _read_attribute(os.path.join(usb_path, 'manufacturer'))
        product = _read_attribute(os.path.join(usb_path, 'product'))
        if manufacturer and product:
            return f"{manufacturer} {product}"
        return 'USB Device'

    def _pci_controller(self, pci_path: str) -> str:
        vendor = _read_attribute(os.path.join(pci_path, 'vendor'))
        device = _read_attribute(os.path.join(pci_path, 'device'))
        if not vendor or not device:
            return 'Unknown PCI'

        try:
            description = self._executor.describe_pci_device(os.path.basename(pci_path))
        except ValueError:
            description = None
        return description or f"PCI {vendor}:{device}"

    @staticmethod
    def _write_attribute(path: str, value: str) -> None:
        with open(path, 'w') as f:
            f.write(value)

    @staticmethod
    def _copy(buses: List[Bus]) -> List[Bus]:
        return [replace(bus, devices=list(bus.devices)) for bus in buses]


def _read_attribute(path: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError:
        return None
