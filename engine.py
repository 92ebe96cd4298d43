"""
Engine context: wires the position provider, device registry, target
watchlist, alert throttle and event bus together, plus the storage, SMS and
scanner collaborators around them.

One Engine is built at startup and handed to the web UI and the scanners.
"""
import logging
import sqlite3
import threading
import time
from typing import Callable, Dict, List, Optional

from alerts import AlertThrottle, Target, TargetWatchlist
from events import DeviceUpdated, EventBus, EventKind, TargetAlert
from gps_client import GpsConfig, PositionProvider
from mac_utils import normalize_mac
from registry import Detection, Device, DeviceRegistry
from storage import Storage, export_csv

logger = logging.getLogger("bluek9.engine")


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class Engine:
    def __init__(self, storage: Optional[Storage] = None,
                 provider: Optional[PositionProvider] = None,
                 bus: Optional[EventBus] = None,
                 clock: Callable[[], int] = _wall_clock_ms,
                 notifier=None):
        self.storage = storage
        self.provider = provider or PositionProvider()
        self.bus = bus or EventBus()
        self.clock = clock
        self.registry = DeviceRegistry(
            self.provider.current_fix, clock=clock,
            on_update=self._persist_device if storage is not None else None,
            on_clear=storage.clear_devices if storage is not None else None,
        )
        self.watchlist = TargetWatchlist()
        self.throttle = AlertThrottle()
        self.notifier = notifier
        self.scanners: Dict[str, object] = {}
        self._scan_lock = threading.Lock()
        self.scanning = False
        self._started = False

    # ---- lifecycle ----

    def start(self, gps_config: Optional[GpsConfig] = None) -> None:
        if self.storage is not None:
            self.watchlist.replace_all(self.storage.get_targets())
            logger.info("Loaded %d target(s)", len(self.watchlist))
            if gps_config is None:
                gps_config = self.storage.get_gps_config()
        self.provider.start(gps_config)
        if self.notifier is not None:
            self.notifier.attach(self.bus)
            self.notifier.start()
        self._started = True
        logger.info("Engine started")

    def stop(self) -> None:
        self.stop_scanning()
        self.provider.stop()
        if self.notifier is not None:
            self.notifier.stop()
        self._started = False
        logger.info("Engine stopped")

    # ---- detections ----

    def handle_detection(self, detection: Detection) -> Optional[Device]:
        """Registry upsert, DeviceUpdated, then TargetAlert if the throttle allows.

        Returns None when the detection was dropped (invalid address).
        """
        try:
            device = self.registry.upsert(detection)
        except ValueError as e:
            logger.warning("Dropping detection from %s: %s", detection.radio_id or "unknown radio", e)
            return None

        self.bus.publish(EventKind.DEVICE_UPDATED, DeviceUpdated(device))

        target = self.watchlist.match(device.address)
        if target is not None and self.throttle.try_acquire(target.address, self.clock()):
            self.bus.publish(EventKind.TARGET_ALERT, TargetAlert(device, self.provider.current_fix()))
        return device

    def _persist_device(self, device: Device) -> None:
        try:
            self.storage.save_device(device)
        except sqlite3.Error as e:
            logger.error("Failed to save device %s: %s", device.address, e)

    def clear_devices(self) -> None:
        self.registry.clear_all()
        logger.info("All devices cleared")

    def export_csv(self) -> str:
        return export_csv(d.to_dict() for d in self.registry.snapshot())

    # ---- targets ----

    def add_target(self, address: str, name: Optional[str] = None,
                   description: Optional[str] = None) -> Target:
        """Raises ValueError for an invalid MAC address."""
        target = Target(address=normalize_mac(address), name=name, description=description,
                        added_at_ms=self.clock())
        self.watchlist.add(target)
        if self.storage is not None:
            self.storage.add_target(target)
        logger.info("Target added: %s", target.address)
        return target

    def remove_target(self, address: str) -> bool:
        target = self.watchlist.get(address)
        if target is None:
            return False
        self.watchlist.remove(address)
        if self.storage is not None:
            self.storage.remove_target(target.address)
        logger.info("Target removed: %s", target.address)
        return True

    def targets(self) -> List[Target]:
        return self.watchlist.all()

    # ---- GPS ----

    def set_gps_source(self, mode: str, nmea_host: Optional[str] = None,
                       nmea_port: Optional[int] = None) -> dict:
        """Switch the GPS source and persist the choice.

        Raises:
            ConfigurationError: see PositionProvider.set_source()
        """
        current = self.provider.status()["config"]
        config = GpsConfig(
            mode=mode,
            nmea_host=current["nmea_host"] if nmea_host is None else nmea_host,
            nmea_port=current["nmea_port"] if nmea_port is None else int(nmea_port),
            gpsd_host=current["gpsd_host"],
            gpsd_port=current["gpsd_port"],
        )
        self.provider.set_source(mode, config)
        if self.storage is not None:
            self.storage.save_gps_config(config)
        return self.provider.status()

    # ---- scanners ----

    def add_scanner(self, name: str, scanner) -> None:
        self.scanners[name] = scanner

    def start_scanning(self) -> None:
        with self._scan_lock:
            if self.scanning:
                return
            for name, scanner in self.scanners.items():
                logger.info("Starting %s scanner", name)
                scanner.start()
            self.scanning = True

    def stop_scanning(self) -> None:
        with self._scan_lock:
            if not self.scanning:
                return
            for name, scanner in self.scanners.items():
                logger.info("Stopping %s scanner", name)
                scanner.stop()
            self.scanning = False

    def status(self) -> dict:
        return {
            "running": self._started,
            "scanning": self.scanning,
            "device_count": len(self.registry),
            "target_count": len(self.watchlist),
            "gps": self.provider.status(),
            "scanners": {name: s.status() for name, s in self.scanners.items()},
        }
