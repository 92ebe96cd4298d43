"""
Device registry: merges repeated sightings into long-lived device records.

The registry is the only owner of Device and DetectionSample state. Every
upsert() for an address runs under that address's lock; different addresses
proceed in parallel. clear_all() takes the exclusive side of a
shared/exclusive lock so it never interleaves with an upsert.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from gps_client import PositionFix
from mac_utils import UNKNOWN_MANUFACTURER, is_locally_administered_mac, lookup_manufacturer, normalize_mac
from triangulation import estimate

HISTORY_LIMIT = 100


class RadioKind(str, Enum):
    CLASSIC = "Classic"
    LE = "LE"
    WIFI = "WiFi"


@dataclass(frozen=True)
class Detection:
    """One sighting as reported by a scanner."""
    address: str
    rssi_dbm: Optional[int]
    radio_kind: str
    name: Optional[str] = None
    manufacturer_hint: Optional[str] = None
    radio_id: Optional[str] = None


@dataclass(frozen=True)
class DetectionSample:
    address: str
    rssi_dbm: int
    fix: PositionFix
    captured_at_ms: int


@dataclass(frozen=True)
class Device:
    address: str
    display_name: Optional[str]
    manufacturer: Optional[str]
    radio_kind: Optional[str]
    last_rssi_dbm: Optional[int]
    first_seen_ms: int
    last_seen_ms: int
    detection_count: int
    system_fix: PositionFix
    emitter_lat: Optional[float] = None
    emitter_lon: Optional[float] = None
    emitter_accuracy_m: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "name": self.display_name,
            "manufacturer": self.manufacturer,
            "radio_kind": self.radio_kind,
            "rssi": self.last_rssi_dbm,
            "first_seen": self.first_seen_ms,
            "last_seen": self.last_seen_ms,
            "detection_count": self.detection_count,
            "randomized": is_locally_administered_mac(self.address),
            "system_lat": self.system_fix.latitude,
            "system_lon": self.system_fix.longitude,
            "emitter_lat": self.emitter_lat,
            "emitter_lon": self.emitter_lon,
            "emitter_accuracy": self.emitter_accuracy_m,
        }


def _prefer(new, old):
    return new if new is not None else old


def resolve_manufacturer(address: str, hint: Optional[str]) -> str:
    """Scanner hint first, static OUI table second."""
    return hint or lookup_manufacturer(address)


def merge_device(existing: Optional[Device], detection: Detection, address: str,
                 fix: PositionFix, now_ms: int) -> Device:
    """Fold one detection into the device record.

    Known values are never erased: a field only changes when the detection
    carries a value for it. An "Unknown" manufacturer counts as no value.
    """
    manufacturer = resolve_manufacturer(address, detection.manufacturer_hint)

    if existing is None:
        return Device(
            address=address,
            display_name=detection.name,
            manufacturer=manufacturer,
            radio_kind=detection.radio_kind,
            last_rssi_dbm=detection.rssi_dbm,
            first_seen_ms=now_ms,
            last_seen_ms=now_ms,
            detection_count=1,
            system_fix=fix,
        )

    if manufacturer == UNKNOWN_MANUFACTURER and existing.manufacturer:
        manufacturer = existing.manufacturer

    return replace(
        existing,
        display_name=_prefer(detection.name, existing.display_name),
        manufacturer=manufacturer,
        radio_kind=_prefer(detection.radio_kind, existing.radio_kind),
        last_rssi_dbm=_prefer(detection.rssi_dbm, existing.last_rssi_dbm),
        last_seen_ms=max(now_ms, existing.last_seen_ms),
        detection_count=existing.detection_count + 1,
        system_fix=fix,
    )


class _SharedExclusiveLock:
    """Many shared holders (upserts) or one exclusive holder (clear_all)."""

    def __init__(self):
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False

    def acquire_shared(self) -> None:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._shared += 1

    def release_shared(self) -> None:
        with self._cond:
            self._shared -= 1
            if self._shared == 0:
                self._cond.notify_all()

    def acquire_exclusive(self) -> None:
        with self._cond:
            while self._exclusive:
                self._cond.wait()
            self._exclusive = True
            while self._shared:
                self._cond.wait()

    def release_exclusive(self) -> None:
        with self._cond:
            self._exclusive = False
            self._cond.notify_all()


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class DeviceRegistry:
    """In-memory device records plus bounded per-device RSSI history.

    on_update(device) runs inside upsert() while the address lock is held, so
    calls for one address arrive in detection_count order. on_clear() runs
    inside clear_all() after every in-flight upsert has finished.
    """

    def __init__(self, current_fix: Callable[[], PositionFix],
                 clock: Callable[[], int] = _wall_clock_ms,
                 history_limit: int = HISTORY_LIMIT,
                 on_update: Optional[Callable[[Device], None]] = None,
                 on_clear: Optional[Callable[[], None]] = None):
        self._current_fix = current_fix
        self._clock = clock
        self._history_limit = history_limit
        self._on_update = on_update
        self._on_clear = on_clear
        self._devices: Dict[str, Device] = {}
        self._history: Dict[str, Deque[DetectionSample]] = {}
        self._address_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._clear_lock = _SharedExclusiveLock()

    def _lock_for(self, address: str) -> threading.Lock:
        with self._guard:
            lock = self._address_locks.get(address)
            if lock is None:
                lock = self._address_locks[address] = threading.Lock()
            return lock

    def upsert(self, detection: Detection) -> Device:
        """Merge a detection, append its RSSI sample, re-estimate the emitter.

        Raises:
            ValueError: the detection's address is not a valid MAC
        """
        address = normalize_mac(detection.address)
        self._clear_lock.acquire_shared()
        try:
            with self._lock_for(address):
                now = self._clock()
                fix = self._current_fix()
                device = merge_device(self._devices.get(address), detection, address, fix, now)

                with self._guard:
                    history = self._history.get(address)
                    if history is None:
                        history = self._history[address] = deque(maxlen=self._history_limit)
                if detection.rssi_dbm is not None:
                    history.append(DetectionSample(address, detection.rssi_dbm, fix, now))

                emitter = estimate(list(history), fix)
                device = replace(
                    device,
                    emitter_lat=emitter.lat,
                    emitter_lon=emitter.lon,
                    emitter_accuracy_m=emitter.accuracy_m,
                )
                with self._guard:
                    self._devices[address] = device
                if self._on_update is not None:
                    self._on_update(device)
                return device
        finally:
            self._clear_lock.release_shared()

    def get(self, address: str) -> Optional[Device]:
        """The device record, or None when the address is unknown or invalid."""
        try:
            address = normalize_mac(address)
        except ValueError:
            return None
        with self._guard:
            return self._devices.get(address)

    def history_for(self, address: str) -> List[DetectionSample]:
        """RSSI samples for the address, oldest first (at most 100)."""
        try:
            address = normalize_mac(address)
        except ValueError:
            return []
        with self._guard:
            return list(self._history.get(address, ()))

    def snapshot(self) -> List[Device]:
        """All devices, most recently seen first."""
        with self._guard:
            devices = list(self._devices.values())
        return sorted(devices, key=lambda d: d.last_seen_ms, reverse=True)

    def clear_all(self) -> None:
        """Forget every device and all RSSI history."""
        self._clear_lock.acquire_exclusive()
        try:
            with self._guard:
                self._devices.clear()
                self._history.clear()
                self._address_locks.clear()
            if self._on_clear is not None:
                self._on_clear()
        finally:
            self._clear_lock.release_exclusive()

    def __len__(self) -> int:
        with self._guard:
            return len(self._devices)
