"""
Bluetooth scanners feeding detections into the engine.

BleScanner runs bleak in its own asyncio loop on a background thread.
VirtualScanner produces a fixed set of fake devices for bench testing
without radio hardware.
"""
import asyncio
import logging
import random
import subprocess
import threading
import time
from typing import Any, Callable, Dict, Optional

from bleak import BleakScanner

import settings
from registry import Detection, RadioKind

logger = logging.getLogger("bluek9.scanner")

DetectionSink = Callable[[Detection], Any]


def _best_name(current: Optional[str], new: Optional[str]) -> Optional[str]:
    """Prefer the non-empty, longer, and more specific name."""
    candidates = [x for x in [new, current] if x]
    if not candidates:
        return current or new
    return max(candidates, key=len)


def adapter_ready(adapter: str) -> bool:
    try:
        out = subprocess.check_output(
            ["bluetoothctl", "show"], input=f"select {adapter}\nshow\nquit\n".encode(), timeout=5
        ).decode(errors="ignore")
        return "Powered: yes" in out
    except (OSError, subprocess.SubprocessError):
        return False


class BleScanner:
    def __init__(self, sink: DetectionSink, adapter: Optional[str] = settings.BLEAK_DEVICE):
        self.sink = sink
        self.adapter = adapter
        self.radio_id = f"ble:{adapter or 'default'}"
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._count = 0
        self._error: Optional[str] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._error = None
        self._thread = threading.Thread(target=self._run, name="ble-scanner", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("BLE scanner stopped after %d advertisements", self._count)

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self._thread and self._thread.is_alive() else "stopped",
            "adapter": self.adapter,
            "detections": self._count,
            "error": self._error,
        }

    def _run(self) -> None:
        try:
            asyncio.run(self._scan())
        except Exception as e:
            self._error = str(e)
            logger.exception("BLE scanner on %s failed", self.adapter)

    async def _scan(self) -> None:
        # Wait for BlueZ to be ready (up to ~5s)
        for _ in range(10):
            if self.adapter is None or adapter_ready(self.adapter):
                break
            await asyncio.sleep(0.5)

        kwargs = {}
        if self.adapter:
            kwargs["adapter"] = self.adapter
        scanner = BleakScanner(self._on_advertisement, **kwargs)
        await scanner.start()
        logger.info("BLE scanner started on %s", self.adapter or "default adapter")
        try:
            while not self._stop.is_set():
                await asyncio.sleep(0.5)
        finally:
            await scanner.stop()

    def _on_advertisement(self, device, advertisement_data) -> None:
        rssi = getattr(advertisement_data, "rssi", None)
        if rssi is None:
            rssi = getattr(device, "rssi", None)
        self._count += 1
        self.sink(Detection(
            address=device.address,
            rssi_dbm=rssi,
            radio_kind=RadioKind.LE.value,
            name=_best_name(device.name, advertisement_data.local_name),
            radio_id=self.radio_id,
        ))


VIRTUAL_DEVICES = (
    ("00:11:22:33:44:55", "Virtual Device 1", RadioKind.LE),
    ("AA:BB:CC:DD:EE:FF", "Virtual Device 2", RadioKind.CLASSIC),
    ("11:22:33:44:55:66", "Test Target", RadioKind.LE),
)


class VirtualScanner:
    """Emits one sighting of every virtual device per interval, RSSI in [-100, -50]."""

    def __init__(self, sink: DetectionSink, interval: float = settings.VIRTUAL_SCAN_INTERVAL,
                 rng: Optional[random.Random] = None):
        self.sink = sink
        self.interval = interval
        self.rng = rng or random.Random()
        self.radio_id = "virtual"
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycles = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="virtual-scanner", daemon=True)
        self._thread.start()
        logger.info("Virtual scanner started (interval %.1fs)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self._thread and self._thread.is_alive() else "stopped",
            "cycles": self._cycles,
        }

    def scan_once(self) -> None:
        for address, name, kind in VIRTUAL_DEVICES:
            self.sink(Detection(
                address=address,
                rssi_dbm=-50 - self.rng.randint(0, 50),
                radio_kind=kind.value,
                name=name,
                radio_id=self.radio_id,
            ))
        self._cycles += 1

    def _run(self) -> None:
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.scan_once()
            except Exception:
                logger.exception("Virtual scan cycle failed")
            self._stop.wait(max(0.0, self.interval - (time.monotonic() - started)))
