"""
WiFi scanner: turns 802.11 frames captured in monitor mode into detections.

Every frame with a client source address (probe and association requests,
data frames) becomes a Detection with radio kind "WiFi" and the radiotap
signal strength. The SSID of probe requests is used as the display name
when nothing better is known.

Requires an adapter that supports monitor mode and root privileges.
"""
import logging
import subprocess
import threading
import time
from typing import Any, Callable, Dict, Optional

from scapy.all import Dot11, Dot11Elt, conf, sniff

import settings
from registry import Detection, RadioKind

logger = logging.getLogger("bluek9.wifi")

BROADCAST = "ff:ff:ff:ff:ff:ff"


def _is_monitor_mode(interface: str) -> bool:
    try:
        result = subprocess.run(["iw", "dev", interface, "info"], capture_output=True, text=True, timeout=5)
        return "type monitor" in result.stdout
    except (OSError, subprocess.SubprocessError):
        return False


def _enable_monitor_mode(interface: str) -> bool:
    try:
        subprocess.run(["ip", "link", "set", interface, "down"], capture_output=True, timeout=5)
        subprocess.run(["iw", "dev", interface, "set", "type", "monitor"], capture_output=True, timeout=5)
        subprocess.run(["ip", "link", "set", interface, "up"], capture_output=True, timeout=5)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Could not switch %s to monitor mode: %s", interface, e)
        return False
    time.sleep(1)  # mode change settles
    return _is_monitor_mode(interface)


def frame_to_detection(pkt, radio_id: str) -> Optional[Detection]:
    """Detection for a captured frame, or None when it carries no client address."""
    if not pkt.haslayer(Dot11):
        return None
    mac = pkt[Dot11].addr2
    if not mac or mac.lower() == BROADCAST:
        return None

    ssid = None
    if pkt.haslayer(Dot11Elt):
        elt = pkt[Dot11Elt]
        while isinstance(elt, Dot11Elt):
            if elt.ID == 0 and elt.info:
                ssid = elt.info.decode("utf-8", errors="ignore") or None
                break
            elt = elt.payload

    rssi = getattr(pkt, "dBm_AntSignal", None)
    return Detection(
        address=mac,
        rssi_dbm=int(rssi) if rssi is not None else None,
        radio_kind=RadioKind.WIFI.value,
        name=ssid,
        radio_id=radio_id,
    )


class WiFiScanner:
    def __init__(self, sink: Callable[[Detection], Any], interface: str = settings.WIFI_INTERFACE):
        self.sink = sink
        self.interface = interface
        self.radio_id = f"wifi:{interface}"
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._packet_count = 0
        self._error: Optional[str] = None

    def start(self) -> None:
        """Start capturing WiFi frames in a background thread."""
        if self._thread and self._thread.is_alive():
            return

        if not self._check_interface():
            self._error = f"monitor mode unavailable on {self.interface}"
            logger.error("Could not enable monitor mode on %s", self.interface)
            return

        self._stop.clear()
        self._error = None
        self._thread = threading.Thread(target=self._run, name="wifi-scanner", daemon=True)
        self._thread.start()
        logger.info("WiFi scanner started on %s", self.interface)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        logger.info("WiFi scanner stopped. Captured %d frames.", self._packet_count)

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self._thread and self._thread.is_alive() else "stopped",
            "interface": self.interface,
            "packet_count": self._packet_count,
            "error": self._error,
        }

    def _check_interface(self) -> bool:
        if _is_monitor_mode(self.interface):
            return True
        logger.warning("WiFi interface %s is not in monitor mode, attempting to enable...", self.interface)
        return _enable_monitor_mode(self.interface)

    def _run(self) -> None:
        conf.verb = 0
        try:
            sniff(
                iface=self.interface,
                prn=self._packet_callback,
                stop_filter=lambda _: self._stop.is_set(),
                store=False,
                monitor=True,
            )
        except PermissionError:
            self._error = "permission denied"
            logger.error("Need root to capture on %s", self.interface)
        except OSError as e:
            self._error = str(e)
            logger.exception("WiFi capture on %s failed", self.interface)

    def _packet_callback(self, pkt) -> None:
        if self._stop.is_set():
            return
        try:
            detection = frame_to_detection(pkt, self.radio_id)
        except (AttributeError, IndexError, ValueError):
            logger.debug("Skipping malformed frame")
            return
        if detection is None:
            return
        self._packet_count += 1
        self.sink(detection)
