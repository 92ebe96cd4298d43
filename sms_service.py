"""
SMS alerts for target detections.

The notifier listens for TargetAlert events. Each alert is written to the
operator log right away; delivery to the phone numbers happens on a worker
thread, one serial session per message (AT, AT+CMGF=1, AT+CMGS, text, Ctrl-Z).
Without a modem path the messages are only logged.
"""
import logging
import os
import queue
import threading
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

import serial

import settings
from events import EventBus, EventKind, TargetAlert

logger = logging.getLogger("bluek9.sms")

CTRL_Z = b"\x1a"


def format_number(number: str) -> str:
    """Prefix US 10-digit numbers with the country code."""
    number = number.strip()
    if len(number) == 10:
        return "1" + number
    return number


def compose_message(alert: TargetAlert, system_name: str, target_name: Optional[str] = None) -> str:
    device = alert.device
    fix = alert.fix
    detected = datetime.fromtimestamp(device.last_seen_ms / 1000).strftime("%m/%d/%Y, %H:%M:%S")
    if fix is not None:
        location = f"{fix.latitude:.6f}, {fix.longitude:.6f}"
    else:
        location = "Unknown"
    return "\n".join([
        "BlueK9 TARGET DETECTED",
        f"BD Addr: {device.address}",
        f"Time: {detected}",
        f"System: {system_name}",
        f"Location: {location}",
        f"Device: {target_name or device.display_name or 'Unknown'}",
        f"RSSI: {device.last_rssi_dbm} dBm",
    ])


class SmsNotifier:
    def __init__(self, storage, target_lookup: Callable[[str], object] = lambda address: None,
                 modem_path: Optional[str] = None, baudrate: int = settings.SMS_BAUDRATE,
                 serial_factory=serial.Serial, command_delay: float = 0.5,
                 send_delay: float = 3.0):
        self.storage = storage
        self.target_lookup = target_lookup
        self.modem_path = modem_path
        self.baudrate = baudrate
        self.serial_factory = serial_factory
        self.command_delay = command_delay
        self.send_delay = send_delay
        self._queue: "queue.Queue[Optional[Tuple[str, str]]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ---- lifecycle ----

    def attach(self, bus: EventBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe(EventKind.TARGET_ALERT, self.on_target_alert)

    def start(self) -> None:
        if self.modem_path is None:
            configured = self.storage.get_setting("sms_modem_path") or ""
            if configured and os.path.exists(configured):
                self.modem_path = configured
                logger.info("SMS modem configured at %s", configured)
            elif configured:
                logger.warning("Configured modem path %s not found; SMS will be logged only", configured)
            else:
                logger.info("SMS modem not configured; SMS will be logged only")

        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._run, name="sms-notifier", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._thread is not None:
            self._queue.put(None)
            self._thread.join(timeout=timeout)
            self._thread = None

    def wait_idle(self) -> None:
        """Block until every queued message has been handled."""
        self._queue.join()

    # ---- alert handling ----

    def on_target_alert(self, alert: TargetAlert) -> None:
        system_name = self.storage.get_setting("system_name") or settings.SYSTEM_NAME
        target = self.target_lookup(alert.device.address)
        message = compose_message(alert, system_name, getattr(target, "name", None))

        logger.warning("TARGET DETECTED %s (RSSI %s dBm)", alert.device.address, alert.device.last_rssi_dbm)
        self.storage.add_log("alert", f"Target detected: {alert.device.address} on {system_name}",
                             alert.device.to_dict())

        for number in self.storage.get_sms_numbers():
            self._queue.put((number, message))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                number, message = item
                try:
                    self.send_sms(number, message)
                except (serial.SerialException, OSError) as e:
                    logger.error("Failed to send alert to %s: %s", number, e)
            finally:
                self._queue.task_done()

    def send_sms(self, number: str, message: str) -> None:
        full_number = format_number(number)
        if not self.modem_path:
            logger.info("SMS (modem not available) to %s:\n%s", full_number, message)
            return

        port = self.serial_factory(self.modem_path, self.baudrate, timeout=1)
        try:
            self._command(port, "AT")
            self._command(port, "AT+CMGF=1")
            self._command(port, f'AT+CMGS="{full_number}"', wait=self.command_delay * 2)
            port.write(message.encode("utf-8"))
            time.sleep(0.2)
            port.write(CTRL_Z)
            time.sleep(self.send_delay)
            logger.info("SMS alert sent to %s", full_number)
        finally:
            port.close()

    def _command(self, port, command: str, wait: Optional[float] = None) -> None:
        logger.debug(">> %s", command)
        port.write((command + "\r").encode("ascii"))
        time.sleep(self.command_delay if wait is None else wait)

    def set_numbers(self, numbers: Iterable[str]) -> List[str]:
        cleaned = [n.strip() for n in numbers if n and n.strip()]
        self.storage.set_sms_numbers(cleaned)
        return self.storage.get_sms_numbers()
