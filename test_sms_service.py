#!/usr/bin/env python3
"""Test SMS alert composition and the modem AT command sequence."""

import logging
from dataclasses import replace

import pytest

from alerts import Target
from events import EventBus, EventKind, TargetAlert
from gps_client import DEFAULT_FIX
from registry import Device
from sms_service import SmsNotifier, compose_message, format_number
from storage import Storage


class FakeSerial:
    instances = []

    def __init__(self, path, baudrate, timeout=None):
        self.path = path
        self.baudrate = baudrate
        self.writes = []
        self.closed = False
        FakeSerial.instances.append(self)

    def write(self, data):
        self.writes.append(data)
        return len(data)

    def close(self):
        self.closed = True


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "bluek9.db"))
    s.init_db()
    return s


def make_alert(name="Phone"):
    device = Device(
        address="11:22:33:44:55:66",
        display_name=name,
        manufacturer="Test Manufacturer",
        radio_kind="LE",
        last_rssi_dbm=-62,
        first_seen_ms=0,
        last_seen_ms=1_700_000_000_000,
        detection_count=1,
        system_fix=DEFAULT_FIX,
    )
    return TargetAlert(device, replace(DEFAULT_FIX, latitude=52.4064, longitude=16.9252))


def test_format_number():
    assert format_number("5551234567") == "15551234567"
    assert format_number("+48123456789") == "+48123456789"


def test_compose_message():
    lines = compose_message(make_alert(), "BlueK9-01", target_name="Suspect").split("\n")

    assert lines[0] == "BlueK9 TARGET DETECTED"
    assert lines[1] == "BD Addr: 11:22:33:44:55:66"
    assert lines[2].startswith("Time: ")
    assert lines[3] == "System: BlueK9-01"
    assert lines[4] == "Location: 52.406400, 16.925200"
    assert lines[5] == "Device: Suspect"
    assert lines[6] == "RSSI: -62 dBm"


def test_compose_message_falls_back_to_device_name():
    assert "Device: Phone" in compose_message(make_alert(), "BlueK9-01")
    assert "Device: Unknown" in compose_message(make_alert(name=None), "BlueK9-01")


def test_send_sms_at_sequence():
    FakeSerial.instances = []
    notifier = SmsNotifier(None, modem_path="/dev/ttyUSB2", serial_factory=FakeSerial,
                           command_delay=0, send_delay=0)
    notifier.send_sms("5551234567", "hello")

    port = FakeSerial.instances[0]
    assert port.path == "/dev/ttyUSB2"
    assert port.baudrate == 115200
    assert port.writes == [b"AT\r", b"AT+CMGF=1\r", b'AT+CMGS="15551234567"\r', b"hello", b"\x1a"]
    assert port.closed


def test_alert_logged_and_queued_for_every_number(storage, caplog):
    caplog.set_level(logging.INFO, logger="bluek9.sms")
    storage.set_sms_numbers(["5551234567", "5559876543"])
    bus = EventBus()
    notifier = SmsNotifier(storage, target_lookup=lambda address: Target(address, name="Suspect"))
    notifier.attach(bus)
    notifier.start()
    try:
        bus.publish(EventKind.TARGET_ALERT, make_alert())
        notifier.wait_idle()
    finally:
        notifier.stop()

    # no modem configured: messages are logged only
    logged = [r.args for r in caplog.records if r.getMessage().startswith("SMS (modem not available)")]
    assert [number for number, _ in logged] == ["15551234567", "15559876543"]
    assert "Device: Suspect" in logged[0][1]

    alert_logs = [entry for entry in storage.get_logs() if entry["level"] == "alert"]
    assert alert_logs[0]["message"] == "Target detected: 11:22:33:44:55:66 on BlueK9-01"
    assert alert_logs[0]["data"]["address"] == "11:22:33:44:55:66"


def test_stop_unsubscribes(storage):
    bus = EventBus()
    notifier = SmsNotifier(storage)
    notifier.attach(bus)
    notifier.stop()
    assert bus.publish(EventKind.TARGET_ALERT, make_alert()) == 0
