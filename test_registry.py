#!/usr/bin/env python3
"""Test the device registry: merging, RSSI history and concurrency."""

import itertools
import threading

import pytest

from gps_client import DEFAULT_FIX
from mac_utils import lookup_manufacturer, normalize_mac
from registry import HISTORY_LIMIT, Detection, DeviceRegistry, RadioKind


def make_registry(start=1_000, step=10):
    ticks = itertools.count(start, step)
    lock = threading.Lock()

    def clock():
        with lock:
            return next(ticks)

    return DeviceRegistry(lambda: DEFAULT_FIX, clock=clock)


def seen(address="00:11:22:33:44:55", rssi=-60, **kwargs):
    return Detection(address=address, rssi_dbm=rssi, radio_kind=kwargs.pop("radio_kind", RadioKind.LE.value), **kwargs)


def test_new_device():
    registry = make_registry()
    device = registry.upsert(seen(name="Phone"))

    assert device.detection_count == 1
    assert device.first_seen_ms == device.last_seen_ms == 1_000
    assert device.display_name == "Phone"
    assert device.manufacturer == "CIMSYS Inc"
    assert device.system_fix == DEFAULT_FIX


def test_repeated_upserts_count_every_detection():
    registry = make_registry()
    for _ in range(7):
        device = registry.upsert(seen())

    assert device.detection_count == 7
    assert device.first_seen_ms == 1_000
    assert device.first_seen_ms <= device.last_seen_ms
    assert len(registry) == 1


def test_merge_keeps_known_values():
    registry = make_registry()
    registry.upsert(seen(name="Phone", rssi=-70))
    device = registry.upsert(seen(name=None, rssi=None, radio_kind=None))

    assert device.display_name == "Phone"
    assert device.last_rssi_dbm == -70
    assert device.radio_kind == RadioKind.LE.value


def test_manufacturer_hint_wins_and_unknown_never_overwrites():
    registry = make_registry()
    address = "DE:AD:BE:EF:00:01"
    assert registry.upsert(seen(address)).manufacturer == "Unknown"
    assert registry.upsert(seen(address, manufacturer_hint="Acme")).manufacturer == "Acme"
    assert registry.upsert(seen(address)).manufacturer == "Acme"


def test_addresses_are_normalized():
    registry = make_registry()
    registry.upsert(seen("aa-bb-cc-dd-ee-ff"))
    device = registry.upsert(seen("AABBCCDDEEFF"))

    assert device.address == "AA:BB:CC:DD:EE:FF"
    assert device.detection_count == 2
    assert registry.get("aa:bb:cc:dd:ee:ff") is device


def test_invalid_address_raises():
    registry = make_registry()
    with pytest.raises(ValueError):
        registry.upsert(seen("not-a-mac"))
    assert len(registry) == 0


def test_history_is_bounded_fifo():
    registry = make_registry()
    for i in range(HISTORY_LIMIT + 1):
        registry.upsert(seen(rssi=-30 - i))

    history = registry.history_for("00:11:22:33:44:55")
    assert len(history) == HISTORY_LIMIT
    # the first sample (-30) was evicted
    assert history[0].rssi_dbm == -31
    assert history[-1].rssi_dbm == -30 - HISTORY_LIMIT


def test_detection_without_rssi_adds_no_sample():
    registry = make_registry()
    registry.upsert(seen(rssi=-60))
    device = registry.upsert(seen(rssi=None))

    assert device.detection_count == 2
    assert len(registry.history_for(device.address)) == 1


def test_estimate_is_stored_on_device():
    registry = make_registry()
    for _ in range(3):
        device = registry.upsert(seen(rssi=-59))

    assert device.emitter_lat == pytest.approx(DEFAULT_FIX.latitude)
    assert device.emitter_lon == pytest.approx(DEFAULT_FIX.longitude)
    assert device.emitter_accuracy_m == pytest.approx(0.5)


def test_unknown_lookups():
    registry = make_registry()
    assert registry.get("00:00:00:00:00:01") is None
    assert registry.get("nonsense") is None
    assert registry.history_for("00:00:00:00:00:01") == []


def test_clear_all_resets_devices_and_history():
    registry = make_registry()
    for _ in range(5):
        registry.upsert(seen())
    registry.clear_all()

    assert len(registry) == 0
    assert registry.history_for("00:11:22:33:44:55") == []
    device = registry.upsert(seen())
    assert device.detection_count == 1
    assert len(registry.history_for(device.address)) == 1


def test_snapshot_most_recent_first():
    registry = make_registry()
    registry.upsert(seen("00:00:00:00:00:01"))
    registry.upsert(seen("00:00:00:00:00:02"))
    registry.upsert(seen("00:00:00:00:00:01"))

    assert [d.address for d in registry.snapshot()] == ["00:00:00:00:00:01", "00:00:00:00:00:02"]


def test_concurrent_upserts_same_address():
    registry = make_registry()
    threads = [threading.Thread(target=lambda: [registry.upsert(seen()) for _ in range(50)]) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    device = registry.get("00:11:22:33:44:55")
    assert device.detection_count == 400
    assert len(registry.history_for(device.address)) == HISTORY_LIMIT


def test_randomized_flag():
    registry = make_registry()
    assert registry.upsert(seen("02:11:22:33:44:55")).to_dict()["randomized"] is True
    assert registry.upsert(seen("00:11:22:33:44:55")).to_dict()["randomized"] is False


def test_mac_utils():
    assert normalize_mac(" aa:bb:cc:dd:ee:ff ") == "AA:BB:CC:DD:EE:FF"
    assert lookup_manufacturer("dc:2c:26:00:00:00") == "Apple, Inc."
    with pytest.raises(ValueError):
        normalize_mac("AA:BB:CC")
