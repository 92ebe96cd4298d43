#!/usr/bin/env python3
"""Test target watchlist matching and per-minute alert throttling."""

import threading

from alerts import AlertThrottle, Target, TargetWatchlist

T0 = 120_000  # start of a minute bucket


def test_one_alert_per_minute_bucket():
    throttle = AlertThrottle()
    address = "11:22:33:44:55:66"

    assert throttle.should_alert(address, T0)
    throttle.record_alert(address, T0)
    assert not throttle.should_alert(address, T0 + 10_000)
    assert throttle.should_alert(address, T0 + 61_000)


def test_throttle_is_case_insensitive():
    throttle = AlertThrottle()
    throttle.record_alert("aa:bb:cc:dd:ee:ff", T0)
    assert not throttle.should_alert("AA:BB:CC:DD:EE:FF", T0 + 1)
    assert not throttle.should_alert("aa-bb-cc-dd-ee-ff", T0 + 1)


def test_targets_are_throttled_independently():
    throttle = AlertThrottle()
    throttle.record_alert("11:22:33:44:55:66", T0)
    assert throttle.should_alert("11:22:33:44:55:67", T0)


def test_old_entries_are_pruned():
    throttle = AlertThrottle()
    throttle.record_alert("11:22:33:44:55:66", T0)
    throttle.record_alert("11:22:33:44:55:67", T0 + 60_000)
    assert len(throttle) == 2

    throttle.should_alert("11:22:33:44:55:68", T0 + 5 * 60_000 + 1)
    assert len(throttle) == 1


def test_try_acquire_admits_one_concurrent_caller():
    throttle = AlertThrottle()
    results = []
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        results.append(throttle.try_acquire("11:22:33:44:55:66", T0 + 500))

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert not throttle.should_alert("11:22:33:44:55:66", T0 + 59_000)


def test_watchlist_exact_match():
    watchlist = TargetWatchlist([Target("11:22:33:44:55:66", name="Suspect")])

    assert watchlist.match("11-22-33-44-55-66").name == "Suspect"
    assert watchlist.match("11:22:33:44:55:67") is None
    assert watchlist.match("11:22:33") is None


def test_watchlist_add_remove():
    watchlist = TargetWatchlist()
    watchlist.add(Target("AA:BB:CC:DD:EE:FF"))
    assert len(watchlist) == 1

    assert watchlist.remove("aa:bb:cc:dd:ee:ff")
    assert not watchlist.remove("aa:bb:cc:dd:ee:ff")
    assert watchlist.all() == []
