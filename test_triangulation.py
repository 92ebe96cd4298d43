#!/usr/bin/env python3
"""Test RSSI distance model and emitter position estimation."""

from dataclasses import replace

import pytest

from gps_client import DEFAULT_FIX
from registry import DetectionSample
from triangulation import (
    INVALID_DISTANCE,
    distance_meters,
    estimate,
    from_cartesian,
    is_valid_distance,
    strongest_samples,
    to_cartesian,
)


def fix_at(lat, lon):
    return replace(DEFAULT_FIX, latitude=lat, longitude=lon)


def sample(rssi, lat=10.0, lon=20.0, t=0):
    return DetectionSample("AA:BB:CC:DD:EE:FF", rssi, fix_at(lat, lon), t)


def test_distance_at_reference_power():
    """RSSI equal to the 1 m reference power is one meter."""
    assert distance_meters(-59) == 1.0


def test_distance_grows_with_weaker_signal():
    assert distance_meters(-84) == pytest.approx(10.0)
    assert distance_meters(-69) > distance_meters(-64)


def test_zero_rssi_is_invalid():
    assert distance_meters(0) == INVALID_DISTANCE == -1.0
    assert not is_valid_distance(distance_meters(0))


def test_single_sample_uses_scanner_position():
    """With fewer than 3 samples the current fix is the estimate."""
    current = fix_at(1.0, 2.0)
    result = estimate([sample(-70, 50, 60), sample(-84, 50, 60)], current)

    assert result.lat == 1.0
    assert result.lon == 2.0
    assert result.accuracy_m == pytest.approx(10.0)


def test_no_samples_has_no_accuracy():
    result = estimate([], fix_at(1.0, 2.0))
    assert (result.lat, result.lon, result.accuracy_m) == (1.0, 2.0, None)


def test_single_invalid_sample_has_no_accuracy():
    result = estimate([sample(0)], fix_at(1.0, 2.0))
    assert result.accuracy_m is None


def test_three_identical_samples_return_their_position():
    history = [sample(-69), sample(-69), sample(-69)]
    result = estimate(history, fix_at(0.0, 0.0))

    assert result.lat == pytest.approx(10.0, abs=1e-9)
    assert result.lon == pytest.approx(20.0, abs=1e-9)
    assert result.accuracy_m == pytest.approx(distance_meters(-69) * 0.5)


def test_closer_readings_dominate_the_centroid():
    history = [sample(-59, 0.0, 0.0), sample(-84, 0.0, 1.0), sample(-84, 0.0, 1.0)]
    result = estimate(history, fix_at(5.0, 5.0))

    assert result.lat == pytest.approx(0.0, abs=1e-9)
    assert 0.0 < result.lon < 0.05
    assert result.accuracy_m == pytest.approx(5.0)


def test_strongest_samples_ignore_age():
    history = [sample(-50, t=1), sample(-90, t=2), sample(-60, t=3), sample(-55, t=4), sample(-95, t=5)]
    picked = strongest_samples(history)
    assert [s.rssi_dbm for s in picked] == [-50, -55, -60]


def test_invalid_samples_are_excluded_from_weighting():
    # 0 dBm sorts first but carries no distance
    history = [sample(0, 80.0, 80.0), sample(-69), sample(-69)]
    result = estimate(history, fix_at(0.0, 0.0))

    assert result.lat == pytest.approx(10.0, abs=1e-9)
    assert result.lon == pytest.approx(20.0, abs=1e-9)


def test_all_invalid_falls_back_to_current_fix():
    history = [sample(0), sample(0), sample(0)]
    result = estimate(history, fix_at(3.0, 4.0))
    assert (result.lat, result.lon, result.accuracy_m) == (3.0, 4.0, None)


def test_cartesian_conversion_round_trip():
    lat, lon = from_cartesian(*to_cartesian(52.4064, 16.9252))
    assert lat == pytest.approx(52.4064)
    assert lon == pytest.approx(16.9252)
