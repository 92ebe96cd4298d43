#!/usr/bin/env python3
"""
Emitter Geolocation Module

Turns a device's RSSI history into an estimate of where the emitter is:
- Converts RSSI to a distance with a log-distance path-loss model
- Picks the strongest readings and computes an inverse-square weighted
  centroid of the positions they were taken from
- Reports a rough 50% CEP radius alongside the estimate

Everything here is pure: no I/O, no locking, safe to call inside the
registry's per-device critical section.

Author: BlueK9 Team
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

# Path-loss model parameters
TX_POWER_DBM = -59      # Assumed RSSI at 1 meter
PATH_LOSS_EXPONENT = 2.5  # 2 for free space, 2.5-4 for indoor/mixed

INVALID_DISTANCE = -1.0  # Returned for rssi == 0 (InvalidSignal)

EARTH_RADIUS_M = 6371000
TRILATERATION_SAMPLES = 3
CEP_FACTOR = 0.5


@dataclass(frozen=True)
class EmitterEstimate:
    """Estimated emitter position; accuracy_m is None when there is no usable signal."""
    lat: float
    lon: float
    accuracy_m: Optional[float]

    def to_dict(self) -> dict:
        return {'lat': self.lat, 'lon': self.lon, 'accuracy_m': self.accuracy_m}


def distance_meters(rssi_dbm: float) -> float:
    """Estimate distance from RSSI using the log-distance path-loss model.

    distance = 10 ^ ((A - rssi) / (10 * n))

    Returns INVALID_DISTANCE (-1) for rssi == 0, which callers must treat as
    "no usable data" rather than a real distance.
    """
    if rssi_dbm == 0:
        return INVALID_DISTANCE

    ratio = (TX_POWER_DBM - rssi_dbm) / (10 * PATH_LOSS_EXPONENT)
    return 10 ** ratio


def is_valid_distance(distance: float) -> bool:
    return distance > 0


def to_cartesian(lat: float, lon: float) -> tuple:
    """Spherical-Earth conversion of degrees to ECEF-like x, y, z in meters."""
    lat_rad = math.radians(lat)
    lon_rad = math.radians(lon)
    return (
        EARTH_RADIUS_M * math.cos(lat_rad) * math.cos(lon_rad),
        EARTH_RADIUS_M * math.cos(lat_rad) * math.sin(lon_rad),
        EARTH_RADIUS_M * math.sin(lat_rad),
    )


def from_cartesian(x: float, y: float, z: float) -> tuple:
    lat = math.degrees(math.atan2(z, math.sqrt(x * x + y * y)))
    lon = math.degrees(math.atan2(y, x))
    return lat, lon


def strongest_samples(history: Sequence, count: int = TRILATERATION_SAMPLES) -> List:
    """The `count` highest-RSSI samples, regardless of age.

    sorted() is stable, so equal readings keep their history order.
    """
    return sorted(history, key=lambda s: s.rssi_dbm, reverse=True)[:count]


def _single_point(history: Sequence, current_fix) -> EmitterEstimate:
    accuracy = None
    if history:
        radius = distance_meters(history[-1].rssi_dbm)
        if is_valid_distance(radius):
            accuracy = radius
    return EmitterEstimate(lat=current_fix.latitude, lon=current_fix.longitude, accuracy_m=accuracy)


def estimate(history: Sequence, current_fix) -> EmitterEstimate:
    """Estimate an emitter location from its RSSI history.

    Args:
        history: DetectionSamples ordered oldest first
        current_fix: PositionFix of the scanner right now

    With fewer than 3 samples the estimate is the scanner's own position with
    the most recent sample's distance as radius. Otherwise the 3 strongest
    samples are combined into an inverse-square weighted centroid.
    """
    if len(history) < TRILATERATION_SAMPLES:
        return _single_point(history, current_fix)

    total_weight = 0.0
    weighted = [0.0, 0.0, 0.0]
    radii = []

    for sample in strongest_samples(history):
        radius = distance_meters(sample.rssi_dbm)
        if not is_valid_distance(radius):
            continue
        weight = 1 / (radius * radius)  # Inverse square: closer readings dominate
        x, y, z = to_cartesian(sample.fix.latitude, sample.fix.longitude)
        weighted[0] += x * weight
        weighted[1] += y * weight
        weighted[2] += z * weight
        total_weight += weight
        radii.append(radius)

    if not radii:
        return EmitterEstimate(lat=current_fix.latitude, lon=current_fix.longitude, accuracy_m=None)

    lat, lon = from_cartesian(*(w / total_weight for w in weighted))
    return EmitterEstimate(lat=lat, lon=lon, accuracy_m=max(radii) * CEP_FACTOR)
