"""
NMEA 0183 sentence parsing for the positioning subsystem.

Only the two sentences that carry a usable position are interpreted:

  - GGA ($GPGGA / $GNGGA): position, altitude and HDOP, gated on fix quality
  - RMC ($GPRMC / $GNRMC): position, speed over ground and course

Everything else is ignored. Malformed sentences raise ParseFailure so the
caller can drop them without tearing down the reader.

Usage example:
  reading = parse_sentence("$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,*47")
  fix = apply_reading(previous_fix, reading, now_ms)
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from functools import reduce
from typing import Optional, Union

KNOTS_TO_MPS = 0.514444
HDOP_ACCURACY_FACTOR = 5.0  # rough heuristic, not a statistical CEP

GGA_TYPES = ("$GPGGA", "$GNGGA")
RMC_TYPES = ("$GPRMC", "$GNRMC")
HEMISPHERES = ("N", "S", "E", "W")


class ParseFailure(ValueError):
    """Raised for a sentence that is recognised but cannot be used."""


@dataclass(frozen=True)
class GgaReading:
    latitude: float
    longitude: float
    altitude_m: float
    accuracy_m: float
    quality: int


@dataclass(frozen=True)
class RmcReading:
    latitude: float
    longitude: float
    speed_mps: float
    heading_deg: float


Reading = Union[GgaReading, RmcReading]


def nmea_checksum(body: str) -> str:
    """XOR checksum of everything between '$' and '*', as two hex digits."""
    return f"{reduce(lambda acc, ch: acc ^ ord(ch), body, 0):02X}"


def parse_coordinate(value: str, hemisphere: str) -> float:
    """Convert NMEA ddmm.mmmm / dddmm.mmmm to signed decimal degrees."""
    if not value or not hemisphere:
        raise ParseFailure("missing coordinate field")
    if hemisphere not in HEMISPHERES:
        raise ParseFailure(f"bad hemisphere {hemisphere!r}")
    try:
        raw = float(value)
    except ValueError:
        raise ParseFailure(f"bad coordinate {value!r}") from None
    if not math.isfinite(raw):
        raise ParseFailure(f"bad coordinate {value!r}")
    degrees = math.floor(raw / 100)
    minutes = raw - degrees * 100
    decimal = degrees + minutes / 60
    if hemisphere in ("S", "W"):
        decimal = -decimal
    return decimal


def _float_or(value: str, default: float) -> float:
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        raise ParseFailure(f"bad numeric field {value!r}") from None
    if not math.isfinite(number):
        raise ParseFailure(f"bad numeric field {value!r}")
    return number


def _split(sentence: str) -> list:
    sentence = sentence.strip()
    if "*" in sentence:
        body, _, checksum = sentence[1:].partition("*")
        if checksum and checksum.upper() != nmea_checksum(body):
            raise ParseFailure("checksum mismatch")
        sentence = "$" + body
    return sentence.split(",")


def parse_sentence(sentence: str) -> Optional[Reading]:
    """Parse one NMEA line.

    Returns None for sentences that are not interpreted (including GGA with
    fix quality 0), a GgaReading or RmcReading otherwise.

    Raises:
        ParseFailure: required fields missing or invalid
    """
    if not sentence.startswith("$"):
        return None

    kind = sentence.split(",", 1)[0]
    if kind not in GGA_TYPES and kind not in RMC_TYPES:
        return None

    parts = _split(sentence)

    if kind in GGA_TYPES:
        if len(parts) < 10:
            raise ParseFailure("GGA sentence too short")
        try:
            quality = int(parts[6])
        except ValueError:
            raise ParseFailure(f"bad fix quality {parts[6]!r}") from None
        if quality <= 0:
            return None
        hdop = _float_or(parts[8], 1.0)
        return GgaReading(
            latitude=parse_coordinate(parts[2], parts[3]),
            longitude=parse_coordinate(parts[4], parts[5]),
            altitude_m=_float_or(parts[9], 0.0),
            accuracy_m=hdop * HDOP_ACCURACY_FACTOR,
            quality=quality,
        )

    if len(parts) < 9:
        raise ParseFailure("RMC sentence too short")
    return RmcReading(
        latitude=parse_coordinate(parts[3], parts[4]),
        longitude=parse_coordinate(parts[5], parts[6]),
        speed_mps=_float_or(parts[7], 0.0) * KNOTS_TO_MPS,
        heading_deg=_float_or(parts[8], 0.0),
    )


def apply_reading(fix, reading: Reading, now_ms: int):
    """Return a new PositionFix with the reading merged over `fix`.

    GGA carries no motion data and RMC no altitude/accuracy, so each keeps the
    other's last values.
    """
    if isinstance(reading, GgaReading):
        return replace(
            fix,
            latitude=reading.latitude,
            longitude=reading.longitude,
            altitude_m=reading.altitude_m,
            accuracy_m=reading.accuracy_m,
            captured_at_ms=now_ms,
        )
    return replace(
        fix,
        latitude=reading.latitude,
        longitude=reading.longitude,
        speed_mps=reading.speed_mps,
        heading_deg=reading.heading_deg,
        captured_at_ms=now_ms,
    )
