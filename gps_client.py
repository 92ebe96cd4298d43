"""
GPS position provider for the BlueK9 engine.

Normalizes several positioning sources into one live fix:
  - simulated: bounded random walk around the last fix, 1 Hz
  - nmea:      NMEA 0183 sentences over TCP (e.g. a phone or a marine GPS bridge)
  - gpsd:      gpsd JSON over TCP (like gpspipe -w), no python3-gps needed
  - mnav:      placeholder, always falls back to simulated

Each source runs on its own daemon thread and publishes into a FixCell. Readers
call current_fix() and get an immutable PositionFix without locking.

Usage example:
  provider = PositionProvider()
  provider.start(GpsConfig(mode="nmea", nmea_host="192.168.1.20"))
  print(provider.current_fix())
  provider.set_source("gpsd")   # raises ConfigurationError if gpsd is unreachable
  provider.stop()
"""
from __future__ import annotations

import json
import logging
import math
import random
import socket
import threading
import time
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional

import settings
from nmea import ParseFailure, apply_reading, parse_sentence

logger = logging.getLogger("bluek9.gps")


class GpsMode(str, Enum):
    SIMULATED = "simulated"
    NMEA = "nmea"
    GPSD = "gpsd"
    MNAV = "mnav"


class ConfigurationError(ValueError):
    """The requested GPS source cannot be activated as configured."""


class ProviderUnavailable(RuntimeError):
    """The active GPS source failed for good; the provider falls back to simulated."""


@dataclass(frozen=True)
class PositionFix:
    latitude: float
    longitude: float
    accuracy_m: float
    altitude_m: float
    speed_mps: float
    heading_deg: float
    captured_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Served before the first real fix arrives.
DEFAULT_FIX = PositionFix(
    latitude=37.7749,
    longitude=-122.4194,
    accuracy_m=10.0,
    altitude_m=0.0,
    speed_mps=0.0,
    heading_deg=0.0,
    captured_at_ms=0,
)


@dataclass
class GpsConfig:
    mode: str = settings.GPS_SOURCE
    nmea_host: str = settings.NMEA_HOST
    nmea_port: int = settings.NMEA_PORT
    gpsd_host: str = settings.GPSD_HOST
    gpsd_port: int = settings.GPSD_PORT


def now_ms() -> int:
    return int(time.time() * 1000)


class FixCell:
    """Single-writer / multi-reader holder for the current fix.

    Each activated source gets a generation number; writes carrying an older
    generation are dropped so a torn-down source can never overwrite the fix.
    """

    def __init__(self, initial: PositionFix):
        self._fix = initial
        self._generation = 0
        self._lock = threading.Lock()

    def get(self) -> PositionFix:
        return self._fix

    def advance(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def publish(self, generation: int, fix: PositionFix) -> bool:
        with self._lock:
            if generation != self._generation:
                return False
            self._fix = fix
            return True

    def override(self, fix: PositionFix) -> None:
        with self._lock:
            self._fix = fix


def simulate_step(fix: PositionFix, rng: random.Random, timestamp_ms: int, drift: float = 0.0001) -> PositionFix:
    """One simulated update: small bounded drift around the previous fix."""
    return replace(
        fix,
        latitude=fix.latitude + (rng.random() - 0.5) * drift,
        longitude=fix.longitude + (rng.random() - 0.5) * drift,
        accuracy_m=5 + rng.random() * 10,
        speed_mps=rng.random() * 20,
        heading_deg=rng.random() * 360,
        captured_at_ms=timestamp_ms,
    )


class _SourceWorker:
    """Background thread publishing fixes for one activation of a source."""

    mode = GpsMode.SIMULATED

    def __init__(self, cell: FixCell, generation: int, on_fatal: Callable[["_SourceWorker", Exception], None]):
        self._cell = cell
        self._generation = generation
        self._on_fatal = on_fatal
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sock: Optional[socket.socket] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name=f"gps-{self.mode.value}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        sock = self._sock
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)

    @property
    def alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _publish(self, fix: PositionFix) -> None:
        if not self._stop.is_set():
            self._cell.publish(self._generation, fix)

    def _run(self) -> None:
        try:
            self._loop()
        except ProviderUnavailable as e:
            if not self._stop.is_set():
                self._on_fatal(self, e)
        except Exception as e:
            if not self._stop.is_set():
                logger.exception("GPS %s reader crashed", self.mode.value)
                self._on_fatal(self, e)

    def _loop(self) -> None:
        raise NotImplementedError

    def _read_lines(self, sock: socket.socket):
        """Yield decoded lines from `sock` until EOF or stop()."""
        sock.settimeout(1.0)
        buffer = b""
        while not self._stop.is_set():
            try:
                chunk = sock.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                return
            if not chunk:
                return
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for raw in lines:
                line = raw.decode("ascii", errors="ignore").strip()
                if line:
                    yield line


class SimulatedSource(_SourceWorker):
    mode = GpsMode.SIMULATED

    def __init__(self, cell, generation, on_fatal, interval: float = settings.SIMULATED_INTERVAL,
                 rng: Optional[random.Random] = None):
        super().__init__(cell, generation, on_fatal)
        self._interval = interval
        self._rng = rng or random.Random()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self._publish(simulate_step(self._cell.get(), self._rng, now_ms()))


class NmeaTcpSource(_SourceWorker):
    mode = GpsMode.NMEA

    def __init__(self, cell, generation, on_fatal, host: str, port: int,
                 reconnect_delay: float = settings.NMEA_RECONNECT_DELAY):
        super().__init__(cell, generation, on_fatal)
        self._host = host
        self._port = port
        self._reconnect_delay = reconnect_delay

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                sock = socket.create_connection((self._host, self._port), timeout=5.0)
            except socket.gaierror as e:
                raise ProviderUnavailable(f"cannot resolve NMEA host {self._host}: {e}") from e
            except OSError as e:
                logger.warning("NMEA TCP %s:%s unreachable (%s), retrying in %.0fs",
                               self._host, self._port, e, self._reconnect_delay)
                self._stop.wait(self._reconnect_delay)
                continue

            self._sock = sock
            logger.info("Connected to NMEA server at %s:%s", self._host, self._port)
            try:
                for line in self._read_lines(sock):
                    self.handle_sentence(line)
            finally:
                self._sock = None
                sock.close()

            if self._stop.is_set():
                break
            # Keep serving the last known fix while reconnecting
            logger.warning("NMEA TCP connection closed, reconnecting in %.0fs", self._reconnect_delay)
            self._stop.wait(self._reconnect_delay)

    def handle_sentence(self, line: str) -> None:
        try:
            reading = parse_sentence(line)
        except ParseFailure as e:
            logger.debug("Dropping NMEA sentence %r: %s", line, e)
            return
        if reading is not None:
            self._publish(apply_reading(self._cell.get(), reading, now_ms()))


class GpsdSource(_SourceWorker):
    """Reads gpsd JSON over TCP (like gpspipe -w)."""

    mode = GpsMode.GPSD

    def __init__(self, cell, generation, on_fatal, host: str = "127.0.0.1", port: int = 2947,
                 reconnect_delay: float = settings.GPSD_RECONNECT_DELAY):
        super().__init__(cell, generation, on_fatal)
        self._host = host
        self._port = port
        self._reconnect_delay = reconnect_delay

    def _loop(self) -> None:
        connected_once = False
        while not self._stop.is_set():
            try:
                sock = socket.create_connection((self._host, self._port), timeout=5.0)
            except OSError as e:
                if not connected_once:
                    raise ProviderUnavailable(f"gpsd not reachable at {self._host}:{self._port}: {e}") from e
                logger.warning("gpsd connection lost (%s), retrying", e)
                self._stop.wait(self._reconnect_delay)
                continue

            connected_once = True
            self._sock = sock
            try:
                sock.sendall(b'?WATCH={"enable":true,"json":true}\n')
                for line in self._read_lines(sock):
                    self.handle_report(line)
            except OSError as e:
                logger.warning("gpsd read error: %s", e)
            finally:
                self._sock = None
                sock.close()
            self._stop.wait(self._reconnect_delay)

    def handle_report(self, line: str) -> None:
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Dropping gpsd line %r", line)
            return
        if not isinstance(obj, dict) or obj.get("class") != "TPV":
            return
        lat, lon = obj.get("lat"), obj.get("lon")
        if lat is None or lon is None:
            return
        try:
            values = [float(v) for v in (lat, lon, obj.get("epy") or 10.0, obj.get("alt") or 0.0,
                                         obj.get("speed") or 0.0, obj.get("track") or 0.0)]
        except (TypeError, ValueError):
            logger.debug("Dropping gpsd report %r", line)
            return
        if not all(math.isfinite(v) for v in values):
            logger.debug("Dropping gpsd report %r", line)
            return
        latitude, longitude, accuracy, altitude, speed, heading = values
        self._publish(PositionFix(
            latitude=latitude,
            longitude=longitude,
            accuracy_m=accuracy,
            altitude_m=altitude,
            speed_mps=speed,
            heading_deg=heading,
            captured_at_ms=now_ms(),
        ))


class PositionProvider:
    """Owns the current fix and the lifecycle of the active GPS source.

    State machine:
      Uninitialized -> <mode> active -> (fatal I/O error) -> simulated (fallback)
    Explicit set_source() calls tear the current source down before the new one
    starts, so two sources never write concurrently. Endpoint probes run before
    the lifecycle lock is taken; status() and current_fix() never take it.
    """

    def __init__(self, initial_fix: PositionFix = DEFAULT_FIX, probe_timeout: float = settings.GPS_PROBE_TIMEOUT,
                 simulated_interval: float = settings.SIMULATED_INTERVAL,
                 nmea_reconnect_delay: float = settings.NMEA_RECONNECT_DELAY):
        self._cell = FixCell(initial_fix)
        self._lock = threading.RLock()
        self._worker: Optional[_SourceWorker] = None
        self._config = GpsConfig()
        self._requested: Optional[GpsMode] = None
        self._fallback = False
        self._probe_timeout = probe_timeout
        self._simulated_interval = simulated_interval
        self._nmea_reconnect_delay = nmea_reconnect_delay

    # ---- readers ----

    def current_fix(self) -> PositionFix:
        return self._cell.get()

    @property
    def mode(self) -> Optional[GpsMode]:
        worker = self._worker
        return worker.mode if worker else None

    def status(self) -> Dict[str, Any]:
        mode, requested, fallback, config = self.mode, self._requested, self._fallback, self._config
        return {
            "mode": mode.value if mode else None,
            "requested_mode": requested.value if requested else None,
            "fallback": fallback,
            "config": asdict(config),
            "fix": self.current_fix().to_dict(),
        }

    # ---- lifecycle ----

    def start(self, config: Optional[GpsConfig] = None) -> None:
        """Activate the configured source; never raises for an unreachable one."""
        config = config or self._config
        try:
            mode = self._check(config)
        except ConfigurationError as e:
            logger.warning("GPS source %s unavailable (%s), falling back to simulated GPS", config.mode, e)
            with self._lock:
                self._activate_simulated(fallback=True)
            return
        with self._lock:
            self._activate(config, mode)

    def set_source(self, mode: str, config: Optional[GpsConfig] = None) -> None:
        """Switch GPS source at runtime.

        Raises:
            ConfigurationError: unknown mode, or endpoint missing/unreachable.
                The current source keeps running in that case.
        """
        config = replace(config or self._config, mode=mode)
        checked = self._check(config)
        with self._lock:
            self._activate(config, checked)

    def stop(self) -> None:
        with self._lock:
            self._teardown()
            self._requested = None
            self._fallback = False

    def set_manual_location(self, lat: float, lon: float) -> PositionFix:
        """Operator override of the current position."""
        fix = replace(self.current_fix(), latitude=lat, longitude=lon, captured_at_ms=now_ms())
        self._cell.override(fix)
        return fix

    # ---- internals ----

    def _check(self, config: GpsConfig) -> GpsMode:
        try:
            mode = GpsMode(config.mode)
        except ValueError:
            raise ConfigurationError(f"unknown GPS source {config.mode!r}") from None

        if mode is GpsMode.NMEA:
            if not config.nmea_host:
                raise ConfigurationError("NMEA source requires nmea_host")
            self._probe(config.nmea_host, int(config.nmea_port))
        elif mode is GpsMode.GPSD:
            self._probe(config.gpsd_host, int(config.gpsd_port))
        return mode

    def _activate(self, config: GpsConfig, mode: GpsMode) -> None:
        self._config = config
        self._requested = mode
        logger.info("Starting GPS in mode: %s", mode.value)

        if mode is GpsMode.MNAV:
            logger.warning("Mnav GPS mode not yet implemented, falling back to simulated GPS")
            self._activate_simulated(fallback=True)
            return
        if mode is GpsMode.SIMULATED:
            self._activate_simulated(fallback=False)
            return

        self._teardown()
        generation = self._cell.advance()
        if mode is GpsMode.NMEA:
            worker = NmeaTcpSource(self._cell, generation, self._on_fatal,
                                   config.nmea_host, int(config.nmea_port),
                                   reconnect_delay=self._nmea_reconnect_delay)
        else:
            worker = GpsdSource(self._cell, generation, self._on_fatal,
                                config.gpsd_host, int(config.gpsd_port))
        self._fallback = False
        self._worker = worker
        worker.start()

    def _activate_simulated(self, fallback: bool) -> None:
        self._teardown()
        generation = self._cell.advance()
        self._fallback = fallback
        self._worker = SimulatedSource(self._cell, generation, self._on_fatal, interval=self._simulated_interval)
        self._worker.start()

    def _teardown(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.stop()

    def _probe(self, host: str, port: int) -> None:
        try:
            with socket.create_connection((host, port), timeout=self._probe_timeout):
                pass
        except OSError as e:
            raise ConfigurationError(f"{host}:{port} unreachable: {e}") from e

    def _on_fatal(self, worker: _SourceWorker, error: Exception) -> None:
        with self._lock:
            if worker is not self._worker:
                return
            logger.warning("GPS %s source unavailable (%s), falling back to simulated GPS",
                           worker.mode.value, error)
            self._activate_simulated(fallback=True)
