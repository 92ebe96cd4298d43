#!/usr/bin/env python3
"""Test the GPS position provider, its sources and fallbacks."""

import random
import socket
import threading
import time
from dataclasses import replace

import pytest

from gps_client import (
    DEFAULT_FIX,
    ConfigurationError,
    FixCell,
    GpsConfig,
    GpsdSource,
    PositionProvider,
    simulate_step,
)

GGA = b"$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,\r\n"


def closed_port():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class NmeaFeed:
    """Local TCP server streaming one GGA sentence every 100 ms to each client."""

    def __init__(self, line=GGA):
        self.line = line
        self.accepted = []
        self.clients = []
        self.server = socket.socket()
        self.server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(5)
        self.server.settimeout(0.2)
        self.port = self.server.getsockname()[1]
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.server.accept()
            except socket.timeout:
                continue
            self.accepted.append(time.monotonic())
            self.clients.append(conn)
            threading.Thread(target=self._stream, args=(conn,), daemon=True).start()

    def drop_clients(self):
        for conn in self.clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        self.clients = []

    def _stream(self, conn):
        with conn:
            try:
                while not self._stop.is_set():
                    conn.sendall(self.line)
                    time.sleep(0.1)
            except OSError:
                pass

    def close(self):
        self._stop.set()
        self._thread.join(timeout=2)
        self.server.close()


def test_default_fix_before_any_source():
    provider = PositionProvider()
    assert provider.current_fix() == DEFAULT_FIX
    assert provider.current_fix().accuracy_m == 10.0
    assert provider.mode is None


def test_unknown_mode_rejected():
    provider = PositionProvider()
    with pytest.raises(ConfigurationError):
        provider.set_source("galileo")


def test_nmea_requires_host():
    provider = PositionProvider()
    with pytest.raises(ConfigurationError):
        provider.set_source("nmea", GpsConfig(mode="nmea", nmea_host=""))


def test_unreachable_nmea_keeps_current_source():
    provider = PositionProvider(probe_timeout=0.5)
    provider.start(GpsConfig(mode="simulated"))
    try:
        with pytest.raises(ConfigurationError):
            provider.set_source("nmea", GpsConfig(mode="nmea", nmea_host="127.0.0.1", nmea_port=closed_port()))
        assert provider.status()["mode"] == "simulated"
    finally:
        provider.stop()


def test_start_with_unreachable_source_falls_back():
    provider = PositionProvider(probe_timeout=0.5)
    provider.start(GpsConfig(mode="gpsd", gpsd_host="127.0.0.1", gpsd_port=closed_port()))
    try:
        status = provider.status()
        assert status["mode"] == "simulated"
        assert status["fallback"] is True
    finally:
        provider.stop()


def test_mnav_falls_back_to_simulated():
    provider = PositionProvider()
    provider.set_source("mnav")
    try:
        status = provider.status()
        assert status["requested_mode"] == "mnav"
        assert status["mode"] == "simulated"
        assert status["fallback"] is True
    finally:
        provider.stop()


def test_simulated_source_moves_the_fix():
    provider = PositionProvider(simulated_interval=0.05)
    provider.start(GpsConfig(mode="simulated"))
    try:
        assert wait_for(lambda: provider.current_fix().captured_at_ms > 0)
        fix = provider.current_fix()
        assert abs(fix.latitude - DEFAULT_FIX.latitude) < 0.01
        assert 5.0 <= fix.accuracy_m <= 15.0
    finally:
        provider.stop()


def test_simulate_step_bounds():
    rng = random.Random(7)
    fix = DEFAULT_FIX
    for i in range(100):
        nxt = simulate_step(fix, rng, i)
        assert abs(nxt.latitude - fix.latitude) <= 0.00005
        assert abs(nxt.longitude - fix.longitude) <= 0.00005
        assert 5.0 <= nxt.accuracy_m <= 15.0
        assert 0.0 <= nxt.speed_mps <= 20.0
        assert 0.0 <= nxt.heading_deg <= 360.0
        fix = nxt


def test_fix_cell_rejects_stale_generation():
    cell = FixCell(DEFAULT_FIX)
    old = cell.advance()
    new = cell.advance()
    moved = replace(DEFAULT_FIX, latitude=1.0)

    assert not cell.publish(old, moved)
    assert cell.get() == DEFAULT_FIX
    assert cell.publish(new, moved)
    assert cell.get().latitude == 1.0


def test_manual_location():
    provider = PositionProvider()
    fix = provider.set_manual_location(52.4064, 16.9252)
    assert provider.current_fix() == fix
    assert (fix.latitude, fix.longitude) == (52.4064, 16.9252)
    assert fix.captured_at_ms > 0


def test_nmea_tcp_feed_updates_fix():
    feed = NmeaFeed()
    provider = PositionProvider()
    try:
        provider.set_source("nmea", GpsConfig(mode="nmea", nmea_host="127.0.0.1", nmea_port=feed.port))
        assert wait_for(lambda: abs(provider.current_fix().latitude - 48.1173) < 1e-6)

        fix = provider.current_fix()
        assert fix.longitude == pytest.approx(11.516666666)
        assert fix.accuracy_m == pytest.approx(4.5)
        assert provider.status()["mode"] == "nmea"
    finally:
        provider.stop()
        feed.close()


def test_gpsd_report_handling():
    cell = FixCell(DEFAULT_FIX)
    source = GpsdSource(cell, cell.advance(), lambda worker, error: None)

    source.handle_report('{"class":"VERSION","release":"3.22"}')
    source.handle_report("not json")
    assert cell.get() == DEFAULT_FIX

    source.handle_report('{"class":"TPV","mode":3,"lat":52.4,"lon":16.9,"alt":80.0,"speed":1.5,"track":90.0}')
    fix = cell.get()
    assert (fix.latitude, fix.longitude, fix.altitude_m) == (52.4, 16.9, 80.0)
    assert fix.accuracy_m == 10.0
    assert fix.heading_deg == 90.0


def test_gpsd_report_with_bad_numbers_is_dropped():
    cell = FixCell(DEFAULT_FIX)
    source = GpsdSource(cell, cell.advance(), lambda worker, error: None)

    source.handle_report('{"class":"TPV","lat":"north","lon":16.9}')
    source.handle_report('{"class":"TPV","lat":[52.4],"lon":16.9}')
    source.handle_report('{"class":"TPV","lat":52.4,"lon":16.9,"speed":1e999}')
    assert cell.get() == DEFAULT_FIX


def test_malformed_sentences_do_not_stop_the_nmea_reader():
    bad = (b"$GPGGA,123519,inf,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,\r\n"
           b"$GPGGA,123519,nan,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,\r\n"
           b"$GPRMC,123519,A,4807.038,N,01131.000,E,1e999,084.4,230394,003.1,W\r\n")
    feed = NmeaFeed(line=bad + GGA)
    provider = PositionProvider()
    try:
        provider.set_source("nmea", GpsConfig(mode="nmea", nmea_host="127.0.0.1", nmea_port=feed.port))
        assert wait_for(lambda: abs(provider.current_fix().latitude - 48.1173) < 1e-6)
        time.sleep(0.3)

        status = provider.status()
        assert status["mode"] == "nmea"
        assert status["fallback"] is False
        assert provider.current_fix().accuracy_m == pytest.approx(4.5)
    finally:
        provider.stop()
        feed.close()


def test_nmea_connection_loss_keeps_fix_and_reconnects():
    feed = NmeaFeed()
    provider = PositionProvider(nmea_reconnect_delay=0.5)
    try:
        provider.set_source("nmea", GpsConfig(mode="nmea", nmea_host="127.0.0.1", nmea_port=feed.port))
        assert wait_for(lambda: abs(provider.current_fix().latitude - 48.1173) < 1e-6)
        assert wait_for(lambda: len(feed.accepted) == 2)  # probe + reader

        dropped_at = time.monotonic()
        feed.drop_clients()
        time.sleep(0.2)

        status = provider.status()
        assert status["mode"] == "nmea"
        assert status["fallback"] is False
        assert provider.current_fix().latitude == pytest.approx(48.1173, abs=1e-6)

        assert wait_for(lambda: len(feed.accepted) == 3)
        assert feed.accepted[2] - dropped_at >= 0.4
        assert provider.status()["mode"] == "nmea"
    finally:
        provider.stop()
        feed.close()


def test_status_does_not_wait_for_a_source_switch():
    provider = PositionProvider()
    result = []
    with provider._lock:
        reader = threading.Thread(target=lambda: result.append(provider.status()))
        reader.start()
        reader.join(timeout=1.0)
        assert not reader.is_alive()
    assert result[0]["fix"]["latitude"] == DEFAULT_FIX.latitude
