# file: storage.py
"""
SQLite snapshot/log store.

The engine keeps live state in memory; this database is a passive copy:
  - devices:     latest record per address (written on every registry upsert)
  - targets:     operator watchlist
  - logs:        operator-visible event log
  - settings:    runtime-editable key/value settings (GPS source, SMS modem, ...)
  - sms_numbers: alert recipients

Each call opens its own short-lived connection, so the store can be used from
scanner threads, the GPS thread and the web server at the same time.
"""
import csv
import io
import json
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import settings
from alerts import Target
from gps_client import GpsConfig
from registry import Device

DEFAULT_DB_PATH = os.path.join(settings.DATA_DIR, settings.DB_FILE)

DEFAULT_SETTINGS = {
    "gps_source": settings.GPS_SOURCE,
    "nmea_host": settings.NMEA_HOST,
    "nmea_port": str(settings.NMEA_PORT),
    "system_name": settings.SYSTEM_NAME,
    "sms_modem_path": settings.SMS_MODEM_PATH,
}

CSV_HEADERS = [
    "Address", "Name", "Manufacturer", "Type", "RSSI", "First Seen", "Last Seen",
    "System Lat", "System Lon", "Emitter Lat", "Emitter Lon", "Accuracy", "Detection Count",
]

DEVICE_COLUMNS = (
    "address", "name", "manufacturer", "radio_kind", "rssi", "first_seen", "last_seen",
    "system_lat", "system_lon", "emitter_lat", "emitter_lon", "emitter_accuracy", "detection_count",
)


def _iso_utc(ms: Optional[int]) -> str:
    if ms is None:
        return ""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _blank(value: Any) -> Any:
    return "" if value is None else value


def export_csv(devices: Iterable[Dict[str, Any]]) -> str:
    """One quoted CSV row per device record, in the order given."""
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for d in devices:
        writer.writerow([
            d["address"],
            _blank(d.get("name")),
            _blank(d.get("manufacturer")),
            _blank(d.get("radio_kind")),
            _blank(d.get("rssi")),
            _iso_utc(d.get("first_seen")),
            _iso_utc(d.get("last_seen")),
            _blank(d.get("system_lat")),
            _blank(d.get("system_lon")),
            _blank(d.get("emitter_lat")),
            _blank(d.get("emitter_lon")),
            _blank(d.get("emitter_accuracy")),
            d.get("detection_count") or 1,
        ])
    return out.getvalue()


class Storage:
    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def init_db(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        con = sqlite3.connect(self.db_path)
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")

        # Devices table (one row per unique address, latest merged state)
        con.execute("""
        CREATE TABLE IF NOT EXISTS devices (
            address TEXT PRIMARY KEY,
            name TEXT,
            manufacturer TEXT,
            radio_kind TEXT,
            rssi INTEGER,
            first_seen INTEGER NOT NULL,       -- Unix epoch, milliseconds
            last_seen INTEGER NOT NULL,
            system_lat REAL,                   -- scanner position at last detection
            system_lon REAL,
            emitter_lat REAL,                  -- estimated emitter position
            emitter_lon REAL,
            emitter_accuracy REAL,             -- meters, heuristic 50% CEP
            detection_count INTEGER NOT NULL DEFAULT 1
        );
        """)

        con.execute("""
        CREATE TABLE IF NOT EXISTS targets (
            address TEXT PRIMARY KEY,
            name TEXT,
            description TEXT,
            added_at INTEGER
        );
        """)

        con.execute("""
        CREATE TABLE IF NOT EXISTS logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp INTEGER,
            level TEXT,
            message TEXT,
            data TEXT
        );
        """)

        con.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT
        );
        """)

        con.execute("""
        CREATE TABLE IF NOT EXISTS sms_numbers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            number TEXT UNIQUE
        );
        """)

        con.execute("CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices(last_seen);")
        con.execute("CREATE INDEX IF NOT EXISTS idx_logs_ts ON logs(timestamp);")

        for key, value in DEFAULT_SETTINGS.items():
            con.execute("INSERT OR IGNORE INTO settings(key, value) VALUES (?, ?);", (key, value))

        con.commit()
        con.close()

    @contextmanager
    def db(self):
        con = sqlite3.connect(self.db_path, isolation_level=None)
        con.row_factory = sqlite3.Row
        try:
            yield con
        finally:
            con.close()

    # ---- devices ----

    def save_device(self, device: Device) -> None:
        with self.db() as con:
            con.execute("""
                INSERT INTO devices(address, name, manufacturer, radio_kind, rssi, first_seen, last_seen,
                                    system_lat, system_lon, emitter_lat, emitter_lon, emitter_accuracy,
                                    detection_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(address) DO UPDATE SET
                  name=COALESCE(excluded.name, devices.name),
                  manufacturer=COALESCE(excluded.manufacturer, devices.manufacturer),
                  radio_kind=COALESCE(excluded.radio_kind, devices.radio_kind),
                  rssi=excluded.rssi,
                  first_seen=excluded.first_seen,
                  last_seen=excluded.last_seen,
                  system_lat=excluded.system_lat,
                  system_lon=excluded.system_lon,
                  emitter_lat=excluded.emitter_lat,
                  emitter_lon=excluded.emitter_lon,
                  emitter_accuracy=excluded.emitter_accuracy,
                  detection_count=excluded.detection_count;
            """, (
                device.address, device.display_name, device.manufacturer, device.radio_kind,
                device.last_rssi_dbm, device.first_seen_ms, device.last_seen_ms,
                device.system_fix.latitude, device.system_fix.longitude,
                device.emitter_lat, device.emitter_lon, device.emitter_accuracy_m,
                device.detection_count,
            ))

    def get_devices(self) -> List[Dict[str, Any]]:
        with self.db() as con:
            rows = con.execute(
                f"SELECT {', '.join(DEVICE_COLUMNS)} FROM devices ORDER BY last_seen DESC"
            ).fetchall()
        return [dict(row) for row in rows]

    def clear_devices(self) -> None:
        with self.db() as con:
            con.execute("DELETE FROM devices;")

    # ---- targets ----

    def add_target(self, target: Target) -> None:
        with self.db() as con:
            con.execute(
                "INSERT OR REPLACE INTO targets(address, name, description, added_at) VALUES (?, ?, ?, ?);",
                (target.address, target.name, target.description, target.added_at_ms),
            )

    def remove_target(self, address: str) -> None:
        with self.db() as con:
            con.execute("DELETE FROM targets WHERE address = ? COLLATE NOCASE;", (address,))

    def get_targets(self) -> List[Target]:
        with self.db() as con:
            rows = con.execute("SELECT address, name, description, added_at FROM targets").fetchall()
        return [
            Target(address=r["address"], name=r["name"], description=r["description"], added_at_ms=r["added_at"] or 0)
            for r in rows
        ]

    # ---- logs ----

    def add_log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None,
                timestamp_ms: Optional[int] = None) -> None:
        with self.db() as con:
            con.execute(
                "INSERT INTO logs(timestamp, level, message, data) VALUES (?, ?, ?, ?);",
                (timestamp_ms or int(time.time() * 1000), level, message,
                 json.dumps(data, default=str) if data is not None else None),
            )

    def get_logs(self, limit: int = 1000) -> List[Dict[str, Any]]:
        with self.db() as con:
            rows = con.execute(
                "SELECT id, timestamp, level, message, data FROM logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        logs = []
        for row in rows:
            entry = dict(row)
            entry["data"] = json.loads(entry["data"]) if entry["data"] else None
            logs.append(entry)
        return logs

    # ---- settings ----

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self.db() as con:
            row = con.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: Any) -> None:
        with self.db() as con:
            con.execute("INSERT OR REPLACE INTO settings(key, value) VALUES (?, ?);",
                        (key, "" if value is None else str(value)))

    def get_all_settings(self) -> Dict[str, str]:
        with self.db() as con:
            rows = con.execute("SELECT key, value FROM settings").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def get_gps_config(self) -> GpsConfig:
        values = self.get_all_settings()
        try:
            nmea_port = int(values.get("nmea_port") or settings.NMEA_PORT)
        except ValueError:
            nmea_port = settings.NMEA_PORT
        return GpsConfig(
            mode=values.get("gps_source") or settings.GPS_SOURCE,
            nmea_host=values.get("nmea_host") or "",
            nmea_port=nmea_port,
        )

    def save_gps_config(self, config: GpsConfig) -> None:
        with self.db() as con:
            con.execute("BEGIN;")
            for key, value in (("gps_source", config.mode), ("nmea_host", config.nmea_host),
                               ("nmea_port", config.nmea_port)):
                con.execute("INSERT OR REPLACE INTO settings(key, value) VALUES (?, ?);", (key, str(value)))
            con.execute("COMMIT;")

    # ---- sms numbers ----

    def get_sms_numbers(self) -> List[str]:
        with self.db() as con:
            rows = con.execute("SELECT number FROM sms_numbers ORDER BY id").fetchall()
        return [row["number"] for row in rows]

    def set_sms_numbers(self, numbers: Iterable[str]) -> None:
        with self.db() as con:
            con.execute("BEGIN;")
            con.execute("DELETE FROM sms_numbers;")
            for number in numbers:
                con.execute("INSERT OR IGNORE INTO sms_numbers(number) VALUES (?);", (number,))
            con.execute("COMMIT;")
