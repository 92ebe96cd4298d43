"""
Web UI server for the BlueK9 engine.

A FastAPI application built around a running Engine:
- device list, per-device RSSI history and CSV export
- target watchlist management
- GPS status, manual position override and GPS source settings
- scan start/stop, operator log and SMS recipients
- /ws/live WebSocket: periodic status updates plus pushed
  device_updated / target_alert events
"""

import asyncio
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from typing import List, Optional

import psutil
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field

from events import EventKind
from gps_client import ConfigurationError
from registry import Detection, RadioKind
from settings import WEB_UI_REFRESH_INTERVAL

logger = logging.getLogger("bluek9.web")

MAX_SMS_NUMBERS = 10


class DetectionIn(BaseModel):
    address: str
    rssi: Optional[int] = None
    radio_kind: str = RadioKind.LE.value
    name: Optional[str] = None
    manufacturer: Optional[str] = None


class TargetIn(BaseModel):
    address: str
    name: Optional[str] = None
    description: Optional[str] = None


class LocationIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class GpsSettingsIn(BaseModel):
    gps_source: str
    nmea_host: Optional[str] = None
    nmea_port: Optional[int] = Field(None, ge=1, le=65535)


class SmsNumbersIn(BaseModel):
    numbers: List[str]


# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.loop = asyncio.get_running_loop()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Dropping WebSocket client: %s", e)
                self.disconnect(connection)

    def broadcast_threadsafe(self, message: dict) -> None:
        """Schedule a broadcast from a scanner or GPS thread."""
        loop = self.loop
        if loop is None or loop.is_closed() or not self.active_connections:
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(message), loop)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _system_status(db_path: Optional[str]) -> dict:
    root_usage = shutil.disk_usage("/")
    memory = psutil.virtual_memory()
    cpu_percent = psutil.cpu_percent(interval=0.1)

    temperature = None
    sensors = getattr(psutil, "sensors_temperatures", None)
    if sensors is not None:
        temps = sensors() or {}
        for key in ("cpu_thermal", "coretemp", "acpitz"):
            if temps.get(key):
                temperature = temps[key][0].current
                break

    database_size = 0
    if db_path and os.path.exists(db_path):
        database_size = os.path.getsize(db_path)

    return {
        "timestamp": time.time(),
        "timestamp_str": datetime.now(timezone.utc).isoformat(),
        "disk": {
            "total": root_usage.total,
            "used": root_usage.used,
            "free": root_usage.free,
            "percent": (root_usage.used / root_usage.total) * 100 if root_usage.total else 0,
        },
        "memory": {
            "total": memory.total,
            "used": memory.used,
            "available": memory.available,
            "percent": memory.percent,
        },
        "cpu": {"percent": cpu_percent},
        "temperature": temperature,
        "database_size": database_size,
    }


def create_app(engine, refresh_interval: float = WEB_UI_REFRESH_INTERVAL) -> FastAPI:
    app = FastAPI(title="BlueK9", description="Live detection and geolocation dashboard API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    manager = ConnectionManager()
    app.state.engine = engine
    app.state.manager = manager

    engine.bus.subscribe(EventKind.DEVICE_UPDATED, lambda event: manager.broadcast_threadsafe(event.to_dict()))
    engine.bus.subscribe(EventKind.TARGET_ALERT, lambda event: manager.broadcast_threadsafe(event.to_dict()))

    def storage_or_error():
        if engine.storage is None:
            return None, _error("Storage not configured", 503)
        return engine.storage, None

    # ============= Status =============

    @app.get("/api/status")
    async def get_status():
        status = engine.status()
        status["timestamp"] = time.time()
        status["timestamp_str"] = datetime.now(timezone.utc).isoformat()
        return status

    @app.get("/api/system-status")
    async def get_system_status():
        """Disk, memory, CPU, temperature and database size."""
        try:
            return _system_status(engine.storage.db_path if engine.storage else None)
        except OSError as e:
            logger.error("Failed to get system status: %s", e)
            return _error(f"Failed to get system status: {e}", 500)

    # ============= Devices =============

    @app.get("/api/devices")
    async def get_devices():
        return [d.to_dict() for d in engine.registry.snapshot()]

    @app.get("/api/devices/{address}")
    async def get_device(address: str):
        device = engine.registry.get(address)
        if device is None:
            return _error("Device not found", 404)
        return device.to_dict()

    @app.get("/api/devices/{address}/history")
    async def get_device_history(address: str):
        device = engine.registry.get(address)
        if device is None:
            return _error("Device not found", 404)
        return {
            "address": device.address,
            "samples": [
                {
                    "rssi": s.rssi_dbm,
                    "lat": s.fix.latitude,
                    "lon": s.fix.longitude,
                    "captured_at": s.captured_at_ms,
                }
                for s in engine.registry.history_for(device.address)
            ],
        }

    @app.post("/api/devices/clear")
    async def clear_devices():
        engine.clear_devices()
        return {"success": True}

    @app.post("/api/detections")
    async def post_detection(body: DetectionIn):
        device = engine.handle_detection(Detection(
            address=body.address,
            rssi_dbm=body.rssi,
            radio_kind=body.radio_kind,
            name=body.name,
            manufacturer_hint=body.manufacturer,
            radio_id="api",
        ))
        if device is None:
            return _error(f"Invalid address: {body.address}", 400)
        return device.to_dict()

    @app.get("/api/export/csv")
    async def export_csv():
        filename = f"bluek9_export_{int(time.time() * 1000)}.csv"
        return Response(
            content=engine.export_csv(),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    # ============= Targets =============

    @app.get("/api/targets")
    async def get_targets():
        return [t.to_dict() for t in engine.targets()]

    @app.post("/api/targets")
    async def add_target(body: TargetIn):
        try:
            target = engine.add_target(body.address, name=body.name, description=body.description)
        except ValueError as e:
            return _error(str(e), 400)
        return target.to_dict()

    @app.delete("/api/targets/{address}")
    async def remove_target(address: str):
        if not engine.remove_target(address):
            return _error("Target not found", 404)
        return {"success": True}

    # ============= GPS =============

    @app.get("/api/gps")
    async def get_gps():
        return engine.provider.status()

    @app.post("/api/gps/location")
    async def set_location(body: LocationIn):
        fix = engine.provider.set_manual_location(body.lat, body.lon)
        return fix.to_dict()

    @app.get("/api/settings/gps")
    async def get_gps_settings():
        config = engine.provider.status()["config"]
        return {
            "gps_source": config["mode"],
            "nmea_host": config["nmea_host"],
            "nmea_port": config["nmea_port"],
        }

    @app.post("/api/settings/gps")
    async def update_gps_settings(body: GpsSettingsIn):
        try:
            # Reachability probe blocks; keep it off the event loop
            status = await asyncio.get_running_loop().run_in_executor(
                None, engine.set_gps_source, body.gps_source, body.nmea_host, body.nmea_port
            )
        except ConfigurationError as e:
            return _error(str(e), 400)
        return {"success": True, "gps": status}

    # ============= Scanning =============

    @app.post("/api/scan/start")
    async def start_scan():
        engine.start_scanning()
        return {"scanning": engine.scanning}

    @app.post("/api/scan/stop")
    async def stop_scan():
        engine.stop_scanning()
        return {"scanning": engine.scanning}

    # ============= Logs & SMS =============

    @app.get("/api/logs")
    async def get_logs(limit: int = Query(1000, ge=1, le=10000)):
        if engine.storage is None:
            return []
        return engine.storage.get_logs(limit)

    @app.get("/api/sms/numbers")
    async def get_sms_numbers():
        storage, error = storage_or_error()
        if error:
            return error
        return {"numbers": storage.get_sms_numbers()}

    @app.post("/api/sms/numbers")
    async def set_sms_numbers(body: SmsNumbersIn):
        storage, error = storage_or_error()
        if error:
            return error
        numbers = [n.strip() for n in body.numbers if n.strip()]
        if len(numbers) > MAX_SMS_NUMBERS:
            return _error(f"At most {MAX_SMS_NUMBERS} numbers allowed", 400)
        storage.set_sms_numbers(numbers)
        logger.info("SMS numbers updated (%d)", len(numbers))
        return {"numbers": storage.get_sms_numbers()}

    # ============= Live updates =============

    def live_update() -> dict:
        fix = engine.provider.current_fix()
        return {
            "type": "live_update",
            "timestamp": time.time(),
            "gps": {"mode": engine.provider.status()["mode"], "fix": fix.to_dict()},
            "stats": {
                "devices": len(engine.registry),
                "targets": len(engine.watchlist),
                "scanning": engine.scanning,
            },
        }

    @app.websocket("/ws/live")
    async def websocket_live_updates(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                await websocket.send_json(live_update())
                # Client messages are ignored; receiving notices a disconnect right away
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=refresh_interval)
                except asyncio.TimeoutError:
                    pass
        except WebSocketDisconnect:
            pass
        except RuntimeError as e:
            # send after close
            logger.debug("WebSocket closed: %s", e)
        finally:
            manager.disconnect(websocket)

    @app.get("/")
    async def get_index():
        html_path = os.path.join(os.path.dirname(__file__), "index.html")
        if os.path.exists(html_path):
            with open(html_path, encoding="utf-8") as f:
                return HTMLResponse(f.read())
        return HTMLResponse("<h1>BlueK9</h1><p>API available under /api</p>")

    return app
