from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, WebSocket

from .broadcast import Broadcaster
from .errors import ConfigPersistError
from .pipeline import PositioningEngine
from .schemas import FloorUpdate, ZoneIn


logger = logging.getLogger(__name__)

API_PREFIX = "/api/indoor"


def create_app(engine: PositioningEngine, broadcaster: Optional[Broadcaster] = None) -> FastAPI:
    broadcaster = broadcaster or Broadcaster()
    if engine.broadcaster is None:
        engine.broadcaster = broadcaster

    app = FastAPI(title="BLE Fusion Server", version="1.0.0")
    app.state.engine = engine
    app.state.broadcaster = broadcaster
    router = APIRouter(prefix=API_PREFIX)

    @app.on_event("startup")
    async def startup_event() -> None:
        broadcaster.attach_loop(asyncio.get_running_loop())

    # ---------- Devices ----------
    @router.get("/devices")
    def list_devices(floor: Optional[int] = None):
        devices = engine.list_devices(floor)
        return {"devices": [d.to_dict() for d in devices], "count": len(devices)}

    @router.get("/devices/{device_id}")
    def get_device(device_id: str):
        device = engine.get_device(device_id)
        if device is None:
            raise HTTPException(status_code=404, detail=f"device {device_id} not found")
        return device.to_dict()

    @router.delete("/devices/{device_id}")
    def delete_device(device_id: str):
        if not engine.remove_device(device_id):
            raise HTTPException(status_code=404, detail=f"device {device_id} not found")
        return {"removed": device_id}

    # ---------- Floors ----------
    @router.get("/floors")
    def list_floors():
        return {"floors": engine.list_floors()}

    @router.put("/floors/{floor_id}")
    def update_floor(floor_id: int, body: FloorUpdate):
        try:
            floor = engine.update_floor(floor_id, body.to_changes())
        except KeyError:
            raise HTTPException(status_code=404, detail=f"floor {floor_id} not found")
        except ConfigPersistError as e:
            logger.error("Floor %s update not saved: %s", floor_id, e)
            raise HTTPException(status_code=500, detail=str(e))
        return {"floor": floor, "calibrated": floor_id in engine.calibrators}

    # ---------- Zones ----------
    @router.get("/zones")
    def list_zones():
        return {"zones": engine.list_zones()}

    @router.put("/zones")
    def replace_zones(zones: List[ZoneIn]):
        try:
            count = engine.replace_zones([z.to_config() for z in zones])
        except ConfigPersistError as e:
            logger.error("Zone update not saved: %s", e)
            raise HTTPException(status_code=500, detail=str(e))
        return {"count": count}

    # ---------- Alerts / infrastructure ----------
    @router.get("/alerts")
    def list_alerts(limit: int = Query(50, ge=1, le=1000)):
        return {"alerts": [a.to_dict() for a in engine.recent_alerts(limit)]}

    @router.get("/gateways")
    def list_gateways():
        return {"gateways": engine.list_gateways()}

    @router.get("/anchors")
    def list_anchors():
        return {"anchors": engine.list_anchors()}

    @router.get("/stats")
    def stats():
        return engine.stats()

    @router.get("/health")
    def health():
        s = engine.stats()
        return {
            "status": "ok",
            "uptime_s": s["uptime_s"],
            "devices": s["devices_total"],
            "ws_clients": s["ws_clients"],
        }

    app.include_router(router)

    @app.websocket("/ws")
    async def ws(websocket: WebSocket):
        await broadcaster.serve(websocket)

    return app
