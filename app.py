"""
Shuttle Tracker Service — iTrak updater + read API (FastAPI)

Purpose
=======
Poll the iTrak vehicle feed, store normalized vehicle updates with a route
guess, and expose vehicles, routes and updates to downstream consumers.

Run
---
$ ITRAK_FEED_URL=https://example.com/itrak/feed uvicorn app:app --port 8080

Environment
-----------
- ITRAK_FEED_URL       feed URL; the updater is not started without it
- UPDATE_INTERVAL      poll interval as a duration string (default 10s)
- FEED_TIMEOUT_S       feed GET timeout in seconds (default 5)
- RECORD_TIMEOUT_S     optional per-vehicle deadline in seconds
- DATA_DIRS            colon-separated data dirs; the first hosts the store
- SHUTTLE_STORE_DIR    store directory (default <first data dir>/shuttles)
- UPDATER_DEBUG        set to 1 for verbose updater logs
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import asyncio, os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, Query

from shuttle_store import (
    FileShuttleStore,
    RouteNotFoundError,
    ShuttleStorage,
    UpdateNotFoundError,
    VehicleNotFoundError,
)
from updater import Updater, UpdaterConfig

# ---------------------------
# Config
# ---------------------------
DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
PRIMARY_DATA_DIR = DATA_DIRS[0]
SHUTTLE_STORE_DIR = Path(os.getenv("SHUTTLE_STORE_DIR", str(PRIMARY_DATA_DIR / "shuttles")))

MAX_HISTORY_MINUTES = 24 * 60

shuttle_store: ShuttleStorage = FileShuttleStore(SHUTTLE_STORE_DIR)

app = FastAPI(title="Shuttle Tracker")
app.state.updater = None
app.state.updater_task = None


# ---------------------------
# Startup background updater
# ---------------------------
@app.on_event("startup")
async def startup():
    try:
        config = UpdaterConfig.from_env()
        if not config.data_feed:
            print("[app] ITRAK_FEED_URL not set; updater disabled")
            return
        updater = Updater(config, shuttle_store)
    except ValueError as exc:
        print(f"[app] updater initialization failed: {exc}")
        return
    app.state.updater = updater
    app.state.updater_task = asyncio.create_task(updater.run())


@app.on_event("shutdown")
async def shutdown():
    task: Optional[asyncio.Task] = app.state.updater_task
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.updater_task = None
    updater: Optional[Updater] = app.state.updater
    if updater is not None:
        await updater.aclose()
        app.state.updater = None


# ---------------------------
# Read API
# ---------------------------
@app.get("/api/vehicles")
async def list_vehicles() -> List[Dict[str, Any]]:
    vehicles = await shuttle_store.get_vehicles()
    return [v.to_dict() for v in vehicles]


@app.get("/api/routes")
async def list_routes() -> List[Dict[str, Any]]:
    routes = await shuttle_store.get_routes()
    return [r.to_dict() for r in routes]


@app.get("/api/routes/{route_id}")
async def get_route(route_id: str) -> Dict[str, Any]:
    try:
        route = await shuttle_store.get_route(route_id)
    except RouteNotFoundError:
        raise HTTPException(status_code=404, detail="route not found")
    return route.to_dict()


@app.get("/api/updates")
async def latest_updates() -> List[Dict[str, Any]]:
    """Most recent update for every enabled vehicle that has one."""
    updates: List[Dict[str, Any]] = []
    for vehicle in await shuttle_store.get_enabled_vehicles():
        try:
            update = await shuttle_store.get_last_update_for_vehicle(vehicle.id)
        except UpdateNotFoundError:
            continue
        updates.append(update.to_dict())
    return updates


@app.get("/api/vehicles/{vehicle_id}/updates")
async def vehicle_updates(
    vehicle_id: int,
    minutes: int = Query(15, ge=1, le=MAX_HISTORY_MINUTES),
) -> Dict[str, Any]:
    try:
        vehicle = await shuttle_store.get_vehicle(vehicle_id)
    except VehicleNotFoundError:
        raise HTTPException(status_code=404, detail="vehicle not found")
    since = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    updates = await shuttle_store.get_updates_for_vehicle_since(vehicle.id, since)
    return {"vehicle": vehicle.to_dict(), "updates": [u.to_dict() for u in updates]}


@app.get("/api/updater/status")
async def updater_status() -> Dict[str, Any]:
    updater: Optional[Updater] = app.state.updater
    if updater is None:
        return {"running": False, "last_cycle": None}
    task: Optional[asyncio.Task] = app.state.updater_task
    last = updater.last_result
    return {
        "running": task is not None and not task.done(),
        "feed_url": updater.feed_client.feed_url,
        "interval_s": updater.interval,
        "last_cycle": last.to_dict() if last is not None else None,
    }
