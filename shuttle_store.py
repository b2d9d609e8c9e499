"""
Shuttle storage.

``ShuttleStorage`` is the contract the updater and the read API depend on.
``FileShuttleStore`` implements it on local disk:

- ``fleet.json`` holds vehicles and routes and is rewritten atomically.
- ``updates/YYYY-MM-DD.csv`` holds updates, one file per UTC creation day.
  Rows are appended as updates arrive and indexed in memory on load.
"""

from __future__ import annotations

import asyncio
import csv
import json
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List

from shuttle_models import Route, Update, Vehicle, _now, _to_utc


class StorageError(RuntimeError):
    """A storage operation failed."""


class NotFoundError(LookupError):
    """The requested record does not exist."""


class VehicleNotFoundError(NotFoundError):
    pass


class UpdateNotFoundError(NotFoundError):
    pass


class RouteNotFoundError(NotFoundError):
    pass


class StaleUpdateError(ValueError):
    """The update is not newer than the vehicle's latest stored update."""


class ShuttleStorage(ABC):
    """
    Storage backend for vehicles, routes and updates.

    Implementations must be safe to call from concurrent tasks and must raise
    the matching ``NotFoundError`` subclass for missing records; anything else
    that goes wrong is reported as ``StorageError``.
    """

    # Vehicles

    @abstractmethod
    async def get_vehicle(self, vehicle_id: int) -> Vehicle:
        pass

    @abstractmethod
    async def get_vehicles(self) -> List[Vehicle]:
        pass

    async def get_enabled_vehicles(self) -> List[Vehicle]:
        return [v for v in await self.get_vehicles() if v.enabled]

    @abstractmethod
    async def get_vehicle_by_itrak_id(self, itrak_id: int) -> Vehicle:
        pass

    @abstractmethod
    async def create_vehicle(self, vehicle: Vehicle) -> Vehicle:
        pass

    @abstractmethod
    async def modify_vehicle(self, vehicle: Vehicle) -> Vehicle:
        pass

    @abstractmethod
    async def delete_vehicle(self, vehicle_id: int) -> None:
        """Remove a vehicle together with all of its updates."""
        pass

    # Routes

    @abstractmethod
    async def get_route(self, route_id: str) -> Route:
        pass

    @abstractmethod
    async def get_routes(self) -> List[Route]:
        pass

    @abstractmethod
    async def create_route(self, route: Route) -> Route:
        pass

    @abstractmethod
    async def modify_route(self, route: Route) -> Route:
        pass

    @abstractmethod
    async def delete_route(self, route_id: str) -> None:
        pass

    # Updates

    @abstractmethod
    async def create_update(self, update: Update) -> Update:
        """Store an update, assigning ``id`` and ``created`` when missing.

        Raises ``StaleUpdateError`` if its timestamp is not later than the
        vehicle's latest stored update.
        """
        pass

    @abstractmethod
    async def get_last_update_for_vehicle(self, vehicle_id: int) -> Update:
        pass

    @abstractmethod
    async def get_updates_for_vehicle_since(self, vehicle_id: int, since: datetime) -> List[Update]:
        pass

    @abstractmethod
    async def delete_updates_before(self, before: datetime) -> int:
        pass


class FileShuttleStore(ShuttleStorage):
    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self._fleet_path = base_dir / "fleet.json"
        self._updates_dir = base_dir / "updates"
        self._lock = asyncio.Lock()
        self._vehicles: Dict[int, Vehicle] = {}
        self._routes: Dict[str, Route] = {}
        # vehicle_id -> updates in creation order
        self._updates: Dict[int, List[Update]] = {}
        self._load_sync()

    # -----------------
    # Loading / persisting
    # -----------------

    def _load_sync(self) -> None:
        self._vehicles.clear()
        self._routes.clear()
        self._updates.clear()
        self._load_fleet()
        self._load_updates()

    def _load_fleet(self) -> None:
        if not self._fleet_path.exists():
            return
        try:
            raw = json.loads(self._fleet_path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise StorageError(f"could not read {self._fleet_path}: {exc}") from exc
        if not isinstance(raw, dict):
            return
        for entry in raw.get("vehicles", []):
            if not isinstance(entry, dict) or entry.get("id") is None:
                continue
            vehicle = Vehicle.from_dict(entry)
            self._vehicles[vehicle.id] = vehicle
        for entry in raw.get("routes", []):
            if not isinstance(entry, dict) or entry.get("id") is None:
                continue
            route = Route.from_dict(entry)
            self._routes[route.id] = route

    def _load_updates(self) -> None:
        if not self._updates_dir.exists():
            return
        for path in sorted(self._updates_dir.glob("*.csv")):
            with path.open("r", newline="") as f:
                for row in csv.reader(f):
                    try:
                        update = Update.from_row(row)
                    except (ValueError, IndexError):
                        print(f"[store] skipping unreadable update row in {path.name}")
                        continue
                    self._updates.setdefault(update.vehicle_id, []).append(update)
        for updates in self._updates.values():
            updates.sort(key=lambda u: u.created or u.timestamp)

    def _persist_fleet(self) -> None:
        data = {
            "vehicles": [v.to_dict() for v in sorted(self._vehicles.values(), key=lambda v: v.id)],
            "routes": [r.to_dict() for r in sorted(self._routes.values(), key=lambda r: r.id)],
        }
        tmp_path = self._fleet_path.with_suffix(self._fleet_path.suffix + ".tmp")
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
            tmp_path.replace(self._fleet_path)
        except OSError as exc:
            raise StorageError(f"could not write {self._fleet_path}: {exc}") from exc

    def _file_for_date(self, day: date) -> Path:
        return self._updates_dir / f"{day.isoformat()}.csv"

    def _append_update(self, update: Update) -> None:
        assert update.created is not None
        path = self._file_for_date(update.created.date())
        try:
            self._updates_dir.mkdir(parents=True, exist_ok=True)
            with path.open("a", newline="") as f:
                csv.writer(f).writerow(update.to_row())
        except OSError as exc:
            raise StorageError(f"could not write {path}: {exc}") from exc

    def _rewrite_day(self, path: Path, updates: List[Update]) -> None:
        tmp_path = path.with_suffix(".csv.tmp")
        with tmp_path.open("w", newline="") as f:
            writer = csv.writer(f)
            writer.writerows(u.to_row() for u in updates)
        tmp_path.replace(path)

    def _rewrite_days_from_memory(self, days) -> None:
        for day in days:
            path = self._file_for_date(day)
            if not path.exists():
                continue
            remaining = [
                u
                for updates in self._updates.values()
                for u in updates
                if u.created is not None and u.created.date() == day
            ]
            remaining.sort(key=lambda u: u.created)
            self._rewrite_day(path, remaining)

    # -----------------
    # Vehicles
    # -----------------

    async def get_vehicle(self, vehicle_id: int) -> Vehicle:
        async with self._lock:
            vehicle = self._vehicles.get(vehicle_id)
        if vehicle is None:
            raise VehicleNotFoundError(vehicle_id)
        return vehicle

    async def get_vehicles(self) -> List[Vehicle]:
        async with self._lock:
            return sorted(self._vehicles.values(), key=lambda v: v.id)

    async def get_vehicle_by_itrak_id(self, itrak_id: int) -> Vehicle:
        async with self._lock:
            for vehicle in self._vehicles.values():
                if vehicle.itrak_id == itrak_id:
                    return vehicle
        raise VehicleNotFoundError(itrak_id)

    async def create_vehicle(self, vehicle: Vehicle) -> Vehicle:
        async with self._lock:
            if vehicle.id in self._vehicles:
                raise StorageError(f"vehicle {vehicle.id} already exists")
            if vehicle.itrak_id is not None and any(
                v.itrak_id == vehicle.itrak_id for v in self._vehicles.values()
            ):
                raise StorageError(f"iTrak ID {vehicle.itrak_id} already assigned")
            self._vehicles[vehicle.id] = vehicle
            try:
                self._persist_fleet()
            except StorageError:
                self._vehicles.pop(vehicle.id, None)
                raise
        return vehicle

    async def modify_vehicle(self, vehicle: Vehicle) -> Vehicle:
        async with self._lock:
            previous = self._vehicles.get(vehicle.id)
            if previous is None:
                raise VehicleNotFoundError(vehicle.id)
            if vehicle.itrak_id is not None and any(
                v.itrak_id == vehicle.itrak_id and v.id != vehicle.id for v in self._vehicles.values()
            ):
                raise StorageError(f"iTrak ID {vehicle.itrak_id} already assigned")
            vehicle.created = previous.created
            vehicle.updated = _now()
            self._vehicles[vehicle.id] = vehicle
            try:
                self._persist_fleet()
            except StorageError:
                self._vehicles[vehicle.id] = previous
                raise
        return vehicle

    async def delete_vehicle(self, vehicle_id: int) -> None:
        async with self._lock:
            vehicle = self._vehicles.pop(vehicle_id, None)
            if vehicle is None:
                raise VehicleNotFoundError(vehicle_id)
            try:
                self._persist_fleet()
            except StorageError:
                self._vehicles[vehicle_id] = vehicle
                raise
            removed = self._updates.pop(vehicle_id, [])
            days = {u.created.date() for u in removed if u.created is not None}
            try:
                self._rewrite_days_from_memory(sorted(days))
            except OSError as exc:
                raise StorageError(f"could not remove updates for vehicle {vehicle_id}: {exc}") from exc

    # -----------------
    # Routes
    # -----------------

    async def get_route(self, route_id: str) -> Route:
        async with self._lock:
            route = self._routes.get(route_id)
        if route is None:
            raise RouteNotFoundError(route_id)
        return route

    async def get_routes(self) -> List[Route]:
        async with self._lock:
            return sorted(self._routes.values(), key=lambda r: r.id)

    async def create_route(self, route: Route) -> Route:
        async with self._lock:
            if not route.id:
                route.id = str(uuid.uuid4())
            if route.id in self._routes:
                raise StorageError(f"route {route.id} already exists")
            self._routes[route.id] = route
            try:
                self._persist_fleet()
            except StorageError:
                self._routes.pop(route.id, None)
                raise
        return route

    async def modify_route(self, route: Route) -> Route:
        async with self._lock:
            previous = self._routes.get(route.id)
            if previous is None:
                raise RouteNotFoundError(route.id)
            self._routes[route.id] = route
            try:
                self._persist_fleet()
            except StorageError:
                self._routes[route.id] = previous
                raise
        return route

    async def delete_route(self, route_id: str) -> None:
        # Updates keep their route_id; it is a label, not a reference.
        async with self._lock:
            route = self._routes.pop(route_id, None)
            if route is None:
                raise RouteNotFoundError(route_id)
            try:
                self._persist_fleet()
            except StorageError:
                self._routes[route_id] = route
                raise

    # -----------------
    # Updates
    # -----------------

    async def create_update(self, update: Update) -> Update:
        async with self._lock:
            if update.vehicle_id not in self._vehicles:
                raise VehicleNotFoundError(update.vehicle_id)
            existing = self._updates.get(update.vehicle_id)
            if existing and update.timestamp <= existing[-1].timestamp:
                raise StaleUpdateError(
                    f"vehicle {update.vehicle_id} already has an update at {existing[-1].timestamp.isoformat()}"
                )
            if update.id is None:
                update.id = str(uuid.uuid4())
            update.created = _to_utc(update.created) if update.created else _now()
            self._append_update(update)
            self._updates.setdefault(update.vehicle_id, []).append(update)
        return update

    async def get_last_update_for_vehicle(self, vehicle_id: int) -> Update:
        async with self._lock:
            updates = self._updates.get(vehicle_id)
            if not updates:
                raise UpdateNotFoundError(vehicle_id)
            return updates[-1]

    async def get_updates_for_vehicle_since(self, vehicle_id: int, since: datetime) -> List[Update]:
        since_utc = _to_utc(since)
        async with self._lock:
            updates = list(self._updates.get(vehicle_id, []))
        recent = [u for u in updates if u.created is not None and u.created > since_utc]
        recent.reverse()  # newest first
        return recent

    async def delete_updates_before(self, before: datetime) -> int:
        cutoff = _to_utc(before)
        async with self._lock:
            deleted = 0
            for vehicle_id in list(self._updates):
                kept = [u for u in self._updates[vehicle_id] if u.created is None or u.created >= cutoff]
                deleted += len(self._updates[vehicle_id]) - len(kept)
                if kept:
                    self._updates[vehicle_id] = kept
                else:
                    del self._updates[vehicle_id]

            if not self._updates_dir.exists():
                return deleted
            cutoff_day = cutoff.date()
            try:
                for path in self._updates_dir.glob("*.csv"):
                    try:
                        day = date.fromisoformat(path.stem)
                    except ValueError:
                        continue
                    if day < cutoff_day:
                        path.unlink(missing_ok=True)
                self._rewrite_days_from_memory([cutoff_day])
            except OSError as exc:
                raise StorageError(f"could not prune updates: {exc}") from exc
        return deleted
