import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from shuttle_models import Coord, Route, Update, Vehicle  # noqa: E402
from shuttle_store import (  # noqa: E402
    FileShuttleStore,
    NotFoundError,
    RouteNotFoundError,
    StaleUpdateError,
    StorageError,
    UpdateNotFoundError,
    VehicleNotFoundError,
)


EVENT_TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _update(vehicle_id=1, seconds=0, created=None):
    return Update(
        vehicle_id=vehicle_id,
        latitude=42.73,
        longitude=-73.67,
        heading=90.0,
        speed=12.5,
        lock=1.0,
        timestamp=EVENT_TS + timedelta(seconds=seconds),
        created=created,
    )


@pytest.fixture()
def store(tmp_path):
    store = FileShuttleStore(tmp_path)
    asyncio.run(store.create_vehicle(Vehicle(id=1, name="Shuttle 1", itrak_id=11)))
    asyncio.run(store.create_vehicle(Vehicle(id=2, name="Shuttle 2", itrak_id=12, enabled=False)))
    return store


def test_vehicle_lookups(store):
    assert asyncio.run(store.get_vehicle_by_itrak_id(11)).id == 1
    assert [v.id for v in asyncio.run(store.get_enabled_vehicles())] == [1]
    with pytest.raises(VehicleNotFoundError):
        asyncio.run(store.get_vehicle_by_itrak_id(99))
    with pytest.raises(NotFoundError):
        asyncio.run(store.get_vehicle(99))


def test_duplicate_itrak_id_rejected(store):
    with pytest.raises(StorageError):
        asyncio.run(store.create_vehicle(Vehicle(id=3, name="Shuttle 3", itrak_id=11)))


def test_routes_round_trip(store, tmp_path):
    route = Route(id="north", name="North", coords=[Coord(42.73, -73.67), Coord(42.74, -73.68)])
    asyncio.run(store.create_route(route))

    reloaded = FileShuttleStore(tmp_path)
    fetched = asyncio.run(reloaded.get_route("north"))
    assert fetched.coords == route.coords
    with pytest.raises(RouteNotFoundError):
        asyncio.run(reloaded.get_route("south"))


def test_last_update_not_found_before_first_update(store):
    with pytest.raises(UpdateNotFoundError):
        asyncio.run(store.get_last_update_for_vehicle(1))


def test_create_update_assigns_id_and_created(store):
    created = asyncio.run(store.create_update(_update()))
    assert created.id
    assert created.created is not None
    assert asyncio.run(store.get_last_update_for_vehicle(1)) is created


def test_create_update_requires_known_vehicle(store):
    with pytest.raises(VehicleNotFoundError):
        asyncio.run(store.create_update(_update(vehicle_id=42)))


def test_create_update_rejects_non_newer_timestamp(store):
    asyncio.run(store.create_update(_update(seconds=10)))
    with pytest.raises(StaleUpdateError):
        asyncio.run(store.create_update(_update(seconds=10)))
    with pytest.raises(StaleUpdateError):
        asyncio.run(store.create_update(_update(seconds=5)))
    asyncio.run(store.create_update(_update(seconds=11)))
    assert asyncio.run(store.get_last_update_for_vehicle(1)).timestamp == EVENT_TS + timedelta(seconds=11)


def test_updates_since_newest_first(store):
    now = datetime.now(timezone.utc)
    for i, age in enumerate([30, 10, 5, 1]):
        asyncio.run(store.create_update(_update(seconds=i, created=now - timedelta(minutes=age))))

    recent = asyncio.run(store.get_updates_for_vehicle_since(1, now - timedelta(minutes=15)))

    assert [u.timestamp for u in recent] == [EVENT_TS + timedelta(seconds=s) for s in (3, 2, 1)]


def test_updates_survive_reload(store, tmp_path):
    asyncio.run(store.create_update(_update()))
    reloaded = FileShuttleStore(tmp_path)
    last = asyncio.run(reloaded.get_last_update_for_vehicle(1))
    assert last.timestamp == EVENT_TS
    assert last.speed == 12.5


def test_delete_updates_before_cutoff(store, tmp_path):
    cutoff = datetime(2024, 5, 10, 8, 0, tzinfo=timezone.utc)
    asyncio.run(store.create_update(_update(seconds=0, created=cutoff - timedelta(days=3))))
    asyncio.run(store.create_update(_update(seconds=1, created=cutoff - timedelta(seconds=1))))
    asyncio.run(store.create_update(_update(seconds=2, created=cutoff)))
    asyncio.run(store.create_update(_update(seconds=3, created=cutoff + timedelta(days=1))))

    deleted = asyncio.run(store.delete_updates_before(cutoff))

    assert deleted == 2
    assert not (tmp_path / "updates" / "2024-05-07.csv").exists()
    reloaded = FileShuttleStore(tmp_path)
    remaining = asyncio.run(reloaded.get_updates_for_vehicle_since(1, cutoff - timedelta(days=30)))
    assert sorted(u.created for u in remaining) == [cutoff, cutoff + timedelta(days=1)]


def test_delete_with_nothing_stored(tmp_path):
    store = FileShuttleStore(tmp_path / "empty")
    assert asyncio.run(store.delete_updates_before(datetime.now(timezone.utc))) == 0


def test_modify_vehicle_assigns_itrak_id(store, tmp_path):
    asyncio.run(store.create_vehicle(Vehicle(id=3, name="Spare")))
    with pytest.raises(VehicleNotFoundError):
        asyncio.run(store.get_vehicle_by_itrak_id(13))

    original = asyncio.run(store.get_vehicle(3))
    asyncio.run(store.modify_vehicle(Vehicle(id=3, name="Shuttle 3", itrak_id=13)))

    reloaded = FileShuttleStore(tmp_path)
    vehicle = asyncio.run(reloaded.get_vehicle_by_itrak_id(13))
    assert vehicle.id == 3
    assert vehicle.name == "Shuttle 3"
    assert vehicle.created == original.created


def test_modify_vehicle_rejects_taken_itrak_id_and_unknown_vehicle(store):
    with pytest.raises(StorageError):
        asyncio.run(store.modify_vehicle(Vehicle(id=2, name="Shuttle 2", itrak_id=11)))
    assert asyncio.run(store.get_vehicle(2)).itrak_id == 12
    with pytest.raises(VehicleNotFoundError):
        asyncio.run(store.modify_vehicle(Vehicle(id=42, name="Ghost")))


def test_modify_and_delete_route(store, tmp_path):
    asyncio.run(store.create_route(Route(id="north", name="North", coords=[Coord(42.73, -73.67)])))
    asyncio.run(store.modify_route(Route(id="north", name="North", enabled=False, color="#00ff00")))
    asyncio.run(store.create_route(Route(id="south", name="South")))
    asyncio.run(store.delete_route("south"))

    reloaded = FileShuttleStore(tmp_path)
    routes = asyncio.run(reloaded.get_routes())
    assert [r.id for r in routes] == ["north"]
    assert routes[0].enabled is False
    assert routes[0].color == "#00ff00"
    with pytest.raises(RouteNotFoundError):
        asyncio.run(reloaded.delete_route("south"))
    with pytest.raises(RouteNotFoundError):
        asyncio.run(reloaded.modify_route(Route(id="south", name="South")))


def test_delete_vehicle_removes_its_updates(store, tmp_path):
    asyncio.run(store.create_update(_update(vehicle_id=1)))
    asyncio.run(store.create_update(_update(vehicle_id=2)))

    asyncio.run(store.delete_vehicle(2))

    reloaded = FileShuttleStore(tmp_path)
    assert [v.id for v in asyncio.run(reloaded.get_vehicles())] == [1]
    assert asyncio.run(reloaded.get_last_update_for_vehicle(1)).timestamp == EVENT_TS
    with pytest.raises(UpdateNotFoundError):
        asyncio.run(reloaded.get_last_update_for_vehicle(2))
    with pytest.raises(VehicleNotFoundError):
        asyncio.run(reloaded.delete_vehicle(2))
