from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: datetime) -> str:
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _optional_float(value: str) -> Optional[float]:
    if value == "":
        return None
    return float(value)


@dataclass
class Coord:
    lat: float
    lng: float


@dataclass
class Vehicle:
    """A shuttle known to the tracker. ``itrak_id`` links it to the feed."""
    id: int
    name: str
    itrak_id: Optional[int] = None
    enabled: bool = True
    created: datetime = field(default_factory=_now)
    updated: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "itrak_id": self.itrak_id,
            "enabled": self.enabled,
            "created": _isoformat(self.created),
            "updated": _isoformat(self.updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Vehicle":
        itrak_id = data.get("itrak_id")
        return cls(
            id=int(data["id"]),
            name=str(data.get("name") or ""),
            itrak_id=int(itrak_id) if itrak_id is not None else None,
            enabled=bool(data.get("enabled", True)),
            created=parse_iso8601_utc(data["created"]) if data.get("created") else _now(),
            updated=parse_iso8601_utc(data["updated"]) if data.get("updated") else _now(),
        )


@dataclass
class Route:
    """A route path as an ordered list of coordinates."""
    id: str
    name: str
    enabled: bool = True
    coords: List[Coord] = field(default_factory=list)
    description: str = ""
    color: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "color": self.color,
            "coords": [{"lat": c.lat, "lng": c.lng} for c in self.coords],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Route":
        coords: List[Coord] = []
        for raw in data.get("coords") or []:
            if not isinstance(raw, dict):
                continue
            lat = raw.get("lat")
            lng = raw.get("lng", raw.get("lon"))
            if lat is None or lng is None:
                continue
            coords.append(Coord(lat=float(lat), lng=float(lng)))
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            enabled=bool(data.get("enabled", True)),
            coords=coords,
            description=str(data.get("description") or ""),
            color=str(data.get("color") or ""),
        )


CSV_HEADER = [
    "id",
    "vehicle_id",
    "latitude",
    "longitude",
    "heading",
    "speed",
    "lock",
    "timestamp",
    "created",
    "route_id",
]


@dataclass
class Update:
    """One accepted feed sample for a vehicle. Speed is in mph."""
    vehicle_id: int
    latitude: float
    longitude: float
    timestamp: datetime  # iTrak event time, UTC
    heading: Optional[float] = None
    speed: Optional[float] = None
    lock: Optional[float] = None
    route_id: Optional[str] = None  # None means not on any route
    created: Optional[datetime] = None  # assigned by storage
    id: Optional[str] = None

    def to_row(self) -> List[str]:
        return [
            self.id or "",
            str(self.vehicle_id),
            repr(self.latitude),
            repr(self.longitude),
            "" if self.heading is None else repr(self.heading),
            "" if self.speed is None else repr(self.speed),
            "" if self.lock is None else repr(self.lock),
            _isoformat(self.timestamp),
            "" if self.created is None else _isoformat(self.created),
            self.route_id or "",
        ]

    @classmethod
    def from_row(cls, row: List[str]) -> "Update":
        if len(row) < len(CSV_HEADER):
            raise ValueError(f"expected {len(CSV_HEADER)} columns, got {len(row)}")
        return cls(
            id=row[0] or None,
            vehicle_id=int(row[1]),
            latitude=float(row[2]),
            longitude=float(row[3]),
            heading=_optional_float(row[4]),
            speed=_optional_float(row[5]),
            lock=_optional_float(row[6]),
            timestamp=parse_iso8601_utc(row[7]),
            created=parse_iso8601_utc(row[8]) if row[8] else None,
            route_id=row[9] or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vehicle_id": self.vehicle_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "speed": self.speed,
            "lock": self.lock,
            "timestamp": _isoformat(self.timestamp),
            "created": None if self.created is None else _isoformat(self.created),
            "route_id": self.route_id,
        }
