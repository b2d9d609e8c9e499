"""
iTrak updater.

Periodically grabs the latest vehicle locations from the iTrak feed, stores a
new update for every vehicle whose reading changed, tags each update with a
route guess, and prunes updates older than a month.

One cycle:

    fetch -> split -> process every record concurrently -> wait -> prune

A failure while fetching aborts that cycle only. A failure while processing a
record is logged and affects that record only.
"""

from __future__ import annotations

import asyncio
import calendar
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from feed_client import DEFAULT_FEED_TIMEOUT_S, FeedClient, FeedFetchError
from feed_parser import FEED_DELIMITER, FeedParseError, parse_record, split_records
from route_guesser import RECENT_WINDOW, guess_route
from shuttle_models import Route, Update, Vehicle
from shuttle_store import (
    ShuttleStorage,
    StaleUpdateError,
    StorageError,
    UpdateNotFoundError,
    VehicleNotFoundError,
)


DEFAULT_UPDATE_INTERVAL = "10s"

KPH_TO_MPH = 0.621371192

# Record outcomes
OUTCOME_CREATED = "created"
OUTCOME_STALE = "stale"
OUTCOME_UNKNOWN_VEHICLE = "unknown_vehicle"
OUTCOME_FAILED = "failed"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse a duration like ``10s``, ``1m30s`` or ``500ms`` into seconds."""
    text = (value or "").strip()
    if text in {"0", "+0", "-0"}:
        return 0.0
    sign = 1.0
    if text[:1] in {"+", "-"}:
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if not text:
        raise ValueError(f"invalid duration {value!r}")
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def one_month_before(dt: datetime) -> datetime:
    """Same wall time one calendar month earlier, clamped to the month's last day."""
    year, month = dt.year, dt.month - 1
    if month == 0:
        year, month = year - 1, 12
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def generate_timestamp(itrak_time: str, itrak_date: str) -> datetime:
    """Turn iTrak time (``[H]HMMSS``) and date (``MMDDYYYY``) strings into a UTC datetime."""
    for name, token in (("time", itrak_time), ("date", itrak_date)):
        if not (token.isascii() and token.isdigit()):
            raise ValueError(f"iTrak {name} is not numeric: {token!r}")
    if len(itrak_date) != 8:
        raise ValueError(f"iTrak date must be MMDDYYYY: {itrak_date!r}")
    if not 5 <= len(itrak_time) <= 6:
        raise ValueError(f"iTrak time must be HMMSS or HHMMSS: {itrak_time!r}")

    month = int(itrak_date[0:2])
    day = int(itrak_date[2:4])
    year = int(itrak_date[4:8])
    hour = int(itrak_time[:-4])
    minute = int(itrak_time[-4:-2])
    second = int(itrak_time[-2:])
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def kph_to_mph(kmh: float) -> float:
    return kmh * KPH_TO_MPH


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class UpdaterConfig:
    data_feed: str = ""
    update_interval: str = DEFAULT_UPDATE_INTERVAL
    feed_timeout_s: float = DEFAULT_FEED_TIMEOUT_S
    record_timeout_s: Optional[float] = None  # per-record deadline; None waits forever
    debug: bool = False

    @classmethod
    def from_env(cls) -> "UpdaterConfig":
        record_timeout = (os.getenv("RECORD_TIMEOUT_S") or "").strip()
        return cls(
            data_feed=(os.getenv("ITRAK_FEED_URL") or "").strip(),
            update_interval=(os.getenv("UPDATE_INTERVAL") or DEFAULT_UPDATE_INTERVAL).strip(),
            feed_timeout_s=float(os.getenv("FEED_TIMEOUT_S", str(DEFAULT_FEED_TIMEOUT_S))),
            record_timeout_s=float(record_timeout) if record_timeout else None,
            debug=_env_flag("UPDATER_DEBUG"),
        )


@dataclass
class CycleResult:
    """Summary of one updater cycle."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    records: int = 0
    created: int = 0
    stale: int = 0
    unknown_vehicles: int = 0
    failed: int = 0
    pruned: int = 0
    fetch_error: Optional[str] = None
    prune_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "records": self.records,
            "created": self.created,
            "stale": self.stale,
            "unknown_vehicles": self.unknown_vehicles,
            "failed": self.failed,
            "pruned": self.pruned,
            "fetch_error": self.fetch_error,
            "prune_error": self.prune_error,
        }


class Updater:
    """Polls the iTrak feed and stores vehicle updates."""

    def __init__(
        self,
        config: UpdaterConfig,
        store: ShuttleStorage,
        feed_client: Optional[FeedClient] = None,
    ):
        self.config = config
        self.store = store
        self.interval = parse_duration(config.update_interval)
        if self.interval <= 0:
            raise ValueError(f"update interval must be positive: {config.update_interval!r}")
        self.feed_client = feed_client or FeedClient(config.data_feed, timeout=config.feed_timeout_s)
        self.debug = config.debug
        self.last_result: Optional[CycleResult] = None

    def _debug(self, message: str) -> None:
        if self.debug:
            print(f"[updater] {message}")

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Run one cycle immediately, then one per interval, forever."""
        print(f"[updater] started feed={self.feed_client.feed_url} interval={self.interval}s")
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        cycles = 0
        while True:
            try:
                await self.update()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                print(f"[updater] cycle failed: {exc!r}")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                return

            now = loop.time()
            if next_tick < now:
                # Drop ticks missed while the last cycle ran
                missed = int((now - next_tick) // self.interval) + 1
                next_tick += missed * self.interval
            await asyncio.sleep(next_tick - now)
            next_tick += self.interval

    async def aclose(self) -> None:
        await self.feed_client.aclose()

    async def update(self) -> CycleResult:
        """Fetch the feed, store new updates and prune old ones."""
        result = CycleResult(started_at=datetime.now(timezone.utc))
        self.last_result = result

        try:
            body = await self.feed_client.fetch()
        except FeedFetchError as exc:
            print(f"[updater] {exc}")
            result.fetch_error = str(exc)
            result.finished_at = datetime.now(timezone.utc)
            return result

        records = split_records(body, FEED_DELIMITER)
        result.records = len(records)

        outcomes = await asyncio.gather(
            *(self._process_safely(record) for record in records),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                print(f"[updater] vehicle update failed: {outcome!r}")
                outcome = OUTCOME_FAILED
            if outcome == OUTCOME_CREATED:
                result.created += 1
            elif outcome == OUTCOME_STALE:
                result.stale += 1
            elif outcome == OUTCOME_UNKNOWN_VEHICLE:
                result.unknown_vehicles += 1
            else:
                result.failed += 1
        self._debug(f"updated vehicles created={result.created} stale={result.stale} failed={result.failed}")

        await self._prune(result)
        result.finished_at = datetime.now(timezone.utc)
        return result

    async def _prune(self, result: CycleResult) -> None:
        cutoff = one_month_before(datetime.now(timezone.utc))
        try:
            deleted = await self.store.delete_updates_before(cutoff)
        except Exception as exc:
            print(f"[updater] unable to remove old updates: {exc!r}")
            result.prune_error = str(exc)
            return
        result.pruned = deleted
        if deleted > 0:
            print(f"[updater] removed {deleted} old updates")

    async def _process_safely(self, record: str) -> str:
        try:
            if self.config.record_timeout_s is not None:
                return await asyncio.wait_for(
                    self.process_record(record), timeout=self.config.record_timeout_s
                )
            return await self.process_record(record)
        except asyncio.TimeoutError:
            print(f"[updater] vehicle update timed out after {self.config.record_timeout_s}s")
        except FeedParseError as exc:
            print(f"[updater] malformed vehicle record: {exc}")
        except StorageError as exc:
            print(f"[updater] storage error: {exc}")
        except Exception as exc:
            print(f"[updater] vehicle update failed: {exc!r}")
        return OUTCOME_FAILED

    async def process_record(self, record: str) -> str:
        """Turn one raw vehicle record into a stored update."""
        parsed = parse_record(record)

        try:
            vehicle = await self.store.get_vehicle_by_itrak_id(parsed.vehicle_id)
        except VehicleNotFoundError:
            print(
                f"[updater] unknown iTrak vehicle ID \"{parsed.vehicle_id}\". "
                "Make sure all vehicles have been added."
            )
            return OUTCOME_UNKNOWN_VEHICLE

        try:
            timestamp = generate_timestamp(parsed.time, parsed.date)
        except ValueError as exc:
            print(f"[updater] unable to generate update timestamp: {exc}")
            return OUTCOME_FAILED

        try:
            last_update: Optional[Update] = await self.store.get_last_update_for_vehicle(vehicle.id)
        except UpdateNotFoundError:
            last_update = None
        if last_update is not None and timestamp <= last_update.timestamp:
            # Reading already stored
            return OUTCOME_STALE

        self._debug(f"updating {vehicle.name}")
        route = await self.guess_route_for_vehicle(vehicle)

        update = Update(
            vehicle_id=vehicle.id,
            latitude=parsed.latitude,
            longitude=parsed.longitude,
            heading=parsed.heading,
            speed=kph_to_mph(parsed.speed),
            lock=parsed.lock,
            timestamp=timestamp,
            route_id=route.id if route is not None else None,
        )
        try:
            await self.store.create_update(update)
        except StaleUpdateError:
            return OUTCOME_STALE
        return OUTCOME_CREATED

    async def guess_route_for_vehicle(self, vehicle: Vehicle) -> Optional[Route]:
        try:
            routes = await self.store.get_routes()
        except StorageError as exc:
            print(f"[updater] unable to fetch routes: {exc}")
            routes = []
        since = datetime.now(timezone.utc) - RECENT_WINDOW
        updates = await self.store.get_updates_for_vehicle_since(vehicle.id, since)
        return guess_route(vehicle, updates, routes, debug=self.debug)
