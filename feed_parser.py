"""
iTrak feed parsing.

The feed body is plain ASCII text. Vehicle records are concatenated and each
one is terminated by the literal ``eof`` token, so the body always ends with a
trailing ``eof`` that is not itself a record. A record looks like::

    Vehicle ID:11 lat:42.73 lon:-73.67 dir:150.0 spd:12.0 lck:1 time:91902 date:11122017 trig:0

Fields always appear in that order, separated by single spaces.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple


FEED_DELIMITER = "eof"

DIGITS = frozenset("0123456789")
NUMBER_CHARS = DIGITS | {".", "-"}

# (field name, wire tag, allowed characters)
FEED_FIELDS: Tuple[Tuple[str, str, frozenset], ...] = (
    ("id", "Vehicle ID", DIGITS),
    ("lat", "lat", NUMBER_CHARS),
    ("lng", "lon", NUMBER_CHARS),
    ("heading", "dir", NUMBER_CHARS),
    ("speed", "spd", NUMBER_CHARS),
    ("lock", "lck", NUMBER_CHARS),
    ("time", "time", DIGITS),
    ("date", "date", DIGITS),
    ("status", "trig", DIGITS),
)


class FeedParseError(ValueError):
    """A vehicle record does not match the feed grammar."""


@dataclass
class ParsedRecord:
    """Typed view of a single vehicle record."""
    vehicle_id: int
    latitude: float
    longitude: float
    heading: float
    speed: float  # km/h, as reported
    lock: float
    time: str  # [H]HMMSS
    date: str  # MMDDYYYY
    trigger: str
    raw: Dict[str, str] = field(default_factory=dict)


def split_records(body: str, delimiter: str = FEED_DELIMITER) -> List[str]:
    """Split a feed body into vehicle records.

    The last segment is the end-of-stream marker and is always dropped.
    """
    parts = body.split(delimiter)
    if len(parts) <= 1:
        print(f"[feed] found no vehicles delineated by '{delimiter}'")
    return parts[:-1]


def tokenize_record(text: str) -> Dict[str, str]:
    """Map each field name to its raw value string.

    Text before the first tag and after the last value is ignored.
    """
    first_tag = FEED_FIELDS[0][1] + ":"
    pos = text.find(first_tag)
    if pos < 0:
        raise FeedParseError(f"record has no '{first_tag}' tag")

    values: Dict[str, str] = {}
    for index, (name, tag, allowed) in enumerate(FEED_FIELDS):
        if index > 0:
            if not text.startswith(" ", pos):
                raise FeedParseError(f"expected a single space before '{tag}'")
            pos += 1
        prefix = tag + ":"
        if not text.startswith(prefix, pos):
            raise FeedParseError(f"expected '{prefix}' at offset {pos}")
        pos += len(prefix)
        start = pos
        while pos < len(text) and text[pos] in allowed:
            pos += 1
        if pos == start:
            raise FeedParseError(f"missing value for '{tag}'")
        values[name] = text[start:pos]
    return values


def _to_float(values: Dict[str, str], name: str) -> float:
    raw = values[name]
    try:
        return float(raw)
    except ValueError:
        raise FeedParseError(f"invalid number for {name}: {raw!r}") from None


def parse_record(text: str) -> ParsedRecord:
    values = tokenize_record(text)

    latitude = _to_float(values, "lat")
    longitude = _to_float(values, "lng")
    if not -90.0 <= latitude <= 90.0:
        raise FeedParseError(f"latitude out of range: {latitude}")
    if not -180.0 <= longitude <= 180.0:
        raise FeedParseError(f"longitude out of range: {longitude}")

    return ParsedRecord(
        vehicle_id=int(values["id"]),
        latitude=latitude,
        longitude=longitude,
        heading=_to_float(values, "heading"),
        speed=_to_float(values, "speed"),
        lock=_to_float(values, "lock"),
        time=values["time"],
        date=values["date"],
        trigger=values["status"],
        raw=values,
    )


__all__ = [
    "FEED_DELIMITER",
    "FEED_FIELDS",
    "FeedParseError",
    "ParsedRecord",
    "parse_record",
    "split_records",
    "tokenize_record",
]
