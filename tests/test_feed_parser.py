import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from feed_parser import FeedParseError, parse_record, split_records, tokenize_record  # noqa: E402


RECORD = (
    "Vehicle ID:11 lat:42.7302 lon:-73.6765 dir:150.5 spd:24.0 "
    "lck:1 time:91902 date:11122017 trig:0"
)


def test_split_records_drops_end_of_stream_segment():
    body = f"{RECORD} eof\r\n{RECORD} eof\r\n"
    records = split_records(body)
    assert len(records) == 2
    assert all("Vehicle ID:11" in r for r in records)


def test_split_records_warns_when_no_vehicles(capsys):
    assert split_records("") == []
    assert split_records("garbage without delimiter") == []
    out = capsys.readouterr().out
    assert out.count("found no vehicles") == 2


def test_split_single_record_still_processed(capsys):
    # One record plus end-of-stream marker yields two segments; no warning.
    assert split_records(f"{RECORD}eof") == [RECORD]
    assert "found no vehicles" not in capsys.readouterr().out


def test_parse_record_types_fields():
    parsed = parse_record("\r\n" + RECORD + " ")
    assert parsed.vehicle_id == 11
    assert parsed.latitude == pytest.approx(42.7302)
    assert parsed.longitude == pytest.approx(-73.6765)
    assert parsed.heading == pytest.approx(150.5)
    assert parsed.speed == pytest.approx(24.0)
    assert parsed.lock == 1.0
    assert parsed.time == "91902"
    assert parsed.date == "11122017"
    assert parsed.trigger == "0"
    assert parsed.raw["lng"] == "-73.6765"


def test_tokenize_record_keeps_raw_strings():
    values = tokenize_record(RECORD)
    assert list(values) == ["id", "lat", "lng", "heading", "speed", "lock", "time", "date", "status"]
    assert values["speed"] == "24.0"


@pytest.mark.parametrize(
    "record",
    [
        "",
        "lat:42.73 lon:-73.67",
        RECORD.replace("lat:", "lat: "),
        RECORD.replace(" lon:", "  lon:"),
        RECORD.replace("Vehicle ID:11", "Vehicle ID:1.5"),
        RECORD.replace("lat:42.7302", "lat:4.2.7"),
        RECORD.replace("lat:42.7302", "lat:142.7"),
        RECORD.replace("lon:-73.6765", "lon:-273.6"),
        RECORD.replace("time:91902", "time:9a902"),
        RECORD.replace(" trig:0", ""),
    ],
)
def test_parse_record_rejects_malformed(record):
    with pytest.raises(FeedParseError):
        parse_record(record)


def test_parse_error_is_value_error():
    with pytest.raises(ValueError):
        parse_record("Vehicle ID:x")
