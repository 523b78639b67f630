"""Tests for dagrun.utils."""

import json
import logging
from datetime import date, datetime, timedelta, timezone

import pytest

from dagrun.utils import StructuredFormatter, format_duration, generate_ulid, parse_bool, parse_datetime, setup_logging


class TestParseDatetime:

    def test_naive_is_utc(self):
        assert parse_datetime("2024-01-01T06:00:00") == datetime(2024, 1, 1, 6, tzinfo=timezone.utc)

    def test_z_suffix(self):
        assert parse_datetime("2024-01-01T06:00:00Z") == datetime(2024, 1, 1, 6, tzinfo=timezone.utc)

    def test_offset_converted(self):
        value = parse_datetime("2024-01-01T06:00:00+02:00")
        assert value == datetime(2024, 1, 1, 4, tzinfo=timezone.utc)
        assert value.utcoffset() == timedelta(0)

    def test_date(self):
        assert parse_datetime(date(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_datetime(12345)
        with pytest.raises(ValueError):
            parse_datetime("not a date")


def test_generate_ulid():
    ids = {generate_ulid() for _ in range(100)}
    assert len(ids) == 100
    assert all(len(i) == 26 for i in ids)


@pytest.mark.parametrize("seconds,expected", [
    (1.5, "1.5s"),
    (75, "1m 15s"),
    (3 * 3600 + 120, "3h 2m"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_structured_formatter_includes_context():
    record = logging.LogRecord("dagrun.scheduler", logging.INFO, __file__, 1, "Run finished", None, None)
    record.run_id = "01ABC"
    record.event = "run_finished"

    data = json.loads(StructuredFormatter().format(record))
    assert data["message"] == "Run finished"
    assert data["level"] == "INFO"
    assert data["run_id"] == "01ABC"
    assert data["event"] == "run_finished"
    assert "graph_id" not in data


def test_setup_logging_file(tmp_path):
    log_file = tmp_path / "logs" / "dagrun.jsonl"
    logger = setup_logging("DEBUG", "structured", str(log_file))
    try:
        logger.info("hello", extra={"graph_id": "g"})
        for handler in logger.handlers:
            handler.flush()
        line = json.loads(log_file.read_text().splitlines()[0])
        assert line["graph_id"] == "g"
        assert logger.level == logging.DEBUG
    finally:
        for handler in logger.handlers:
            handler.close()
        logger.handlers = []


def test_parse_bool():
    assert parse_bool(True) is True
    assert parse_bool("FALSE") is False
    with pytest.raises(ValueError, match="flag must be a boolean"):
        parse_bool("yes", "flag")
