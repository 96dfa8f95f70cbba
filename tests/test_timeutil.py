"""Tests for time parsing and formatting."""

from datetime import datetime, timedelta, timezone

import pytest

from memorylane.timeutil import (
    ensure_utc,
    format_relative_time,
    from_db_timestamp,
    parse_time_reference,
    to_db_timestamp,
)

NOW = datetime(2025, 3, 15, 12, 30, tzinfo=timezone.utc)


def test_parse_relative():
    assert parse_time_reference("90 days ago", NOW) == NOW - timedelta(days=90)
    assert parse_time_reference("2 weeks ago", NOW) == NOW - timedelta(weeks=2)
    assert parse_time_reference("1 month ago", NOW) == datetime(2025, 2, 15, 12, 30, tzinfo=timezone.utc)


def test_parse_named():
    assert parse_time_reference("yesterday", NOW) == datetime(2025, 3, 14, tzinfo=timezone.utc)
    assert parse_time_reference("today", NOW) == datetime(2025, 3, 15, tzinfo=timezone.utc)
    assert parse_time_reference("now", NOW) == NOW


def test_parse_iso_is_utc():
    assert parse_time_reference("2025-01-15") == datetime(2025, 1, 15, tzinfo=timezone.utc)
    parsed = parse_time_reference("2025-01-15 14:30:00+02:00")
    assert parsed == datetime(2025, 1, 15, 12, 30, tzinfo=timezone.utc)


def test_parse_garbage():
    with pytest.raises(ValueError):
        parse_time_reference("sometime soonish")


def test_db_timestamps_sort_lexicographically():
    a = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
    b = a + timedelta(microseconds=1)
    assert to_db_timestamp(a) < to_db_timestamp(b)
    assert from_db_timestamp(to_db_timestamp(b)) == b
    assert from_db_timestamp(None) is None


def test_ensure_utc_treats_naive_as_utc():
    assert ensure_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc


def test_format_relative_time():
    assert format_relative_time(NOW - timedelta(seconds=30), NOW) == "30 seconds ago"
    assert format_relative_time(NOW - timedelta(hours=1), NOW) == "1 hour ago"
    assert format_relative_time(NOW - timedelta(days=3), NOW) == "3 days ago"
    assert format_relative_time(NOW + timedelta(days=1), NOW) == "in the future"
