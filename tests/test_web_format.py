from datetime import datetime, timedelta, timezone

import pytest

from app.web import format_age, format_celsius, format_percent

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_percent_and_celsius_formatting() -> None:
    assert format_percent(65.0) == "65%"
    assert format_percent(65.4) == "65.4%"
    assert format_percent(None) == "—"
    assert format_celsius(27.5) == "27.5°C"
    assert format_celsius(None) == "—"


@pytest.mark.parametrize(
    ("age", "expected"),
    [
        (timedelta(seconds=10), "less than a minute ago"),
        (timedelta(minutes=1), "1 minute ago"),
        (timedelta(minutes=12), "12 minutes ago"),
        (timedelta(minutes=50), "about 1 hour ago"),
        (timedelta(hours=5), "about 5 hours ago"),
        (timedelta(hours=30), "1 day ago"),
        (timedelta(days=4), "4 days ago"),
    ],
)
def test_relative_age(age: timedelta, expected: str) -> None:
    assert format_age(NOW - age, NOW) == expected


def test_future_timestamps_read_as_just_now() -> None:
    assert format_age(NOW + timedelta(minutes=5), NOW) == "less than a minute ago"
