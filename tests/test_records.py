"""Unit tests for domain record parsing and freshness."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from models.records import Device, DeviceLatestView, Reading, parse_timestamp

THRESHOLD = 12.5


def _view(created_at: datetime | None) -> DeviceLatestView:
    device = Device(id="a", external_id="ESP-01", name="Zone 1")
    latest = None
    if created_at is not None:
        latest = Reading(id=1, device_id="a", created_at=created_at, soil_1=70.0)
    return DeviceLatestView(device=device, latest=latest)


def test_reading_from_row_parses_channels_and_timestamp() -> None:
    reading = Reading.from_row(
        {
            "id": "7",
            "device_id": "a",
            "created_at": "2025-01-01T08:00:00+08:00",
            "soil_1": 70,
            "temp_1": "21.5",
            "hum_1": None,
        }
    )

    assert reading.id == 7
    assert reading.device_id == "a"
    assert reading.created_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
    assert reading.soil_1 == 70.0
    assert reading.temp_1 == 21.5
    assert reading.hum_1 is None
    assert reading.soil_4 is None


@pytest.mark.parametrize(
    "row",
    [
        {"created_at": "2025-01-01T00:00:00Z"},
        {"device_id": "a"},
        {"device_id": "a", "created_at": "yesterday"},
        {"device_id": "a", "created_at": "2025-01-01T00:00:00Z", "soil_1": "wet"},
        {"device_id": "a", "created_at": "2025-01-01T00:00:00Z", "temp_1": True},
    ],
)
def test_reading_from_row_rejects_malformed_rows(row: dict) -> None:
    with pytest.raises(ValueError):
        Reading.from_row(row)


def test_parse_timestamp_treats_naive_values_as_utc() -> None:
    parsed = parse_timestamp("2025-01-01T06:30:00")

    assert parsed == datetime(2025, 1, 1, 6, 30, tzinfo=timezone.utc)
    assert parse_timestamp("2025-01-01T06:30:00Z") == parsed


def test_device_from_row_maps_backend_column_names() -> None:
    device = Device.from_row({"id": 12, "esp_id": "ESP-12", "name": "Greenhouse"})

    assert device == Device(id="12", external_id="ESP-12", name="Greenhouse")


def test_device_without_reading_is_stale() -> None:
    view = _view(None)

    assert view.age_seconds(datetime.now(timezone.utc)) is None
    assert view.is_stale(datetime.now(timezone.utc), THRESHOLD) is True


def test_freshness_boundary_is_classified_consistently() -> None:
    created_at = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    view = _view(created_at)
    threshold = timedelta(seconds=THRESHOLD)

    assert view.is_stale(created_at + threshold - timedelta(milliseconds=1), THRESHOLD) is False
    assert view.is_stale(created_at + threshold, THRESHOLD) is False
    assert view.is_stale(created_at + threshold + timedelta(milliseconds=1), THRESHOLD) is True
