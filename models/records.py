"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

SOIL_CHANNELS: Tuple[str, ...] = ("soil_1", "soil_2", "soil_3", "soil_4")
TEMPERATURE_CHANNELS: Tuple[str, ...] = ("temp_1", "temp_2")
HUMIDITY_CHANNELS: Tuple[str, ...] = ("hum_1", "hum_2")

# Column order used by the backend select lists and the CSV export.
MEASUREMENT_CHANNELS: Tuple[str, ...] = (
    "soil_1",
    "soil_2",
    "soil_3",
    "soil_4",
    "temp_1",
    "hum_1",
    "temp_2",
    "hum_2",
)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 value into an aware UTC datetime.

    Naive values are assumed to already be UTC, matching how the backend
    stores ``timestamptz`` columns.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str):
            raise ValueError("Timestamp must be an ISO-8601 string.")
        candidate = value.strip()
        if not candidate:
            raise ValueError("Timestamp is empty.")

        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"

        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def _parse_measurement(name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Channel {name!r} must be numeric.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            return float(candidate)
        except ValueError as exc:
            raise ValueError(f"Channel {name!r} must be numeric.") from exc
    raise ValueError(f"Channel {name!r} must be numeric.")


@dataclass(slots=True, frozen=True)
class Device:
    """A provisioned monitoring unit."""

    id: str
    external_id: str
    name: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Device":
        device_id = row.get("id")
        if device_id is None or str(device_id) == "":
            raise ValueError("Device row is missing 'id'.")
        # The backend names the external code column ``esp_id``.
        external_id = row.get("external_id", row.get("esp_id"))
        return cls(
            id=str(device_id),
            external_id="" if external_id is None else str(external_id),
            name="" if row.get("name") is None else str(row["name"]),
        )


@dataclass(slots=True, frozen=True)
class Reading:
    """One timestamped multi-channel sample from one device."""

    id: Optional[int]
    device_id: str
    created_at: datetime
    soil_1: Optional[float] = None
    soil_2: Optional[float] = None
    soil_3: Optional[float] = None
    soil_4: Optional[float] = None
    temp_1: Optional[float] = None
    hum_1: Optional[float] = None
    temp_2: Optional[float] = None
    hum_2: Optional[float] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Reading":
        """Build a reading from a backend row, raising ``ValueError`` when malformed."""
        device_id = row.get("device_id")
        if device_id is None or str(device_id) == "":
            raise ValueError("Reading row is missing 'device_id'.")
        if row.get("created_at") is None:
            raise ValueError("Reading row is missing 'created_at'.")

        raw_id = row.get("id")
        if raw_id is None:
            reading_id = None
        else:
            try:
                reading_id = int(raw_id)
            except (TypeError, ValueError) as exc:
                raise ValueError("Reading 'id' must be an integer.") from exc

        channels = {
            name: _parse_measurement(name, row.get(name)) for name in MEASUREMENT_CHANNELS
        }
        return cls(
            id=reading_id,
            device_id=str(device_id),
            created_at=parse_timestamp(row["created_at"]),
            **channels,
        )

    def channel(self, name: str) -> Optional[float]:
        return getattr(self, name)

    def channels(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in MEASUREMENT_CHANNELS}


class ChangeKind(str, Enum):
    """Change notification kinds delivered for the readings table."""

    insert = "insert"
    update = "update"
    delete = "delete"


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """A single change notification carrying a reading payload."""

    kind: ChangeKind
    reading: Reading


@dataclass(slots=True)
class DeviceLatestView:
    """A device paired with the most recent reading known for it."""

    device: Device
    latest: Optional[Reading] = field(default=None)

    def age_seconds(self, now: datetime) -> Optional[float]:
        if self.latest is None:
            return None
        return (now - self.latest.created_at).total_seconds()

    def is_stale(self, now: datetime, threshold_seconds: float) -> bool:
        """A view is stale without a reading or once older than the threshold."""
        age = self.age_seconds(now)
        if age is None:
            return True
        return age > threshold_seconds
