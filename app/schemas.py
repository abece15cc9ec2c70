"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from models.records import Device, DeviceLatestView, Reading
from services.aggregator import BucketAverage


class DeviceSchema(BaseModel):
    """A monitored device."""

    id: str
    external_id: str
    name: str

    @classmethod
    def from_device(cls, device: Device) -> "DeviceSchema":
        return cls(id=device.id, external_id=device.external_id, name=device.name)


class ReadingSchema(BaseModel):
    """One sample with its eight optional measurement channels."""

    id: Optional[int] = None
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
    def from_reading(cls, reading: Reading) -> "ReadingSchema":
        return cls(
            id=reading.id,
            device_id=reading.device_id,
            created_at=reading.created_at,
            **reading.channels(),
        )


class DeviceTile(BaseModel):
    """A device with its latest reading and freshness."""

    device: DeviceSchema
    latest: Optional[ReadingSchema] = None
    stale: bool
    age_seconds: Optional[float] = Field(
        default=None, description="Seconds since the latest reading was captured."
    )

    @classmethod
    def from_view(cls, view: DeviceLatestView, now: datetime, stale: bool) -> "DeviceTile":
        return cls(
            device=DeviceSchema.from_device(view.device),
            latest=ReadingSchema.from_reading(view.latest) if view.latest else None,
            stale=stale,
            age_seconds=view.age_seconds(now),
        )


class DashboardState(BaseModel):
    """Reconciled device tiles plus refresh status."""

    devices: List[DeviceTile] = Field(default_factory=list)
    last_refreshed_at: Optional[datetime] = None
    error: Optional[str] = Field(
        default=None, description="Most recent refresh failure; data shown is the last good state."
    )


class BucketSchema(BaseModel):
    """Averages for one 3-hour bucket."""

    start: datetime
    label: str
    reading_count: int = Field(..., ge=0)
    avg_soil_moisture: Optional[float] = None
    avg_temperature: Optional[float] = None
    avg_humidity: Optional[float] = None

    @classmethod
    def from_bucket(cls, bucket: BucketAverage) -> "BucketSchema":
        return cls(
            start=bucket.start,
            label=bucket.label,
            reading_count=bucket.reading_count,
            avg_soil_moisture=bucket.avg_soil_moisture,
            avg_temperature=bucket.avg_temperature,
            avg_humidity=bucket.avg_humidity,
        )


class DeviceHistoryResponse(BaseModel):
    device: DeviceSchema
    since: datetime
    buckets: List[BucketSchema] = Field(default_factory=list)


class SignInRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SessionStatus(BaseModel):
    authenticated: bool
    email: Optional[str] = None


class ChangeAck(BaseModel):
    """Acknowledgement for a received change notification."""

    accepted: bool
    reason: Optional[str] = None
