"""Bucketed averaging of sensor readings for history charts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence

from models.records import (
    HUMIDITY_CHANNELS,
    SOIL_CHANNELS,
    TEMPERATURE_CHANNELS,
    Reading,
)

DEFAULT_BUCKET_HOURS = 3


@dataclass(frozen=True)
class BucketAverage:
    """Averages for one fixed-width time bucket."""

    start: datetime
    reading_count: int
    avg_soil_moisture: Optional[float] = None
    avg_temperature: Optional[float] = None
    avg_humidity: Optional[float] = None

    @property
    def label(self) -> str:
        return self.start.strftime("%m/%d %H:%M")


def round_one_decimal(value: float) -> float:
    """Round to one decimal place, ties toward positive infinity."""
    return math.floor(value * 10 + 0.5) / 10


def family_average(readings: Sequence[Reading], channels: Sequence[str]) -> Optional[float]:
    """Mean of every present value across ``channels`` of ``readings``; None if none present."""
    values = [
        value
        for reading in readings
        for value in (reading.channel(name) for name in channels)
        if value is not None
    ]
    if not values:
        return None
    return round_one_decimal(sum(values) / len(values))


class HistoryAggregator:
    """Groups readings into wall-clock aligned buckets in a fixed display zone.

    Buckets start on hours divisible by ``bucket_hours`` as seen in ``zone``,
    so results do not depend on the host's local time zone.
    """

    def __init__(self, zone: tzinfo, bucket_hours: int = DEFAULT_BUCKET_HOURS) -> None:
        if bucket_hours <= 0 or 24 % bucket_hours:
            raise ValueError("bucket_hours must be a positive divisor of 24.")
        self.zone = zone
        self.bucket_hours = bucket_hours

    def bucket_start(self, moment: datetime) -> datetime:
        local = moment.astimezone(self.zone)
        hour = (local.hour // self.bucket_hours) * self.bucket_hours
        return local.replace(hour=hour, minute=0, second=0, microsecond=0)

    def aggregate(self, readings: Iterable[Reading]) -> List[BucketAverage]:
        grouped: Dict[datetime, List[Reading]] = {}
        for reading in readings:
            grouped.setdefault(self.bucket_start(reading.created_at), []).append(reading)

        buckets = [
            BucketAverage(
                start=start,
                reading_count=len(members),
                avg_soil_moisture=family_average(members, SOIL_CHANNELS),
                avg_temperature=family_average(members, TEMPERATURE_CHANNELS),
                avg_humidity=family_average(members, HUMIDITY_CHANNELS),
            )
            for start, members in grouped.items()
        ]
        return sorted(buckets, key=lambda bucket: bucket.start)
