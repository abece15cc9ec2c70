"""CSV export of historical readings."""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable, Optional, Sequence, Tuple

from backend.base import TelemetryBackend
from models.records import MEASUREMENT_CHANNELS, Device, Reading

logger = logging.getLogger(__name__)

CSV_HEADER: Tuple[str, ...] = ("date", "time", "external_id", "name", *MEASUREMENT_CHANNELS)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_PART = re.compile(r"[T ](\d{2}(?::\d{2}(?::\d{2}(?:\.\d+)?)?)?)")

# Span covered by an end bound, keyed by the number of ':' in its time part.
_END_SPANS = {
    0: timedelta(hours=1),
    1: timedelta(minutes=1),
    2: timedelta(seconds=1),
}


class ExportError(ValueError):
    """The requested export range is unusable."""


@dataclass(frozen=True)
class ExportRange:
    start: datetime
    end: datetime


def _parse_bound(raw: Optional[str], is_end: bool) -> datetime:
    candidate = (raw or "").strip()
    if not candidate:
        raise ExportError("Choose start & end.")

    if _DATE_ONLY.match(candidate):
        try:
            day = date.fromisoformat(candidate)
        except ValueError as exc:
            raise ExportError(f"Invalid date {candidate!r}.") from exc
        return datetime.combine(day, time.max if is_end else time.min, tzinfo=timezone.utc)

    normalized = candidate[:-1] + "+00:00" if candidate.endswith("Z") else candidate
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ExportError(f"Invalid date/time {candidate!r}.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    if is_end:
        match = _TIME_PART.search(candidate)
        if match is None or "." not in match.group(1):
            colons = match.group(1).count(":") if match else 2
            parsed += _END_SPANS[colons] - timedelta(microseconds=1)
    return parsed


def parse_export_range(start: Optional[str], end: Optional[str]) -> ExportRange:
    """Parse an inclusive range; values without an offset are read as UTC.

    A date-only end covers its whole day, an hour-only end its whole hour and
    a minute-precision end its whole minute.
    """
    export_range = ExportRange(
        start=_parse_bound(start, is_end=False),
        end=_parse_bound(end, is_end=True),
    )
    if export_range.start > export_range.end:
        raise ExportError("Start must not be after end.")
    return export_range


def _format_value(value: Optional[float]) -> str:
    if value is None:
        return ""
    if value.is_integer():
        return str(int(value))
    return repr(value)


class CsvExporter:
    """Queries readings for a range and renders them as CSV text."""

    def __init__(self, backend: TelemetryBackend, zone: tzinfo) -> None:
        self.backend = backend
        self.zone = zone

    async def export(
        self,
        start: Optional[str],
        end: Optional[str],
        device_name: Optional[str] = None,
    ) -> str:
        export_range = parse_export_range(start, end)
        rows = await self.fetch_rows(export_range, device_name)
        logger.info(
            "Exporting readings",
            extra={"row_count": len(rows), "reason": device_name or "all devices"},
        )
        return self.render(rows)

    async def fetch_rows(
        self, export_range: ExportRange, device_name: Optional[str] = None
    ) -> list[Tuple[Reading, Optional[Device]]]:
        devices = {device.id: device for device in await self.backend.list_devices()}
        name = (device_name or "").strip() or None
        if name is None:
            device_ids: Sequence[str] = list(devices)
        else:
            device_ids = [device.id for device in devices.values() if device.name == name]

        readings = await self.backend.list_readings(
            device_ids,
            since=export_range.start,
            until=export_range.end,
            ascending=True,
        )
        ordered = sorted(
            readings, key=lambda reading: (reading.created_at, reading.id or 0)
        )
        return [(reading, devices.get(reading.device_id)) for reading in ordered]

    def render(self, rows: Iterable[Tuple[Reading, Optional[Device]]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for reading, device in rows:
            local = reading.created_at.astimezone(self.zone)
            writer.writerow(
                [
                    local.strftime("%Y-%m-%d"),
                    local.strftime("%H:%M"),
                    device.external_id if device else "",
                    device.name if device else "",
                    *(_format_value(reading.channel(name)) for name in MEASUREMENT_CHANNELS),
                ]
            )
        return buffer.getvalue()

    @staticmethod
    def filename(now: Optional[datetime] = None) -> str:
        moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        stamp = moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return f"readings_{stamp.replace(':', '-')}.csv"
