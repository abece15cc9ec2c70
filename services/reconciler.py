"""Latest-reading-per-device state kept consistent under polling and change events."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Dict, Iterable, List, Optional

from models.records import ChangeEvent, ChangeKind, Device, DeviceLatestView, Reading

logger = logging.getLogger(__name__)


def _newer(candidate: Reading, held: Optional[Reading]) -> bool:
    """Batch ordering: later ``created_at`` wins, equal timestamps prefer the higher id."""
    if held is None:
        return True
    if candidate.created_at != held.created_at:
        return candidate.created_at > held.created_at
    candidate_id = -1 if candidate.id is None else candidate.id
    held_id = -1 if held.id is None else held.id
    return candidate_id > held_id


def _view_order(view: DeviceLatestView) -> tuple[str, str, str]:
    name = view.device.name
    return (name.casefold(), name, view.device.id)


class LatestReadingReconciler:
    """Maps every known device to the most recent reading observed for it.

    The mapping is only ever replaced wholesale (bulk refresh) or one entry at
    a time (change event), under a lock, so readers never see a half-applied
    update. Along ``created_at`` each device's entry only moves forward.
    """

    def __init__(self) -> None:
        self._devices: Dict[str, Device] = {}
        self._latest: Dict[str, Optional[Reading]] = {}
        self._lock = Lock()

    def initialize(self, devices: Iterable[Device], readings: Iterable[Reading]) -> None:
        """Rebuild the mapping from the device list and an unordered reading batch.

        Raises ``ValueError`` when a reading lacks ``device_id`` or ``created_at``.
        """
        device_map, latest = self._build(devices, readings)
        with self._lock:
            self._devices = device_map
            self._latest = latest
        logger.debug(
            "Reconciler initialized",
            extra={"device_count": len(device_map)},
        )

    def refresh(self, devices: Iterable[Device], readings: Iterable[Reading]) -> None:
        """Like :meth:`initialize`, but never moves a device back to an older reading."""
        device_map, latest = self._build(devices, readings)
        with self._lock:
            for device_id, held in self._latest.items():
                if device_id not in latest or held is None:
                    continue
                fetched = latest[device_id]
                if fetched is None or held.created_at > fetched.created_at:
                    latest[device_id] = held
            self._devices = device_map
            self._latest = latest

    def apply_change(self, event: ChangeEvent) -> bool:
        """Apply one change notification; returns True when the mapping changed.

        Malformed events are dropped. Deletes are not reconciled: removing the
        current latest reading leaves it displayed until a newer one arrives.
        """
        reading = getattr(event, "reading", None)
        kind = getattr(event, "kind", None)
        if (
            reading is None
            or not getattr(reading, "device_id", None)
            or getattr(reading, "created_at", None) is None
        ):
            logger.warning("Dropping malformed change event", extra={"reason": "missing fields"})
            return False

        if kind is ChangeKind.delete:
            logger.info(
                "Ignoring delete event",
                extra={"device_id": reading.device_id, "reading_id": reading.id},
            )
            return False
        if kind not in (ChangeKind.insert, ChangeKind.update):
            logger.warning("Dropping change event of unknown kind", extra={"reason": str(kind)})
            return False

        with self._lock:
            if reading.device_id not in self._devices:
                logger.debug(
                    "Ignoring change for unknown device",
                    extra={"device_id": reading.device_id, "reading_id": reading.id},
                )
                return False
            held = self._latest.get(reading.device_id)
            if held is not None and reading.created_at <= held.created_at:
                return False
            self._latest[reading.device_id] = reading

        logger.debug(
            "Latest reading advanced",
            extra={
                "device_id": reading.device_id,
                "reading_id": reading.id,
                "event_kind": kind.value,
                "created_at": reading.created_at,
            },
        )
        return True

    def snapshot(self) -> List[DeviceLatestView]:
        """One view per known device, ordered by display name (case-insensitive)."""
        with self._lock:
            views = [
                DeviceLatestView(device=device, latest=self._latest.get(device_id))
                for device_id, device in self._devices.items()
            ]
        return sorted(views, key=_view_order)

    def latest(self, device_id: str) -> Optional[Reading]:
        with self._lock:
            return self._latest.get(device_id)

    def device(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices.values())

    def clear(self) -> None:
        with self._lock:
            self._devices = {}
            self._latest = {}

    @staticmethod
    def _build(
        devices: Iterable[Device], readings: Iterable[Reading]
    ) -> tuple[Dict[str, Device], Dict[str, Optional[Reading]]]:
        device_map = {device.id: device for device in devices}
        latest: Dict[str, Optional[Reading]] = {device_id: None for device_id in device_map}
        for reading in readings:
            if not getattr(reading, "device_id", None):
                raise ValueError("Reading is missing 'device_id'.")
            if getattr(reading, "created_at", None) is None:
                raise ValueError("Reading is missing 'created_at'.")
            if reading.device_id not in latest:
                continue
            if _newer(reading, latest[reading.device_id]):
                latest[reading.device_id] = reading
        return device_map, latest
