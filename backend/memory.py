"""In-process stand-in for the managed backend, used for local runs and tests."""

from __future__ import annotations

import json
import secrets
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union
from uuid import uuid4

from backend.base import (
    AuthSession,
    AuthenticationError,
    NotAuthenticatedError,
    TelemetryBackend,
)
from models.records import ChangeEvent, ChangeKind, Device, Reading
from services.feed import ChangeFeed

ReadingLike = Union[Reading, Mapping[str, Any]]


class InMemoryBackend(TelemetryBackend):
    """Holds devices, readings and password users in memory.

    Writes made through :meth:`insert_reading`, :meth:`update_reading` and
    :meth:`delete_reading` publish change events to ``feed`` the way the
    hosted database webhook would.
    """

    def __init__(
        self,
        devices: Iterable[Device] = (),
        readings: Iterable[Reading] = (),
        users: Optional[Mapping[str, str]] = None,
        feed: Optional[ChangeFeed] = None,
    ) -> None:
        self.feed = feed
        self._devices: Dict[str, Device] = {device.id: device for device in devices}
        self._readings: Dict[int, Reading] = {}
        self._users: Dict[str, str] = dict(users or {})
        self._session: Optional[AuthSession] = None
        self._revoked = False
        self._next_id = 1
        self._lock = Lock()
        for reading in readings:
            self._store(reading)

    @classmethod
    def from_seed_file(cls, path: Path, feed: Optional[ChangeFeed] = None) -> "InMemoryBackend":
        """Load ``{"users": [...], "devices": [...], "readings": [...]}`` from JSON."""
        data = json.loads(path.read_text() or "{}")
        users = {entry["email"]: entry["password"] for entry in data.get("users", [])}
        devices = [Device.from_row(row) for row in data.get("devices", [])]
        readings = [Reading.from_row(row) for row in data.get("readings", [])]
        return cls(devices=devices, readings=readings, users=users, feed=feed)

    # Write helpers standing in for device ingestion.

    def insert_reading(self, reading: ReadingLike) -> Reading:
        stored = self._store(reading)
        self._publish(ChangeKind.insert, stored)
        return stored

    def update_reading(self, reading: ReadingLike) -> Reading:
        candidate = self._coerce(reading)
        if candidate.id is None:
            raise KeyError("Cannot update a reading without an id.")
        with self._lock:
            if candidate.id not in self._readings:
                raise KeyError(f"Reading {candidate.id!r} not found.")
            self._readings[candidate.id] = candidate
        self._publish(ChangeKind.update, candidate)
        return candidate

    def delete_reading(self, reading_id: int) -> Reading:
        with self._lock:
            removed = self._readings.pop(reading_id, None)
        if removed is None:
            raise KeyError(f"Reading {reading_id!r} not found.")
        self._publish(ChangeKind.delete, removed)
        return removed

    def revoke_session(self) -> None:
        """Invalidate the current session as an administrator would."""
        with self._lock:
            if self._session is not None:
                self._revoked = True

    # TelemetryBackend

    async def sign_in(self, email: str, password: str) -> AuthSession:
        with self._lock:
            expected = self._users.get(email)
            if expected is None or not secrets.compare_digest(expected, password):
                raise AuthenticationError("Invalid login credentials")
            self._session = AuthSession(
                access_token=secrets.token_urlsafe(24),
                user_id=str(uuid4()),
                email=email,
            )
            self._revoked = False
            return self._session

    async def sign_out(self) -> None:
        with self._lock:
            self._session = None
            self._revoked = False

    async def get_session(self) -> Optional[AuthSession]:
        with self._lock:
            if self._revoked:
                return None
            return self._session

    async def list_devices(self) -> list[Device]:
        self._require_session()
        with self._lock:
            devices = list(self._devices.values())
        return sorted(devices, key=lambda device: (device.name, device.id))

    async def list_latest_readings(self, device_ids: Sequence[str]) -> list[Reading]:
        self._require_session()
        wanted = set(device_ids)
        latest: Dict[str, Reading] = {}
        with self._lock:
            readings = list(self._readings.values())
        for reading in readings:
            if reading.device_id not in wanted:
                continue
            held = latest.get(reading.device_id)
            if held is None or _sort_key(reading) > _sort_key(held):
                latest[reading.device_id] = reading
        return list(latest.values())

    async def list_readings(
        self,
        device_ids: Sequence[str],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        ascending: bool = True,
    ) -> list[Reading]:
        self._require_session()
        wanted = set(device_ids)
        with self._lock:
            readings = list(self._readings.values())
        matching = [
            reading
            for reading in readings
            if reading.device_id in wanted
            and (since is None or reading.created_at >= since)
            and (until is None or reading.created_at <= until)
        ]
        return sorted(matching, key=_sort_key, reverse=not ascending)

    def _require_session(self) -> None:
        with self._lock:
            if self._revoked:
                self._session = None
                self._revoked = False
                raise AuthenticationError("Session is no longer valid.")
            if self._session is None:
                raise NotAuthenticatedError("Sign in to query telemetry.")

    def _coerce(self, reading: ReadingLike) -> Reading:
        if isinstance(reading, Reading):
            return reading
        return Reading.from_row(reading)

    def _store(self, reading: ReadingLike) -> Reading:
        candidate = self._coerce(reading)
        with self._lock:
            if candidate.id is None:
                candidate = replace(candidate, id=self._next_id)
            self._next_id = max(self._next_id, candidate.id + 1)
            self._readings[candidate.id] = candidate
        return candidate

    def _publish(self, kind: ChangeKind, reading: Reading) -> None:
        if self.feed is not None:
            self.feed.publish(ChangeEvent(kind=kind, reading=reading))


def _sort_key(reading: Reading) -> tuple[datetime, int]:
    return (reading.created_at, -1 if reading.id is None else reading.id)
