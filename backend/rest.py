"""REST client for the managed backend (password auth + table queries)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.base import (
    AuthSession,
    AuthenticationError,
    BackendError,
    NotAuthenticatedError,
    TelemetryBackend,
)
from models.records import MEASUREMENT_CHANNELS, Device, Reading

logger = logging.getLogger(__name__)

_READING_COLUMNS = ",".join(("id", "device_id", "created_at", *MEASUREMENT_CHANNELS))
_DEVICE_COLUMNS = "id,esp_id,name"

# The backend caps responses at 1000 rows; larger ranges are fetched in pages.
DEFAULT_PAGE_SIZE = 1000

QueryParams = List[Tuple[str, str]]


class RestBackend(TelemetryBackend):
    """Backend client speaking the hosted auth and table REST endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        page_size: int = DEFAULT_PAGE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"apikey": api_key},
            transport=transport,
        )
        self._page_size = page_size
        self._session: Optional[AuthSession] = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def sign_in(self, email: str, password: str) -> AuthSession:
        try:
            response = await self._client.post(
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Sign-in request failed: {exc}") from exc

        if response.status_code in (400, 401, 403, 422):
            raise AuthenticationError(self._error_detail(response) or "Invalid login credentials")
        if response.is_error:
            raise BackendError(
                f"Sign-in failed with status {response.status_code}: "
                f"{self._error_detail(response) or 'no detail provided.'}"
            )

        payload = self._json(response)
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise BackendError("Unexpected response payload when signing in.")

        user = payload.get("user") or {}
        expires_at = None
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)) and expires_in > 0:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)

        self._session = AuthSession(
            access_token=payload["access_token"],
            user_id=str(user.get("id", "")),
            email=user.get("email", email),
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )
        return self._session

    async def sign_out(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            response = await self._client.post(
                "/auth/v1/logout",
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Sign-out request failed: {exc}") from exc
        # An already expired token is as good as a revoked one.
        if response.is_error and response.status_code != 401:
            raise BackendError(
                f"Sign-out failed with status {response.status_code}: "
                f"{self._error_detail(response) or 'no detail provided.'}"
            )

    async def get_session(self) -> Optional[AuthSession]:
        session = self._session
        if session is None:
            return None
        if session.expires_at is not None and session.expires_at <= datetime.now(timezone.utc):
            self._session = None
            return None
        return session

    async def list_devices(self) -> list[Device]:
        rows = await self._get_rows(
            "/rest/v1/devices",
            [("select", _DEVICE_COLUMNS), ("order", "name.asc")],
        )
        try:
            return [Device.from_row(row) for row in rows]
        except ValueError as exc:
            raise BackendError(f"Malformed device row: {exc}") from exc

    async def list_latest_readings(self, device_ids: Sequence[str]) -> list[Reading]:
        if not device_ids:
            return []

        async def latest_for(device_id: str) -> list[Reading]:
            rows = await self._get_rows(
                "/rest/v1/readings",
                [
                    ("select", _READING_COLUMNS),
                    ("device_id", f"eq.{device_id}"),
                    ("order", "created_at.desc"),
                    ("limit", "1"),
                ],
            )
            return self._to_readings(rows)

        batches = await asyncio.gather(*(latest_for(device_id) for device_id in device_ids))
        return [reading for batch in batches for reading in batch]

    async def list_readings(
        self,
        device_ids: Sequence[str],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        ascending: bool = True,
    ) -> list[Reading]:
        if not device_ids:
            return []

        quoted = ",".join(f'"{device_id}"' for device_id in device_ids)
        params: QueryParams = [
            ("select", _READING_COLUMNS),
            ("device_id", f"in.({quoted})"),
        ]
        if since is not None:
            params.append(("created_at", f"gte.{since.astimezone(timezone.utc).isoformat()}"))
        if until is not None:
            params.append(("created_at", f"lte.{until.astimezone(timezone.utc).isoformat()}"))
        direction = "asc" if ascending else "desc"
        params.append(("order", f"created_at.{direction},id.{direction}"))

        readings: list[Reading] = []
        offset = 0
        while True:
            page = await self._get_rows(
                "/rest/v1/readings",
                params + [("limit", str(self._page_size)), ("offset", str(offset))],
            )
            readings.extend(self._to_readings(page))
            if len(page) < self._page_size:
                break
            offset += len(page)
        return readings

    async def _get_rows(self, path: str, params: QueryParams) -> list[Dict[str, Any]]:
        session = await self.get_session()
        if session is None:
            raise NotAuthenticatedError("Sign in to query telemetry.")

        try:
            response = await self._client.get(
                path,
                params=params,
                headers={"Authorization": f"Bearer {session.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Request to {path} failed: {exc}") from exc

        if response.status_code == 401:
            self._session = None
            raise AuthenticationError(self._error_detail(response) or "Session is no longer valid.")
        if response.is_error:
            raise BackendError(
                f"Request to {path} failed with status {response.status_code}: "
                f"{self._error_detail(response) or 'no detail provided.'}"
            )

        payload = self._json(response)
        if not isinstance(payload, list):
            raise BackendError(f"Unexpected response payload from {path}.")
        return payload

    @staticmethod
    def _to_readings(rows: Sequence[Dict[str, Any]]) -> list[Reading]:
        try:
            return [Reading.from_row(row) for row in rows]
        except ValueError as exc:
            raise BackendError(f"Malformed reading row: {exc}") from exc

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError("Backend returned a non-JSON response.") from exc

    @staticmethod
    def _error_detail(response: httpx.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            text = response.text.strip()
            return text or None
        if isinstance(data, dict):
            for key in ("error_description", "msg", "message", "error"):
                value = data.get(key)
                if isinstance(value, str) and value:
                    return value
        return None
