from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import List

import httpx
import pytest

from backend.base import AuthenticationError, BackendError, NotAuthenticatedError
from backend.rest import RestBackend

TOKEN_PAYLOAD = {
    "access_token": "token-123",
    "refresh_token": "refresh-456",
    "expires_in": 3600,
    "user": {"id": "user-1", "email": "ops@example.com"},
}


def _reading_row(reading_id: int, device_id: str, created_at: str, **channels: float) -> dict:
    return {"id": reading_id, "device_id": device_id, "created_at": created_at, **channels}


class FakeService:
    """Records requests and answers like the hosted auth and table endpoints."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.readings: List[dict] = []
        self.revoked = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth/v1/token":
            body = json.loads(request.content)
            if body.get("password") != "secret":
                return httpx.Response(400, json={"error_description": "Invalid login credentials"})
            return httpx.Response(200, json=TOKEN_PAYLOAD)
        if path == "/auth/v1/logout":
            return httpx.Response(204)
        if self.revoked:
            return httpx.Response(401, json={"message": "JWT expired"})
        if path == "/rest/v1/devices":
            return httpx.Response(
                200,
                json=[
                    {"id": "a", "esp_id": "ESP-A", "name": "Zone 1"},
                    {"id": "b", "esp_id": "ESP-B", "name": "Zone 2"},
                ],
            )
        if path == "/rest/v1/readings":
            params = request.url.params
            limit = int(params.get("limit", "1000"))
            offset = int(params.get("offset", "0"))
            device_filter = params.get("device_id", "")
            rows = self.readings
            if device_filter.startswith("eq."):
                rows = [row for row in rows if row["device_id"] == device_filter[3:]]
            return httpx.Response(200, json=rows[offset : offset + limit])
        return httpx.Response(500, text="unexpected path")


def _backend(service: FakeService, page_size: int = 1000) -> RestBackend:
    return RestBackend(
        base_url="https://backend.example.com/",
        api_key="anon-key",
        page_size=page_size,
        transport=httpx.MockTransport(service),
    )


def test_sign_in_stores_session_and_sends_api_key() -> None:
    service = FakeService()
    backend = _backend(service)

    session = asyncio.run(backend.sign_in("ops@example.com", "secret"))

    assert session.access_token == "token-123"
    assert session.user_id == "user-1"
    assert session.expires_at is not None and session.expires_at > datetime.now(timezone.utc)
    request = service.requests[0]
    assert request.url.params["grant_type"] == "password"
    assert request.headers["apikey"] == "anon-key"
    assert asyncio.run(backend.get_session()) == session


def test_rejected_sign_in_raises_authentication_error() -> None:
    backend = _backend(FakeService())

    with pytest.raises(AuthenticationError, match="Invalid login credentials"):
        asyncio.run(backend.sign_in("ops@example.com", "nope"))

    assert asyncio.run(backend.get_session()) is None


def test_queries_require_a_session() -> None:
    service = FakeService()
    backend = _backend(service)

    with pytest.raises(NotAuthenticatedError):
        asyncio.run(backend.list_devices())
    assert service.requests == []


def test_list_devices_maps_columns_and_sends_bearer_token() -> None:
    service = FakeService()
    backend = _backend(service)

    async def scenario():
        await backend.sign_in("ops@example.com", "secret")
        return await backend.list_devices()

    devices = asyncio.run(scenario())

    assert [(device.id, device.external_id, device.name) for device in devices] == [
        ("a", "ESP-A", "Zone 1"),
        ("b", "ESP-B", "Zone 2"),
    ]
    request = service.requests[-1]
    assert request.headers["Authorization"] == "Bearer token-123"
    assert request.url.params["order"] == "name.asc"


def test_list_latest_readings_queries_each_device() -> None:
    service = FakeService()
    service.readings = [
        _reading_row(2, "a", "2025-01-01T00:05:00Z", soil_1=70),
        _reading_row(1, "b", "2025-01-01T00:01:00Z", soil_1=40),
    ]
    backend = _backend(service)

    async def scenario():
        await backend.sign_in("ops@example.com", "secret")
        return await backend.list_latest_readings(["a", "b"])

    readings = asyncio.run(scenario())

    assert sorted(reading.device_id for reading in readings) == ["a", "b"]
    reading_requests = [r for r in service.requests if r.url.path == "/rest/v1/readings"]
    assert {r.url.params["device_id"] for r in reading_requests} == {"eq.a", "eq.b"}
    assert all(r.url.params["limit"] == "1" for r in reading_requests)


def test_list_readings_builds_range_filters_and_pages() -> None:
    service = FakeService()
    service.readings = [
        _reading_row(i, "a", f"2025-01-01T00:{i:02d}:00Z", soil_1=float(i)) for i in range(5)
    ]
    backend = _backend(service, page_size=2)
    since = datetime(2025, 1, 1, tzinfo=timezone.utc)
    until = datetime(2025, 1, 2, tzinfo=timezone.utc)

    async def scenario():
        await backend.sign_in("ops@example.com", "secret")
        return await backend.list_readings(["a", "b"], since=since, until=until)

    readings = asyncio.run(scenario())

    assert [reading.id for reading in readings] == [0, 1, 2, 3, 4]
    reading_requests = [r for r in service.requests if r.url.path == "/rest/v1/readings"]
    assert [r.url.params["offset"] for r in reading_requests] == ["0", "2", "4"]
    first = reading_requests[0].url.params
    assert first["device_id"] == 'in.("a","b")'
    assert first.get_list("created_at") == [
        "gte.2025-01-01T00:00:00+00:00",
        "lte.2025-01-02T00:00:00+00:00",
    ]
    assert first["order"] == "created_at.asc,id.asc"


def test_list_readings_without_devices_skips_request() -> None:
    service = FakeService()
    backend = _backend(service)

    assert asyncio.run(backend.list_readings([])) == []
    assert service.requests == []


def test_unauthorized_query_clears_session() -> None:
    service = FakeService()
    backend = _backend(service)

    async def scenario() -> None:
        await backend.sign_in("ops@example.com", "secret")
        service.revoked = True
        with pytest.raises(AuthenticationError, match="JWT expired"):
            await backend.list_devices()
        assert await backend.get_session() is None

    asyncio.run(scenario())


def test_server_error_and_malformed_rows_raise_backend_error() -> None:
    service = FakeService()
    service.readings = [{"id": 1, "device_id": "a"}]
    backend = _backend(service)

    async def scenario() -> None:
        await backend.sign_in("ops@example.com", "secret")
        with pytest.raises(BackendError, match="Malformed reading row"):
            await backend.list_readings(["a"])

    asyncio.run(scenario())


def test_network_failure_raises_backend_error() -> None:
    def explode(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    backend = RestBackend("https://backend.example.com", "anon-key", transport=httpx.MockTransport(explode))

    with pytest.raises(BackendError, match="Sign-in request failed"):
        asyncio.run(backend.sign_in("ops@example.com", "secret"))


def test_sign_out_calls_logout_and_forgets_session() -> None:
    service = FakeService()
    backend = _backend(service)

    async def scenario() -> None:
        await backend.sign_in("ops@example.com", "secret")
        await backend.sign_out()
        assert await backend.get_session() is None

    asyncio.run(scenario())

    logout = service.requests[-1]
    assert logout.url.path == "/auth/v1/logout"
    assert logout.headers["Authorization"] == "Bearer token-123"
