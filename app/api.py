"""HTTP route definitions for the service."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Response, status

from app.schemas import (
    BucketSchema,
    ChangeAck,
    DashboardState,
    DeviceHistoryResponse,
    DeviceSchema,
    DeviceTile,
    SessionStatus,
    SignInRequest,
)
from backend.base import AuthenticationError, BackendError, NotAuthenticatedError
from services.dashboard import DashboardService, build_default_dashboard
from services.exporter import ExportError
from settings import get_settings

router = APIRouter()


def get_dashboard() -> DashboardService:
    return build_default_dashboard()


def _unauthorized(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))


def _bad_gateway(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _session_status(dashboard: DashboardService) -> SessionStatus:
    session = dashboard.gate.session
    return SessionStatus(
        authenticated=session is not None,
        email=session.email if session is not None else None,
    )


def build_dashboard_state(dashboard: DashboardService, now: Optional[datetime] = None) -> DashboardState:
    moment = now or datetime.now(timezone.utc)
    tiles = [
        DeviceTile.from_view(view, now=moment, stale=dashboard.is_stale(view, moment))
        for view in dashboard.snapshot()
    ]
    return DashboardState(
        devices=tiles,
        last_refreshed_at=dashboard.last_refreshed_at,
        error=dashboard.last_error,
    )


@router.post(
    "/session",
    response_model=SessionStatus,
    summary="Sign in to the telemetry backend.",
)
async def sign_in(
    credentials: SignInRequest,
    dashboard: DashboardService = Depends(get_dashboard),
) -> SessionStatus:
    try:
        await dashboard.sign_in(credentials.email, credentials.password)
    except AuthenticationError as exc:
        raise _unauthorized(exc) from exc
    except BackendError as exc:
        raise _bad_gateway(exc) from exc
    return _session_status(dashboard)


@router.get(
    "/session",
    response_model=SessionStatus,
    summary="Report whether the dashboard holds an authenticated session.",
)
async def session_status(
    dashboard: DashboardService = Depends(get_dashboard),
) -> SessionStatus:
    return _session_status(dashboard)


@router.delete(
    "/session",
    response_model=SessionStatus,
    summary="Sign out and tear down the live subscription.",
)
async def sign_out(
    dashboard: DashboardService = Depends(get_dashboard),
) -> SessionStatus:
    await dashboard.sign_out()
    return _session_status(dashboard)


@router.get(
    "/devices",
    response_model=DashboardState,
    summary="Latest reading and freshness for every device.",
)
async def list_devices(
    dashboard: DashboardService = Depends(get_dashboard),
) -> DashboardState:
    try:
        return build_dashboard_state(dashboard)
    except NotAuthenticatedError as exc:
        raise _unauthorized(exc) from exc


@router.post(
    "/devices/refresh",
    response_model=DashboardState,
    summary="Re-query the backend now instead of waiting for the next poll.",
)
async def refresh_devices(
    dashboard: DashboardService = Depends(get_dashboard),
) -> DashboardState:
    try:
        await dashboard.refresh()
        return build_dashboard_state(dashboard)
    except NotAuthenticatedError as exc:
        raise _unauthorized(exc) from exc


@router.get(
    "/devices/{device_id}/history",
    response_model=DeviceHistoryResponse,
    summary="3-hour averages for one device over the lookback window.",
)
async def device_history(
    device_id: str,
    dashboard: DashboardService = Depends(get_dashboard),
) -> DeviceHistoryResponse:
    try:
        history = await dashboard.device_history(device_id)
    except NotAuthenticatedError as exc:
        raise _unauthorized(exc) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id!r} not found.",
        ) from exc
    except BackendError as exc:
        raise _bad_gateway(exc) from exc
    return DeviceHistoryResponse(
        device=DeviceSchema.from_device(history.device),
        since=history.since,
        buckets=[BucketSchema.from_bucket(bucket) for bucket in history.buckets],
    )


@router.get(
    "/export.csv",
    summary="Download readings in an inclusive time range as CSV.",
    response_class=Response,
)
async def export_csv(
    start: str = Query(..., description="Start date (YYYY-MM-DD) or date-time."),
    end: str = Query(..., description="End date or date-time, inclusive."),
    device_name: Optional[str] = Query(None, description="Only export this zone."),
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    try:
        content = await dashboard.export_csv(start, end, device_name)
    except NotAuthenticatedError as exc:
        raise _unauthorized(exc) from exc
    except ExportError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except BackendError as exc:
        raise _bad_gateway(exc) from exc
    filename = dashboard.exporter.filename()
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(
    "/hooks/readings",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ChangeAck,
    summary="Receive a change notification for the readings table.",
)
async def receive_reading_change(
    payload: Dict[str, Any] = Body(...),
    webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    dashboard: DashboardService = Depends(get_dashboard),
) -> ChangeAck:
    expected = get_settings().webhook_secret
    if expected and not secrets.compare_digest(webhook_secret or "", expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret.")
    event = dashboard.receive_change(payload)
    if event is None:
        return ChangeAck(accepted=False, reason="malformed change event")
    return ChangeAck(accepted=True)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(
    dashboard: DashboardService = Depends(get_dashboard),
) -> dict[str, str]:
    return {
        "status": "ok",
        "session": "authenticated" if dashboard.is_authenticated else "anonymous",
        "live": "running" if dashboard.monitor.running else "stopped",
    }


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /ui for the dashboard and /health for service status."}
