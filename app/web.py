from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from app.api import build_dashboard_state, get_dashboard
from backend.base import AuthenticationError, BackendError, NotAuthenticatedError
from services.dashboard import DashboardService
from services.exporter import ExportError

# Seconds between automatic reloads of the tile page.
UI_REFRESH_SECONDS = 5

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))


def format_percent(value: Optional[float]) -> str:
    if value is None:
        return "—"
    return f"{_number(value)}%"


def format_celsius(value: Optional[float]) -> str:
    if value is None:
        return "—"
    return f"{_number(value)}°C"


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def format_age(moment: datetime, now: Optional[datetime] = None) -> str:
    """Relative age such as ``3 minutes ago`` or ``about 2 hours ago``."""
    reference = now or datetime.now(timezone.utc)
    seconds = max((reference - moment).total_seconds(), 0.0)
    minutes = round(seconds / 60)
    if minutes < 1:
        return "less than a minute ago"
    if minutes < 45:
        return "1 minute ago" if minutes == 1 else f"{minutes} minutes ago"
    if minutes < 90:
        return "about 1 hour ago"
    hours = round(minutes / 60)
    if hours < 24:
        return f"about {hours} hours ago"
    days = round(hours / 24)
    return "1 day ago" if days == 1 else f"{days} days ago"


templates.env.filters["pct"] = format_percent
templates.env.filters["celsius"] = format_celsius
templates.env.filters["age"] = format_age


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


router = APIRouter(include_in_schema=False)


@router.get("/login", name="ui_login", response_class=HTMLResponse)
async def login_form(
    request: Request,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    if dashboard.is_authenticated:
        return _redirect(str(request.url_for("ui_index")))
    return templates.TemplateResponse(request, "ui/login.html", {"error": None, "email": ""})


@router.post("/login", name="ui_login_submit", response_class=HTMLResponse)
async def login_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    try:
        await dashboard.sign_in(email, password)
    except BackendError as exc:
        code = (
            status.HTTP_401_UNAUTHORIZED
            if isinstance(exc, AuthenticationError)
            else status.HTTP_502_BAD_GATEWAY
        )
        return templates.TemplateResponse(
            request,
            "ui/login.html",
            {"error": str(exc), "email": email},
            status_code=code,
        )
    return _redirect(str(request.url_for("ui_index")))


@router.post("/logout", name="ui_logout")
async def logout(
    request: Request,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    await dashboard.sign_out()
    return _redirect(str(request.url_for("ui_login")))


@router.get("/ui", name="ui_index", response_class=HTMLResponse)
async def ui_index(
    request: Request,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    now = datetime.now(timezone.utc)
    try:
        state = build_dashboard_state(dashboard, now)
    except NotAuthenticatedError:
        return _redirect(str(request.url_for("ui_login")))
    return templates.TemplateResponse(
        request,
        "ui/index.html",
        {
            "state": state,
            "now": now,
            "refresh_seconds": UI_REFRESH_SECONDS,
            "loading": state.last_refreshed_at is None and state.error is None,
        },
    )


@router.get("/ui/devices/{device_id}", name="ui_device_history", response_class=HTMLResponse)
async def ui_device_history(
    request: Request,
    device_id: str,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    error: Optional[str] = None
    try:
        history = await dashboard.device_history(device_id)
    except NotAuthenticatedError:
        return _redirect(str(request.url_for("ui_login")))
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id!r} not found.",
        ) from exc
    except BackendError as exc:
        history = None
        error = str(exc)

    return templates.TemplateResponse(
        request,
        "ui/device.html",
        {
            "device": history.device if history else dashboard.reconciler.device(device_id),
            "buckets": history.buckets if history else [],
            "error": error,
        },
    )


@router.get("/ui/export", name="ui_export", response_class=HTMLResponse)
async def ui_export_form(
    request: Request,
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    if not dashboard.is_authenticated:
        return _redirect(str(request.url_for("ui_login")))
    return templates.TemplateResponse(
        request,
        "ui/export.html",
        {"error": None, "start": "", "end": "", "device_name": "", "zones": _zone_names(dashboard)},
    )


@router.post("/ui/export", name="ui_export_submit")
async def ui_export_submit(
    request: Request,
    start: str = Form(""),
    end: str = Form(""),
    device_name: str = Form(""),
    dashboard: DashboardService = Depends(get_dashboard),
) -> Response:
    try:
        content = await dashboard.export_csv(start, end, device_name or None)
    except NotAuthenticatedError:
        return _redirect(str(request.url_for("ui_login")))
    except (ExportError, BackendError) as exc:
        code = (
            status.HTTP_400_BAD_REQUEST
            if isinstance(exc, ExportError)
            else status.HTTP_502_BAD_GATEWAY
        )
        return templates.TemplateResponse(
            request,
            "ui/export.html",
            {
                "error": str(exc),
                "start": start,
                "end": end,
                "device_name": device_name,
                "zones": _zone_names(dashboard),
            },
            status_code=code,
        )
    filename = dashboard.exporter.filename()
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def _zone_names(dashboard: DashboardService) -> list[str]:
    return sorted({device.name for device in dashboard.reconciler.devices()}, key=str.casefold)
