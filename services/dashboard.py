"""Dashboard orchestration: session, live state, history and export."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.base import AuthSession, TelemetryBackend
from backend.memory import InMemoryBackend
from backend.rest import RestBackend
from models.records import ChangeEvent, Device, DeviceLatestView
from services.aggregator import BucketAverage, HistoryAggregator
from services.exporter import CsvExporter
from services.feed import ChangeFeed
from services.monitor import LiveReadingsMonitor
from services.reconciler import LatestReadingReconciler
from services.session import SessionGate
from settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceHistory:
    device: Device
    since: datetime
    buckets: List[BucketAverage]


class DashboardService:
    """Wires the session gate, live monitor, history aggregator and CSV exporter.

    The live monitor runs exactly while the gate holds an authenticated
    session: signing in starts it, signing out or a revoked session stops it.
    """

    def __init__(
        self,
        backend: TelemetryBackend,
        feed: ChangeFeed,
        zone: tzinfo = timezone.utc,
        freshness_threshold: float = 12.5,
        refresh_interval: float = 10.0,
        history_lookback_days: int = 7,
        queue_size: Optional[int] = None,
    ) -> None:
        self.backend = backend
        self.feed = feed
        self.zone = zone
        self.freshness_threshold = freshness_threshold
        self.history_lookback = timedelta(days=history_lookback_days)
        self.gate = SessionGate(backend)
        self.reconciler = LatestReadingReconciler()
        self.monitor = LiveReadingsMonitor(
            backend=backend,
            feed=feed,
            reconciler=self.reconciler,
            refresh_interval=refresh_interval,
            queue_size=queue_size,
        )
        self.history = HistoryAggregator(zone)
        self.exporter = CsvExporter(backend, zone)

        self.gate.add_listener(self._on_session_change)
        self.monitor.on_auth_failure = self.gate.revoke

    @property
    def is_authenticated(self) -> bool:
        return self.gate.is_authenticated

    @property
    def last_error(self) -> Optional[str]:
        return self.monitor.last_error

    @property
    def last_refreshed_at(self) -> Optional[datetime]:
        return self.monitor.last_refreshed_at

    async def startup(self) -> None:
        await self.gate.restore()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.backend.aclose()

    async def sign_in(self, email: str, password: str) -> AuthSession:
        return await self.gate.sign_in(email, password)

    async def sign_out(self) -> None:
        await self.gate.sign_out()

    async def refresh(self) -> bool:
        self.gate.require()
        return await self.monitor.refresh()

    def snapshot(self) -> List[DeviceLatestView]:
        self.gate.require()
        return self.reconciler.snapshot()

    def is_stale(self, view: DeviceLatestView, now: Optional[datetime] = None) -> bool:
        moment = now or datetime.now(timezone.utc)
        return view.is_stale(moment, self.freshness_threshold)

    async def device_history(self, device_id: str, now: Optional[datetime] = None) -> DeviceHistory:
        """3-hour averages for one device over the lookback window.

        Raises ``KeyError`` for a device the dashboard does not know.
        """
        self.gate.require()
        device = self.reconciler.device(device_id)
        if device is None:
            raise KeyError(f"Device {device_id!r} not found.")
        since = (now or datetime.now(timezone.utc)) - self.history_lookback
        readings = await self.backend.list_readings([device_id], since=since, ascending=False)
        return DeviceHistory(device=device, since=since, buckets=self.history.aggregate(readings))

    async def export_csv(
        self,
        start: Optional[str],
        end: Optional[str],
        device_name: Optional[str] = None,
    ) -> str:
        self.gate.require()
        return await self.exporter.export(start, end, device_name)

    def receive_change(self, payload: Mapping[str, Any]) -> Optional[ChangeEvent]:
        """Hand a raw change notification to the feed; malformed payloads are dropped."""
        return self.feed.publish_payload(payload)

    async def _on_session_change(self, authenticated: bool) -> None:
        if authenticated:
            await self.monitor.start()
        else:
            await self.monitor.stop()


def resolve_zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown display time zone; using UTC", extra={"reason": name})
        return timezone.utc


def build_default_backend(feed: ChangeFeed) -> TelemetryBackend:
    settings = get_settings()
    if settings.backend_url:
        return RestBackend(
            base_url=settings.backend_url,
            api_key=settings.backend_api_key or "",
            timeout=settings.backend_timeout,
        )
    if settings.seed_path:
        return InMemoryBackend.from_seed_file(Path(settings.seed_path), feed=feed)
    return InMemoryBackend(feed=feed)


@lru_cache
def build_default_dashboard() -> DashboardService:
    """Factory that wires the dashboard from environment settings."""
    settings = get_settings()
    feed = ChangeFeed(default_maxsize=settings.change_queue_size)
    return DashboardService(
        backend=build_default_backend(feed),
        feed=feed,
        zone=resolve_zone(settings.display_timezone),
        freshness_threshold=settings.freshness_threshold,
        refresh_interval=settings.refresh_interval,
        history_lookback_days=settings.history_lookback_days,
    )
