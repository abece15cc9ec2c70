"""Live view maintenance: change-event consumer plus periodic bulk refresh."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from backend.base import AuthenticationError, BackendError, NotAuthenticatedError, TelemetryBackend
from services.feed import ChangeFeed, ChangeSubscription
from services.reconciler import LatestReadingReconciler

logger = logging.getLogger(__name__)

AuthFailureHandler = Callable[[str], Awaitable[None]]


class LiveReadingsMonitor:
    """Keeps a reconciler current for the lifetime of one authenticated session.

    Change events are consumed one at a time from a subscription queue. A
    polling loop re-runs the bulk refresh every ``refresh_interval`` seconds
    and covers any events that were dropped or never delivered.
    """

    def __init__(
        self,
        backend: TelemetryBackend,
        feed: ChangeFeed,
        reconciler: LatestReadingReconciler,
        refresh_interval: float = 10.0,
        queue_size: Optional[int] = None,
    ) -> None:
        self.backend = backend
        self.feed = feed
        self.reconciler = reconciler
        self.refresh_interval = refresh_interval
        self.queue_size = queue_size
        self.on_auth_failure: Optional[AuthFailureHandler] = None
        self.last_error: Optional[str] = None
        self.last_refreshed_at: Optional[datetime] = None
        self._subscription: Optional[ChangeSubscription] = None
        self._consumer: Optional[asyncio.Task[None]] = None
        self._poller: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._subscription is not None

    @property
    def subscription(self) -> Optional[ChangeSubscription]:
        return self._subscription

    async def start(self) -> None:
        if self.running:
            return
        # Subscribe before the first refresh so nothing committed in between is missed.
        self._subscription = self.feed.subscribe(self.queue_size)
        self._consumer = asyncio.create_task(self._consume(self._subscription))
        logger.info("Live monitor started", extra={"status": "running"})

        await self.refresh()
        if self.running and self._poller is None:
            self._poller = asyncio.create_task(self._poll(self._subscription))

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        tasks = [task for task in (self._consumer, self._poller) if task is not None]
        self._consumer = None
        self._poller = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(*(task for task in tasks if task is not current), return_exceptions=True)

        if subscription is not None:
            subscription.close()
            self.reconciler.clear()
            self.last_error = None
            self.last_refreshed_at = None
            logger.info("Live monitor stopped", extra={"status": "stopped"})

    async def refresh(self) -> bool:
        """Bulk refresh; on failure the previous state is kept and the error recorded."""
        try:
            devices = await self.backend.list_devices()
            readings = await self.backend.list_latest_readings([device.id for device in devices])
        except AuthenticationError as exc:
            self.last_error = str(exc)
            logger.warning("Refresh rejected by backend", extra={"reason": str(exc)})
            if self.on_auth_failure is not None:
                await self.on_auth_failure(str(exc))
            return False
        except (BackendError, NotAuthenticatedError) as exc:
            self.last_error = str(exc)
            logger.warning("Refresh failed; keeping previous data", extra={"reason": str(exc)})
            return False

        if not self.running:
            return False
        self.reconciler.refresh(devices, readings)
        self.last_error = None
        self.last_refreshed_at = datetime.now(timezone.utc)
        logger.debug(
            "Refreshed latest readings",
            extra={"device_count": len(devices), "reading_count": len(readings)},
        )
        return True

    async def wait_idle(self) -> None:
        """Wait until every queued change event has been applied."""
        if self._subscription is not None:
            await self._subscription.join()

    async def _poll(self, subscription: ChangeSubscription) -> None:
        while self._subscription is subscription:
            await asyncio.sleep(self.refresh_interval)
            await self.refresh()

    async def _consume(self, subscription: ChangeSubscription) -> None:
        while True:
            event = await subscription.get()
            try:
                self.reconciler.apply_change(event)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to apply change event")
            finally:
                subscription.task_done()
