import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

from backend.base import BackendError
from backend.memory import InMemoryBackend
from models.records import Device, Reading
from services.feed import ChangeFeed
from services.monitor import LiveReadingsMonitor
from services.reconciler import LatestReadingReconciler

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
DEVICES = [
    Device(id="a", external_id="ESP-A", name="Zone 1"),
    Device(id="b", external_id="ESP-B", name="Zone 2"),
]
USERS = {"ops@example.com": "secret"}


class FlakyBackend(InMemoryBackend):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail = False

    async def list_devices(self) -> list[Device]:
        if self.fail:
            raise BackendError("backend unavailable")
        return await super().list_devices()


def _reading(device_id: str, minutes: int, reading_id=None, **channels: float) -> Reading:
    return Reading(
        id=reading_id,
        device_id=device_id,
        created_at=T0 + timedelta(minutes=minutes),
        **channels,
    )


async def _started(backend: InMemoryBackend, feed: ChangeFeed, interval: float = 60.0) -> LiveReadingsMonitor:
    await backend.sign_in("ops@example.com", "secret")
    monitor = LiveReadingsMonitor(
        backend=backend,
        feed=feed,
        reconciler=LatestReadingReconciler(),
        refresh_interval=interval,
    )
    await monitor.start()
    return monitor


def test_start_loads_snapshot_and_applies_pushed_changes() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        backend = InMemoryBackend(
            devices=DEVICES, readings=[_reading("a", 0, 1, soil_1=70.0)], users=USERS, feed=feed
        )
        monitor = await _started(backend, feed)
        try:
            assert monitor.running
            assert feed.subscriber_count == 1
            assert monitor.last_refreshed_at is not None
            latest_a = monitor.reconciler.latest("a")
            assert latest_a is not None and latest_a.soil_1 == 70.0
            assert monitor.reconciler.latest("b") is None

            pushed = backend.insert_reading(_reading("b", 5, soil_1=40.0))
            backend.insert_reading(_reading("a", -5, soil_1=1.0))
            await monitor.wait_idle()

            assert monitor.reconciler.latest("b") == pushed
            latest_a = monitor.reconciler.latest("a")
            assert latest_a is not None and latest_a.soil_1 == 70.0
        finally:
            await monitor.stop()

    asyncio.run(scenario())


def test_stop_releases_subscription_and_clears_state() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        backend = InMemoryBackend(devices=DEVICES, users=USERS, feed=feed)
        monitor = await _started(backend, feed)
        subscription = monitor.subscription

        await monitor.stop()

        assert subscription is not None and subscription.closed
        assert feed.subscriber_count == 0
        assert not monitor.running
        assert monitor.reconciler.snapshot() == []

        # Events arriving after teardown go nowhere.
        backend.insert_reading(_reading("a", 1))
        assert subscription.pending == 0

        await monitor.stop()

    asyncio.run(scenario())


def test_refresh_failure_keeps_previous_data() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        backend = FlakyBackend(
            devices=DEVICES, readings=[_reading("a", 0, 1)], users=USERS, feed=feed
        )
        monitor = await _started(backend, feed)
        try:
            backend.fail = True
            assert await monitor.refresh() is False
            assert monitor.last_error == "backend unavailable"
            assert [view.device.id for view in monitor.reconciler.snapshot()] == ["a", "b"]
            assert monitor.reconciler.latest("a") is not None

            backend.fail = False
            assert await monitor.refresh() is True
            assert monitor.last_error is None
        finally:
            await monitor.stop()

    asyncio.run(scenario())


def test_revoked_session_invokes_auth_failure_handler() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        backend = InMemoryBackend(devices=DEVICES, users=USERS, feed=feed)
        monitor = await _started(backend, feed)
        reasons: List[str] = []

        async def on_auth_failure(reason: str) -> None:
            reasons.append(reason)
            await monitor.stop()

        monitor.on_auth_failure = on_auth_failure
        backend.revoke_session()

        assert await monitor.refresh() is False
        assert reasons == ["Session is no longer valid."]
        assert not monitor.running

    asyncio.run(scenario())


def test_polling_recovers_missed_change_events() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        backend = InMemoryBackend(devices=DEVICES, users=USERS, feed=feed)
        monitor = await _started(backend, feed, interval=0.01)
        try:
            backend.feed = None  # simulate a lost notification
            missed = backend.insert_reading(_reading("a", 3, soil_1=12.0))

            for _ in range(100):
                if monitor.reconciler.latest("a") is not None:
                    break
                await asyncio.sleep(0.01)

            assert monitor.reconciler.latest("a") == missed
        finally:
            await monitor.stop()

    asyncio.run(scenario())
