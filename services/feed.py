"""Change-notification channel between the backend webhook and the monitor."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Set

from models.records import ChangeEvent, ChangeKind, Reading

logger = logging.getLogger(__name__)

READINGS_TABLE = "readings"

_KIND_ALIASES = {
    "insert": ChangeKind.insert,
    "update": ChangeKind.update,
    "delete": ChangeKind.delete,
}


def parse_change_payload(payload: Mapping[str, Any]) -> ChangeEvent:
    """Normalise a change notification into a :class:`ChangeEvent`.

    Accepts database-webhook payloads (``type``/``record``/``old_record``),
    realtime payloads (``eventType``/``new``/``old``) and the plain
    ``event_kind``/``row`` shape. Raises ``ValueError`` when malformed.
    """
    if not isinstance(payload, Mapping):
        raise ValueError("Change payload must be an object.")

    table = payload.get("table")
    if table is not None and table != READINGS_TABLE:
        raise ValueError(f"Unsupported table {table!r}.")

    raw_kind = payload.get("type") or payload.get("eventType") or payload.get("event_kind")
    if not isinstance(raw_kind, str):
        raise ValueError("Change payload is missing its event kind.")
    kind = _KIND_ALIASES.get(raw_kind.strip().lower())
    if kind is None:
        raise ValueError(f"Unknown event kind {raw_kind!r}.")

    if kind is ChangeKind.delete:
        row = payload.get("old_record") or payload.get("old") or payload.get("row")
    else:
        row = payload.get("record") or payload.get("new") or payload.get("row")
    if not isinstance(row, Mapping):
        raise ValueError("Change payload is missing its row.")

    return ChangeEvent(kind=kind, reading=Reading.from_row(row))


class ChangeSubscription:
    """A scoped, bounded queue of change events for one consumer.

    Acquire through :meth:`ChangeFeed.subscribe`; release with :meth:`close`
    or by leaving a ``with`` block. Must be used from the event loop thread.
    """

    def __init__(self, feed: "ChangeFeed", maxsize: int = 0) -> None:
        self._feed = feed
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def __enter__(self) -> "ChangeSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def deliver(self, event: ChangeEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Change queue full; dropping event until the next refresh",
                extra={
                    "device_id": event.reading.device_id,
                    "reading_id": event.reading.id,
                    "queue_size": self._queue.qsize(),
                },
            )
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every delivered event has been marked done."""
        await self._queue.join()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)


class ChangeFeed:
    """Fan-out hub: events published here reach every open subscription."""

    def __init__(self, default_maxsize: int = 0) -> None:
        self.default_maxsize = default_maxsize
        self._subscriptions: Set[ChangeSubscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, maxsize: Optional[int] = None) -> ChangeSubscription:
        size = self.default_maxsize if maxsize is None else maxsize
        subscription = ChangeSubscription(self, maxsize=size)
        self._subscriptions.add(subscription)
        logger.debug("Change subscription opened", extra={"queue_size": size})
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every subscription; returns how many accepted it."""
        if not self._subscriptions:
            logger.debug(
                "No open subscription; change event dropped",
                extra={"device_id": event.reading.device_id, "event_kind": event.kind.value},
            )
            return 0
        return sum(1 for subscription in list(self._subscriptions) if subscription.deliver(event))

    def publish_payload(self, payload: Mapping[str, Any]) -> Optional[ChangeEvent]:
        """Parse and publish a raw payload, dropping it when malformed."""
        try:
            event = parse_change_payload(payload)
        except ValueError as exc:
            logger.warning("Dropping malformed change event", extra={"reason": str(exc)})
            return None
        self.publish(event)
        return event

    def _remove(self, subscription: ChangeSubscription) -> None:
        self._subscriptions.discard(subscription)
        logger.debug("Change subscription closed", extra={"queue_size": subscription.pending})
