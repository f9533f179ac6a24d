"""
In-process publish/subscribe channel

Each subscriber owns a bounded asyncio.Queue. ``publish`` never blocks the
producer: when a subscriber falls behind, its oldest queued item is dropped
and counted so slow overlays cannot stall the connection supervisor.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Dict, Optional

from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="events")

_CLOSED = object()


class Subscription:
    """A single consumer's view of an EventChannel."""

    def __init__(self, channel: "EventChannel", sub_id: int, name: str, maxsize: int):
        self.channel = channel
        self.id = sub_id
        self.name = name
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def _deliver(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Subscriber %s is falling behind on %s, dropped oldest item (total dropped=%s)",
                self.name,
                self.channel.name,
                self.dropped,
            )
        self._queue.put_nowait(item)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Any:
        """Wait for the next item. Raises StopAsyncIteration once closed and drained."""
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> Optional[Any]:
        """Return the next queued item or None when nothing is waiting."""
        if self._queue.empty():
            return None
        item = self._queue.get_nowait()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.channel.unsubscribe(self)
        # Wake a consumer blocked in get(); make room if the queue is full
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        return await self.get()


class EventChannel:
    """Fan-out channel with explicit subscriber lifecycle."""

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscribers: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def subscribe(self, name: Optional[str] = None, maxsize: int = 256) -> Subscription:
        sub_id = next(self._ids)
        subscription = Subscription(self, sub_id, name or f"{self.name}-{sub_id}", maxsize)
        self._subscribers[sub_id] = subscription
        logger.debug("Subscriber %s attached to %s", subscription.name, self.name)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.debug("Subscriber %s detached from %s", subscription.name, self.name)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, item: Any) -> int:
        """Deliver ``item`` to every current subscriber in publish order."""
        subscribers = list(self._subscribers.values())
        for subscription in subscribers:
            subscription._deliver(item)
        return len(subscribers)

    def close(self) -> None:
        for subscription in list(self._subscribers.values()):
            subscription.close()
