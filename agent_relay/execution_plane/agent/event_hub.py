"""Non-blocking fan-out of agent stream records to independent consumers."""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """Unbounded per-consumer queue; iterate with ``async for`` until closed."""

    def __init__(self, hub: "EventHub[T]") -> None:
        self._hub = hub
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self.closed = False

    def offer(self, item: T) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.discard(self)
        self._queue.put_nowait(_CLOSED)

    def pending(self) -> int:
        return self._queue.qsize()

    def drain_nowait(self) -> list[T]:
        """Remove and return every item still queued, without waiting."""

        items: list[T] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _CLOSED:
                items.append(item)  # type: ignore[arg-type]
        return items

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class EventHub(Generic[T]):
    def __init__(self) -> None:
        self._subscribers: list[Subscription[T]] = []

    def subscribe(self) -> Subscription[T]:
        subscription: Subscription[T] = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def discard(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, item: T) -> None:
        for subscription in list(self._subscribers):
            subscription.offer(item)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()
