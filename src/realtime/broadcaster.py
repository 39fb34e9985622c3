from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Protocol

from src.observability import incr_metric, log_event


class Subscriber(Protocol):
    def offer(self, message: dict[str, Any]) -> None: ...


class QueueSubscriber:
    """Bounded per-connection queue bound to the event loop that drains it.

    ``offer`` may be called from any thread; when the queue is full the event is
    dropped for this subscriber only.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, max_queue: int = 100) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, max_queue))

    def offer(self, message: dict[str, Any]) -> None:
        self._loop.call_soon_threadsafe(self._put, message)

    def _put(self, message: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            incr_metric("realtime.broadcast.dropped", event=message.get("event"))
            log_event("realtime_subscriber_queue_full", level=logging.WARNING, event_name=message.get("event"))

    async def next_message(self) -> dict[str, Any]:
        return await self.queue.get()


class Broadcaster:
    """Registry of connected subscribers with best-effort, at-most-once fan-out."""

    def __init__(self) -> None:
        self._subscribers: set[Subscriber] = set()
        self._lock = Lock()

    def add(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.add(subscriber)
            count = len(self._subscribers)
        log_event("realtime_subscriber_added", subscribers=count)

    def remove(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(subscriber)
            count = len(self._subscribers)
        log_event("realtime_subscriber_removed", subscribers=count)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def broadcast(self, event: str, data: Any) -> int:
        message = {"event": event, "data": data}
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.offer(message)
            except Exception as exc:
                # Closed loop or dead connection; drop the subscriber.
                incr_metric("realtime.broadcast.dropped", event=event)
                log_event("realtime_subscriber_failed", level=logging.WARNING, event_name=event, error=str(exc))
                self.remove(subscriber)
                continue
            delivered += 1
        incr_metric("realtime.broadcast.sent", value=delivered, event=event)
        return delivered
