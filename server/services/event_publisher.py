"""Fan-out of progress events to live observers (SSE and WebSocket clients)."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Dict, List, Optional

logger = logging.getLogger("quizbench.events")

Event = Dict[str, Any]


class Subscription:
    """One observer's inbox. Bounded; overflow drops the newest event."""

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        try:
            self.loop = asyncio.get_running_loop()
        except RuntimeError:
            pass
        self.dropped = 0

    def offer(self, event: Event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Observer backlog full; %d events dropped", self.dropped)

    async def get(self) -> Event:
        return await self.queue.get()

    def drain(self) -> List[Event]:
        """Everything queued right now, without waiting."""
        items = []
        while True:
            try:
                items.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return items


class EventPublisher:
    """
    Best-effort broadcast. No replay: an observer only sees events
    published after it registered.

    The registry is copied under a lock before delivery, so observers
    joining or leaving mid-broadcast never disturb the iteration. Events
    from one publisher reach each observer in publish order.
    """

    def __init__(self, backlog: int = 1000):
        self.backlog = backlog
        self._lock = threading.Lock()
        self._subscribers: set[Subscription] = set()

    def register(self) -> Subscription:
        sub = Subscription(maxsize=self.backlog)
        with self._lock:
            self._subscribers.add(sub)
        logger.debug("Observer registered (%d live)", self.observer_count)
        return sub

    def unregister(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(sub)
        logger.debug("Observer unregistered (%d live)", self.observer_count)

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: Event) -> int:
        """Deliver to every registered observer. Returns how many were reached."""
        with self._lock:
            targets = list(self._subscribers)
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        delivered = 0
        for sub in targets:
            try:
                if sub.loop is None or sub.loop is current:
                    sub.offer(event)
                else:
                    sub.loop.call_soon_threadsafe(sub.offer, event)
                delivered += 1
            except RuntimeError as e:
                # Observer's loop already closed: it is gone.
                logger.debug("Dropping dead observer: %s", e)
                self.unregister(sub)
        return delivered


def format_sse(event: Event) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"
