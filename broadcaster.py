# broadcaster.py
"""
Event Broadcaster: at-most-once, per-subscriber-ordered fan-out.

Each subscriber owns a bounded queue. publish() never awaits: a full queue
drops the event for that subscriber only, so a stalled consumer cannot slow
the orchestrator or anyone else.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Any, Callable, Dict

from errors import SubscriberLimitReached

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, sid: int, maxsize: int):
        self.id = sid
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self):
        return await self.queue.get()

    def get_nowait(self):
        return self.queue.get_nowait()

    def pending(self) -> int:
        return self.queue.qsize()

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, pending={self.pending()}, dropped={self.dropped})"


class EventBroadcaster:
    def __init__(self, queue_size: int = 100, max_subscribers: int = 500):
        self.queue_size = max(1, int(queue_size))
        self.max_subscribers = max(1, int(max_subscribers))
        self._subs: Dict[int, Subscription] = {}
        self._listeners: Dict[int, asyncio.Task] = {}
        self._ids = itertools.count(1)
        self._warned_growth = False
        self.published = 0
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def subscribe(self) -> Subscription:
        if len(self._subs) >= self.max_subscribers:
            logger.warning("Subscriber limit reached (%d); refusing new subscriber", self.max_subscribers)
            raise SubscriberLimitReached(self.max_subscribers)
        sub = Subscription(next(self._ids), self.queue_size)
        self._subs[sub.id] = sub
        if not self._warned_growth and len(self._subs) >= self.max_subscribers * 0.9:
            self._warned_growth = True
            logger.warning("Subscriber count %d is near the limit of %d", len(self._subs), self.max_subscribers)
        logger.debug("subscriber %d joined (%d total)", sub.id, len(self._subs))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if self._subs.pop(sub.id, None) is None:
            return
        task = self._listeners.pop(sub.id, None)
        if task is not None and not task.done():
            task.cancel()
        if len(self._subs) < self.max_subscribers * 0.9:
            self._warned_growth = False
        logger.debug("subscriber %d left (%d total)", sub.id, len(self._subs))

    def publish(self, event: Any) -> int:
        """Hand the event to every subscriber queue; returns how many accepted it."""
        self.published += 1
        delivered = 0
        for sub in list(self._subs.values()):
            try:
                sub.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                sub.dropped += 1
                self.dropped += 1
                logger.warning("subscriber %d is full; dropped %s", sub.id, getattr(event, "type", type(event).__name__))
        return delivered

    # -------------------------
    # Callback listeners
    # -------------------------
    def add_listener(self, callback: Callable[[Any], Any]) -> Subscription:
        """Register a callback (sync or async) fed from its own queue by a delivery task."""
        sub = self.subscribe()
        self._listeners[sub.id] = asyncio.get_running_loop().create_task(
            self._deliver(sub, callback), name=f"listener-{sub.id}"
        )
        return sub

    def remove_listener(self, sub: Subscription) -> None:
        self.unsubscribe(sub)

    async def _deliver(self, sub: Subscription, callback: Callable[[Any], Any]) -> None:
        while True:
            event = await sub.get()
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener %d raised", sub.id)

    async def close(self) -> None:
        tasks = list(self._listeners.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()
        self._subs.clear()
