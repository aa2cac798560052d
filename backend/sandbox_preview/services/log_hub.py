"""
Log Broadcast Hub - per-session pub/sub of sandbox output.

Producers (the process supervisor's pump tasks) publish LogEvents keyed by
session id. Every observer owns a bounded asyncio.Queue and drains it on its
own; a slow observer only loses its own events.

Delivery is best-effort and at-most-once. There is no backlog: an observer
that subscribes after an event was published never sees it.
"""

import asyncio
import itertools
from typing import AsyncIterator, Dict, Optional, Set

from sandbox_preview.core.logging_config import logger
from sandbox_preview.models.session import LogEvent


class Subscription:
    """A live observer bound to exactly one session id"""

    _ids = itertools.count(1)

    def __init__(self, session_id: str, maxsize: int):
        self.id = next(self._ids)
        self.session_id = session_id
        self.queue: "asyncio.Queue[Optional[LogEvent]]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: LogEvent) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    def close(self) -> None:
        """Wake up a pending get() so the consumer can finish"""
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            # Consumer is behind; make room for the sentinel
            self.queue.get_nowait()
            self.queue.put_nowait(None)

    async def get(self) -> Optional[LogEvent]:
        """Next event, or None once the subscription is closed"""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()

    async def __aiter__(self) -> AsyncIterator[LogEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                return

    def __hash__(self) -> int:
        return self.id

    def __eq__(self, other) -> bool:
        return isinstance(other, Subscription) and other.id == self.id


class LogBroadcastHub:
    """Fan-out of LogEvents to the observers of each session"""

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        # session_id -> live subscriptions; an entry exists only while non-empty
        self._observers: Dict[str, Set[Subscription]] = {}

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(session_id, self.queue_size)
        self._observers.setdefault(session_id, set()).add(subscription)
        logger.debug(f"[LogHub] Observer {subscription.id} subscribed to {session_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        observers = self._observers.get(subscription.session_id)
        if observers is not None:
            observers.discard(subscription)
            if not observers:
                del self._observers[subscription.session_id]
        subscription.close()
        if subscription.dropped:
            logger.warning(
                f"[LogHub] Observer {subscription.id} of {subscription.session_id} "
                f"dropped {subscription.dropped} events"
            )
        logger.debug(f"[LogHub] Observer {subscription.id} unsubscribed from {subscription.session_id}")

    def publish(self, session_id: str, event: LogEvent) -> int:
        """
        Deliver an event to every current observer of the session.

        Returns:
            Number of observers the event was queued for
        """
        observers = self._observers.get(session_id)
        if not observers:
            return 0
        delivered = 0
        for subscription in tuple(observers):
            if subscription.offer(event):
                delivered += 1
        return delivered

    def observer_count(self, session_id: Optional[str] = None) -> int:
        if session_id is not None:
            return len(self._observers.get(session_id, ()))
        return sum(len(observers) for observers in self._observers.values())

    def has_observers(self, session_id: str) -> bool:
        return session_id in self._observers
