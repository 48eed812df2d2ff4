"""
Outbound event channel.

Observers subscribe and receive typed StrategyEvents through their own
bounded asyncio.Queue. Publishing never blocks the trading loop: when a
subscriber falls behind, its OLDEST event is dropped and counted, so
backpressure is explicit instead of silent.
"""

import asyncio
import logging
from typing import List, Optional

from core.events import StrategyEvent

logger = logging.getLogger("Core.Events")


class EventSubscription:
    """One observer's view of the channel."""

    def __init__(self, channel: "EventChannel", maxsize: int):
        self._channel = channel
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _deliver(self, event: StrategyEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.queue.get_nowait()
            self.queue.put_nowait(event)
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Event subscriber lagging, dropped {self.dropped} event(s)")

    async def get(self) -> StrategyEvent:
        return await self.queue.get()

    def get_nowait(self) -> Optional[StrategyEvent]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[StrategyEvent]:
        """All pending events, oldest first."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fan-out of strategy events to every subscriber, in publish order."""

    DEFAULT_MAXSIZE = 10000

    def __init__(self):
        self._subscribers: List[EventSubscription] = []
        self.published = 0

    def subscribe(self, maxsize: int = DEFAULT_MAXSIZE) -> EventSubscription:
        if maxsize <= 0:
            raise ValueError("Subscriber queue size must be positive")
        sub = EventSubscription(self, maxsize)
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, subscription: EventSubscription) -> None:
        subscription.closed = True
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: StrategyEvent) -> None:
        self.published += 1
        logger.debug(f"{event.type.value} from {event.strategy}")
        for sub in list(self._subscribers):
            sub._deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
