"""
Lifecycle Event Bus.

Fans lifecycle events out to async subscribers (one unbounded FIFO queue per
subscriber) and to optional synchronous listeners. The bus stamps each event
with a per-slot monotonically increasing sequence number.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from .events import LifecycleEvent

logger = logging.getLogger(__name__)

Listener = Callable[[LifecycleEvent], None]

_CLOSED = object()


class EventSubscription:
    """Async iterator over lifecycle events, FIFO"""

    def __init__(self, bus: 'LifecycleEventBus'):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _deliver(self, item) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop receiving events; iteration ends after queued events drain"""
        if self._closed:
            return
        self._queue.put_nowait(_CLOSED)
        self._closed = True
        self._bus._subscriptions.discard(self)

    async def get(self, timeout: Optional[float] = None) -> LifecycleEvent:
        """Wait for the next event (raises asyncio.TimeoutError, StopAsyncIteration)"""
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> 'EventSubscription':
        return self

    async def __anext__(self) -> LifecycleEvent:
        return await self.get()


class LifecycleEventBus:
    """Publishes lifecycle events to subscribers and listeners"""

    def __init__(self):
        self._subscriptions: Set[EventSubscription] = set()
        self._listeners: List[Listener] = []
        self._sequences: Dict[str, int] = defaultdict(int)
        self.published_count = 0

    def subscribe(self) -> EventSubscription:
        """Create a subscription receiving every event published from now on"""
        subscription = EventSubscription(self)
        self._subscriptions.add(subscription)
        return subscription

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: LifecycleEvent) -> LifecycleEvent:
        """
        Stamp the event with the slot's next sequence number and deliver it.

        Must be called from the event loop thread.

        Returns:
            The stamped event as delivered
        """
        self._sequences[event.slot_id] += 1
        stamped = event.model_copy(update={"sequence": self._sequences[event.slot_id]})
        self.published_count += 1

        logger.debug(f"Publishing {stamped}")

        for subscription in list(self._subscriptions):
            subscription._deliver(stamped)

        for listener in list(self._listeners):
            try:
                listener(stamped)
            except Exception as e:
                # Listener errors are logged, never raised into the engine
                logger.error(f"Lifecycle listener {listener!r} failed on {stamped}: {e}")

        return stamped

    def close(self) -> None:
        """End every subscription"""
        for subscription in list(self._subscriptions):
            subscription.close()
        logger.debug("Closed lifecycle event bus")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
