"""Broadcast event bus with a bounded queue per subscriber.

Publishing never waits on consumers. Each subscriber owns its own queue, so
a slow subscriber only ever hurts itself: once its queue is full the oldest
entries are dropped and the next ``recv()`` reports the gap with
EventBusLaggedError before delivery resumes.

Example:
    >>> bus = EventBus()
    >>> subscription = bus.subscribe()
    >>> bus.publish(BrowserStartedEvent())
    >>> event = await subscription.recv()
"""

import asyncio
import logging
from collections import deque

from cdpwatch.browser.events import BaseBrowserEvent
from cdpwatch.exceptions import EventBusClosedError, EventBusLaggedError

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1024


class EventBusSubscription:
    """Delivery cursor of one subscriber.

    Supports ``await recv()`` and ``async for``. Iteration ends once the
    subscription (or the bus) is closed and the queue has been drained.
    """

    def __init__(self, bus: 'EventBus', capacity: int):
        self._bus = bus
        self._capacity = capacity
        self._queue: deque[BaseBrowserEvent] = deque()
        self._skipped = 0
        self._closed = False
        self._wakeup = asyncio.Event()

    @property
    def pending(self) -> int:
        """Number of events queued and not yet received."""
        return len(self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: BaseBrowserEvent) -> None:
        if self._closed:
            return
        if len(self._queue) >= self._capacity:
            self._queue.popleft()
            self._skipped += 1
        self._queue.append(event)
        self._wakeup.set()

    def _close(self) -> None:
        self._closed = True
        self._wakeup.set()

    async def recv(self) -> BaseBrowserEvent:
        """Wait for the next event.

        Raises:
            EventBusLaggedError: Events were dropped since the last call.
                Calling recv() again continues with the oldest kept event.
            EventBusClosedError: Closed and nothing left to deliver.
        """
        while True:
            if self._skipped:
                skipped, self._skipped = self._skipped, 0
                raise EventBusLaggedError(skipped)
            if self._queue:
                return self._queue.popleft()
            if self._closed:
                raise EventBusClosedError('Subscription closed')
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        """Unsubscribe. Already queued events can still be drained."""
        self._bus._remove(self)
        self._close()

    def __aiter__(self) -> 'EventBusSubscription':
        return self

    async def __anext__(self) -> BaseBrowserEvent:
        try:
            return await self.recv()
        except EventBusClosedError:
            raise StopAsyncIteration from None


class EventBus:
    """Multi-consumer broadcast of browser events.

    Attributes:
        capacity: Default queue bound for new subscribers.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f'EventBus capacity must be positive, got {capacity}')
        self.capacity = capacity
        self._subscribers: list[EventBusSubscription] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, capacity: int | None = None) -> EventBusSubscription:
        """Create a subscriber receiving every event published from now on."""
        if capacity is None:
            capacity = self.capacity
        elif capacity < 1:
            raise ValueError(f'Subscriber capacity must be positive, got {capacity}')
        if self._closed:
            raise EventBusClosedError('Event bus closed')
        subscription = EventBusSubscription(self, capacity)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, event: BaseBrowserEvent) -> int:
        """Queue ``event`` for every current subscriber without waiting.

        Returns:
            Number of subscribers the event was queued for.
        """
        if self._closed:
            logger.debug(f'Dropping {type(event).__name__}: event bus closed')
            return 0
        subscribers = tuple(self._subscribers)
        for subscription in subscribers:
            subscription._push(event)
        logger.debug(f'Published {type(event).__name__} to {len(subscribers)} subscribers')
        return len(subscribers)

    def close(self) -> None:
        """Close the bus and every subscription."""
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._close()

    def _remove(self, subscription: EventBusSubscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass
