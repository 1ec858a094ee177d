"""Base watchdog class and the manager driving all watchdogs."""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from cdpwatch.browser.event_bus import EventBus, EventBusSubscription
from cdpwatch.browser.events import BaseBrowserEvent
from cdpwatch.cdp.client import CDPClient, CDPListener, EventCallback
from cdpwatch.cdp.protocol import SessionID
from cdpwatch.exceptions import (
    EventBusClosedError,
    EventBusLaggedError,
    WatchdogAttachError,
    WatchdogDetachError,
)

logger = logging.getLogger(__name__)

WatchdogT = TypeVar('WatchdogT', bound='BaseWatchdog')


class BaseWatchdog(BaseModel):
    """Base class for all browser watchdogs.

    Watchdogs monitor browser state and emit events based on changes.
    Bus events are routed to handler methods named after the event class
    (``on_NavigationCompleteEvent``) for every class listed in LISTENS_TO.

    Subclasses extending ``on_attach``/``on_detach`` must call super() so
    that raw subscriptions and background tasks stay owned by the base.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        extra='forbid',
        validate_assignment=False,
        revalidate_instances='never',
    )

    # Class variables to statically define the list of events relevant to each watchdog
    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = []
    EMITS: ClassVar[list[type[BaseBrowserEvent]]] = []

    event_bus: EventBus = Field(default_factory=EventBus)

    _cdp_client: CDPClient | None = PrivateAttr(default=None)
    _cdp_listeners: list[CDPListener] = PrivateAttr(default_factory=list)
    _tasks: set[asyncio.Task] = PrivateAttr(default_factory=set)
    _lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def is_attached(self) -> bool:
        return self._cdp_client is not None

    @property
    def cdp_client(self) -> CDPClient:
        """The transport this watchdog is attached to."""
        if self._cdp_client is None:
            raise RuntimeError(f'{self.name} is not attached')
        return self._cdp_client

    async def on_event(self, event: BaseBrowserEvent) -> None:
        """Route a bus event to its ``on_<EventClass>`` handler."""
        if not isinstance(event, tuple(self.LISTENS_TO)):
            return
        handler = getattr(self, f'on_{type(event).__name__}', None)
        if handler is not None:
            await handler(event)

    async def on_attach(self, cdp_client: CDPClient) -> None:
        self._cdp_client = cdp_client

    async def on_detach(self) -> None:
        """Drop raw subscriptions and cancel background tasks."""
        for listener in self._cdp_listeners:
            listener.remove()
        self._cdp_listeners.clear()

        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        self._cdp_client = None

    def subscribe_cdp(
        self,
        method: str,
        callback: EventCallback,
        session_id: SessionID | None = None,
    ) -> CDPListener:
        """Register a raw protocol listener removed again on detach."""
        listener = self.cdp_client.subscribe(method, callback, session_id=session_id)
        self._cdp_listeners.append(listener)
        return listener

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Run ``coro`` as a background task owned by this watchdog."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def emit(self, event: BaseBrowserEvent) -> None:
        self.event_bus.publish(event)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'[{self.name}] Background task {task.get_name()} failed: {type(error).__name__}: {error}')


class WatchdogManager:
    """Ordered set of watchdogs sharing one transport and one event bus.

    Attributes:
        event_bus: Bus the pumps subscribe to.
        drain_timeout: Seconds ``stop()`` waits for pumps to drain.

    Example:
        >>> manager = WatchdogManager(event_bus)
        >>> manager.register(CrashWatchdog(event_bus=event_bus))
        >>> await manager.attach_all(cdp_client)
        >>> manager.start()
    """

    def __init__(self, event_bus: EventBus, drain_timeout: float = 5.0):
        self.event_bus = event_bus
        self.drain_timeout = drain_timeout
        self._watchdogs: list[BaseWatchdog] = []
        self._attached: list[BaseWatchdog] = []
        self._pumps: list[tuple[EventBusSubscription, asyncio.Task]] = []

    @property
    def watchdogs(self) -> list[BaseWatchdog]:
        return list(self._watchdogs)

    @property
    def is_running(self) -> bool:
        return bool(self._pumps)

    def register(self, watchdog: WatchdogT) -> WatchdogT:
        """Add a watchdog. Names must be unique.

        Raises:
            ValueError: If a watchdog with the same name is registered.
        """
        if any(existing.name == watchdog.name for existing in self._watchdogs):
            raise ValueError(f'Watchdog {watchdog.name} is already registered')
        self._watchdogs.append(watchdog)
        logger.debug(f'Registered {watchdog.name}')
        return watchdog

    def get(self, watchdog_type: type[WatchdogT]) -> WatchdogT | None:
        for watchdog in self._watchdogs:
            if isinstance(watchdog, watchdog_type):
                return watchdog
        return None

    async def attach_all(self, cdp_client: CDPClient) -> None:
        """Attach every registered watchdog in registration order.

        Raises:
            WatchdogAttachError: If one fails. Watchdogs attached before it
                are detached again first.
        """
        for watchdog in self._watchdogs:
            if watchdog in self._attached:
                continue
            try:
                await watchdog.on_attach(cdp_client)
            except Exception as e:
                logger.error(f'[{watchdog.name}] Failed to attach: {type(e).__name__}: {e}')
                await self._rollback(watchdog)
                raise WatchdogAttachError(watchdog.name, e) from e
            self._attached.append(watchdog)
            logger.debug(f'[{watchdog.name}] Attached')

    async def detach_all(self) -> None:
        """Detach every attached watchdog, in reverse order.

        Raises:
            WatchdogDetachError: After all were tried, if any failed.
        """
        failures: dict[str, BaseException] = {}
        for watchdog in reversed(self._attached):
            try:
                await watchdog.on_detach()
                logger.debug(f'[{watchdog.name}] Detached')
            except Exception as e:
                logger.error(f'[{watchdog.name}] Failed to detach: {type(e).__name__}: {e}')
                failures[watchdog.name] = e
        self._attached.clear()
        if failures:
            raise WatchdogDetachError(failures)

    async def dispatch(self, event: BaseBrowserEvent) -> None:
        """Deliver one event to every watchdog concurrently."""
        if self._watchdogs:
            await asyncio.gather(*(self._deliver(watchdog, event) for watchdog in self._watchdogs))

    def start(self) -> None:
        """Start one bus pump per watchdog (idempotent)."""
        if self._pumps:
            return
        for watchdog in self._watchdogs:
            subscription = self.event_bus.subscribe()
            task = asyncio.create_task(self._pump(watchdog, subscription), name=f'{watchdog.name}-pump')
            self._pumps.append((subscription, task))

    async def stop(self) -> None:
        """Close pump subscriptions, drain queued events, cancel stragglers."""
        pumps, self._pumps = self._pumps, []
        if not pumps:
            return

        for subscription, _ in pumps:
            subscription.close()

        tasks = [task for _, task in pumps]
        _, pending = await asyncio.wait(tasks, timeout=self.drain_timeout)
        for task in pending:
            logger.warning(f'{task.get_name()} did not drain within {self.drain_timeout}s, cancelling')
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _pump(self, watchdog: BaseWatchdog, subscription: EventBusSubscription) -> None:
        while True:
            try:
                event = await subscription.recv()
            except EventBusLaggedError as e:
                logger.warning(f'[{watchdog.name}] Lagging behind the event bus, {e.skipped} events skipped')
                continue
            except EventBusClosedError:
                return
            await self._deliver(watchdog, event)

    async def _deliver(self, watchdog: BaseWatchdog, event: BaseBrowserEvent) -> None:
        try:
            await watchdog.on_event(event)
        except Exception as e:
            logger.error(f'[{watchdog.name}] Error handling {type(event).__name__}: {type(e).__name__}: {e}')

    async def _rollback(self, failed: BaseWatchdog) -> None:
        # the failed watchdog may have registered listeners before raising
        for watchdog in [failed, *reversed(self._attached)]:
            try:
                await watchdog.on_detach()
            except Exception as e:
                logger.error(f'[{watchdog.name}] Failed to detach during rollback: {type(e).__name__}: {e}')
        self._attached.clear()
