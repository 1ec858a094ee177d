"""Tests for BaseWatchdog and WatchdogManager."""

import asyncio
import logging
from typing import ClassVar

import pytest
from pydantic import PrivateAttr

from cdpwatch.browser.event_bus import EventBus
from cdpwatch.browser.events import (
    BaseBrowserEvent,
    BrowserStartedEvent,
    BrowserStoppedEvent,
    TabCreatedEvent,
)
from cdpwatch.browser.watchdogs.base import BaseWatchdog, WatchdogManager
from cdpwatch.exceptions import WatchdogAttachError, WatchdogDetachError
from conftest import wait_for


class RecordingWatchdog(BaseWatchdog):
    """Records the bus events it handles."""

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [BrowserStartedEvent, TabCreatedEvent]

    _seen: list[BaseBrowserEvent] = PrivateAttr(default_factory=list)

    async def on_BrowserStartedEvent(self, event: BrowserStartedEvent) -> None:
        self._seen.append(event)

    async def on_TabCreatedEvent(self, event: TabCreatedEvent) -> None:
        self._seen.append(event)


class OtherRecordingWatchdog(RecordingWatchdog):
    pass


class SlowWatchdog(BaseWatchdog):
    """Blocks on every event until released."""

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [TabCreatedEvent]

    _release: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    async def on_TabCreatedEvent(self, event: TabCreatedEvent) -> None:
        await self._release.wait()


class BrokenWatchdog(BaseWatchdog):
    """Fails wherever it is told to."""

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [TabCreatedEvent]

    fail_attach: bool = False
    fail_detach: bool = False

    async def on_attach(self, cdp_client) -> None:
        await super().on_attach(cdp_client)
        self.subscribe_cdp("Page.loadEventFired", lambda params, session_id: None)
        if self.fail_attach:
            raise RuntimeError("attach failed")

    async def on_detach(self) -> None:
        await super().on_detach()
        if self.fail_detach:
            raise RuntimeError("detach failed")

    async def on_TabCreatedEvent(self, event: TabCreatedEvent) -> None:
        raise RuntimeError("handler failed")


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def manager(bus):
    return WatchdogManager(bus, drain_timeout=1.0)


class TestBaseWatchdog:
    """The watchdog contract."""

    def test_name_is_class_name(self, bus):
        assert RecordingWatchdog(event_bus=bus).name == "RecordingWatchdog"

    @pytest.mark.asyncio
    async def test_on_event_routes_by_class_name(self, bus):
        watchdog = RecordingWatchdog(event_bus=bus)

        await watchdog.on_event(TabCreatedEvent(target_id="T"))
        await watchdog.on_event(BrowserStoppedEvent())

        assert [type(event) for event in watchdog._seen] == [TabCreatedEvent]

    @pytest.mark.asyncio
    async def test_detach_cancels_tasks_and_listeners(self, bus, cdp_client):
        watchdog = RecordingWatchdog(event_bus=bus)
        await watchdog.on_attach(cdp_client)
        listener_calls = []
        watchdog.subscribe_cdp("Page.loadEventFired", lambda p, s: listener_calls.append(p))
        task = watchdog.spawn(asyncio.sleep(60), name="forever")

        await watchdog.on_detach()

        assert task.cancelled()
        assert not watchdog.is_attached
        assert cdp_client._listeners == {}

    def test_cdp_client_requires_attach(self, bus):
        with pytest.raises(RuntimeError):
            RecordingWatchdog(event_bus=bus).cdp_client


class TestRegistration:
    """Registering and looking up watchdogs."""

    def test_register_keeps_order(self, manager, bus):
        first = manager.register(RecordingWatchdog(event_bus=bus))
        second = manager.register(OtherRecordingWatchdog(event_bus=bus))

        assert manager.watchdogs == [first, second]

    def test_duplicate_name_rejected(self, manager, bus):
        manager.register(RecordingWatchdog(event_bus=bus))

        with pytest.raises(ValueError):
            manager.register(RecordingWatchdog(event_bus=bus))

    def test_get_by_type(self, manager, bus):
        watchdog = manager.register(RecordingWatchdog(event_bus=bus))

        assert manager.get(RecordingWatchdog) is watchdog
        assert manager.get(SlowWatchdog) is None


class TestAttachDetach:
    """Attaching and detaching the whole set."""

    @pytest.mark.asyncio
    async def test_attach_all(self, manager, bus, cdp_client):
        first = manager.register(RecordingWatchdog(event_bus=bus))
        second = manager.register(OtherRecordingWatchdog(event_bus=bus))

        await manager.attach_all(cdp_client)

        assert first.is_attached and second.is_attached

    @pytest.mark.asyncio
    async def test_attach_failure_rolls_back(self, manager, bus, cdp_client):
        good = manager.register(RecordingWatchdog(event_bus=bus))
        manager.register(BrokenWatchdog(event_bus=bus, fail_attach=True))

        with pytest.raises(WatchdogAttachError) as exc_info:
            await manager.attach_all(cdp_client)

        assert exc_info.value.watchdog_name == "BrokenWatchdog"
        assert not good.is_attached
        assert cdp_client._listeners == {}

    @pytest.mark.asyncio
    async def test_detach_failures_are_collected(self, manager, bus, cdp_client):
        good = manager.register(RecordingWatchdog(event_bus=bus))
        manager.register(BrokenWatchdog(event_bus=bus, fail_detach=True))
        await manager.attach_all(cdp_client)

        with pytest.raises(WatchdogDetachError) as exc_info:
            await manager.detach_all()

        assert list(exc_info.value.failures) == ["BrokenWatchdog"]
        assert not good.is_attached


class TestDispatch:
    """Fan-out of bus events."""

    @pytest.mark.asyncio
    async def test_dispatch_isolates_failures(self, manager, bus, caplog):
        manager.register(BrokenWatchdog(event_bus=bus))
        recorder = manager.register(RecordingWatchdog(event_bus=bus))

        with caplog.at_level(logging.ERROR, logger="cdpwatch.browser.watchdogs.base"):
            await manager.dispatch(TabCreatedEvent(target_id="T"))

        assert len(recorder._seen) == 1
        assert "handler failed" in caplog.text

    @pytest.mark.asyncio
    async def test_pumps_deliver_published_events(self, manager, bus):
        recorder = manager.register(RecordingWatchdog(event_bus=bus))
        manager.start()

        bus.publish(BrowserStartedEvent())
        bus.publish(TabCreatedEvent(target_id="T"))
        await wait_for(lambda: len(recorder._seen) == 2)
        await manager.stop()

        assert [type(event) for event in recorder._seen] == [BrowserStartedEvent, TabCreatedEvent]
        assert not manager.is_running

    @pytest.mark.asyncio
    async def test_slow_watchdog_does_not_stall_others(self, manager, bus):
        slow = manager.register(SlowWatchdog(event_bus=bus))
        recorder = manager.register(RecordingWatchdog(event_bus=bus))
        manager.start()

        for n in range(3):
            bus.publish(TabCreatedEvent(target_id=f"T{n}"))
        await wait_for(lambda: len(recorder._seen) == 3)

        slow._release.set()
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_drains_queued_events(self, manager, bus):
        recorder = manager.register(RecordingWatchdog(event_bus=bus))
        manager.start()

        bus.publish(TabCreatedEvent(target_id="T1"))
        bus.publish(TabCreatedEvent(target_id="T2"))
        await manager.stop()

        assert [event.target_id for event in recorder._seen] == ["T1", "T2"]

    @pytest.mark.asyncio
    async def test_stop_cancels_stuck_pumps(self, bus):
        manager = WatchdogManager(bus, drain_timeout=0.05)
        slow = manager.register(SlowWatchdog(event_bus=bus))
        manager.start()
        bus.publish(TabCreatedEvent(target_id="T"))
        await asyncio.sleep(0.01)

        await manager.stop()

        assert not manager.is_running
        assert not slow._release.is_set()
