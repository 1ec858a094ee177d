"""Tests for CrashWatchdog: hung request detection and crash reporting."""

import asyncio

import pytest

from cdpwatch.browser.event_bus import EventBus
from cdpwatch.browser.events import (
    BrowserStartedEvent,
    BrowserStoppedEvent,
    NetworkTimeoutEvent,
    TargetCrashedEvent,
)
from cdpwatch.browser.watchdogs.crash_watchdog import CrashWatchdog
from conftest import drain, wait_for


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def watchdog(bus):
    return CrashWatchdog(event_bus=bus, network_timeout=10.0, check_interval=60.0)


class TestTimeouts:
    """Request trackers and the timeout sweep."""

    @pytest.mark.asyncio
    async def test_request_is_flagged_exactly_once(self, watchdog, bus):
        subscription = bus.subscribe()
        await watchdog.track_request("r1", "https://slow.test/api", method="POST", started_at=100.0)

        first = await watchdog.check_for_timeouts(now=110.0)
        second = await watchdog.check_for_timeouts(now=200.0)

        assert [event.request_id for event in first] == ["r1"]
        assert second == []
        published = await drain(subscription)
        assert len(published) == 1
        event = published[0]
        assert isinstance(event, NetworkTimeoutEvent)
        assert event.url == "https://slow.test/api"
        assert event.method == "POST"
        assert event.elapsed == pytest.approx(10.0)
        assert watchdog.active_request_count == 0

    @pytest.mark.asyncio
    async def test_completion_just_before_timeout_is_never_flagged(self, watchdog, bus):
        subscription = bus.subscribe()
        await watchdog.track_request("r1", "https://fast.test/", started_at=100.0)

        assert await watchdog.check_for_timeouts(now=109.999) == []
        assert await watchdog.finish_request("r1") is True
        assert await watchdog.check_for_timeouts(now=500.0) == []

        assert subscription.pending == 0

    @pytest.mark.asyncio
    async def test_only_expired_requests_are_flagged(self, watchdog):
        await watchdog.track_request("old", "https://a.test/", started_at=100.0)
        await watchdog.track_request("new", "https://b.test/", started_at=105.0)

        flagged = await watchdog.check_for_timeouts(now=111.0)

        assert [event.request_id for event in flagged] == ["old"]
        assert [tracker.request_id for tracker in watchdog.active_requests()] == ["new"]

    @pytest.mark.asyncio
    async def test_same_request_id_in_two_sessions(self, watchdog):
        await watchdog.track_request("1000.1", "https://a.test/", session_id="S1", started_at=100.0)
        await watchdog.track_request("1000.1", "https://b.test/", session_id="S2", started_at=100.0)

        assert await watchdog.finish_request("1000.1", session_id="S1")
        assert [tracker.session_id for tracker in watchdog.active_requests()] == ["S2"]

    @pytest.mark.asyncio
    async def test_background_sweep(self, bus):
        watchdog = CrashWatchdog(event_bus=bus, network_timeout=0.05, check_interval=0.02)
        subscription = bus.subscribe()
        await watchdog.track_request("r1", "https://hang.test/")

        watchdog.spawn(watchdog._monitor_loop())
        event = await asyncio.wait_for(subscription.recv(), timeout=2.0)
        await watchdog.on_detach()

        assert isinstance(event, NetworkTimeoutEvent)
        assert event.elapsed >= 0.05


class TestProtocolEvents:
    """Raw Network/Inspector/Target events."""

    @pytest.mark.asyncio
    async def test_network_lifecycle(self, watchdog, cdp_client, fake_ws):
        await watchdog.on_attach(cdp_client)

        fake_ws.feed_event(
            "Network.requestWillBeSent",
            {"requestId": "r1", "request": {"url": "https://a.test/", "method": "GET"}},
            session_id="S1",
        )
        fake_ws.feed_event(
            "Network.requestWillBeSent",
            {"requestId": "r2", "request": {"url": "https://b.test/", "method": "GET"}},
            session_id="S1",
        )
        await wait_for(lambda: watchdog.active_request_count == 2)

        fake_ws.feed_event("Network.loadingFinished", {"requestId": "r1"}, session_id="S1")
        fake_ws.feed_event("Network.loadingFailed", {"requestId": "r2", "errorText": "net::ERR_ABORTED"}, session_id="S1")
        await wait_for(lambda: watchdog.active_request_count == 0)

        await watchdog.on_detach()

    @pytest.mark.asyncio
    async def test_target_crash_is_published(self, watchdog, bus, cdp_client, fake_ws):
        subscription = bus.subscribe()
        await watchdog.on_attach(cdp_client)
        await watchdog.track_request("r1", "https://a.test/", session_id="S1")

        fake_ws.feed_event("Inspector.targetCrashed", {}, session_id="S1")
        fake_ws.feed_event("Target.targetCrashed", {"targetId": "T2", "status": "crashed", "errorCode": 139})
        await wait_for(lambda: watchdog.crash_count == 2)

        events = await drain(subscription)
        assert all(isinstance(event, TargetCrashedEvent) for event in events)
        assert events[0].session_id == "S1"
        assert events[1].target_id == "T2"
        assert events[1].status == "crashed"
        assert watchdog.active_request_count == 0

        await watchdog.on_detach()

    @pytest.mark.parametrize("inspector_first", [True, False])
    @pytest.mark.asyncio
    async def test_crash_reported_once_per_target(self, watchdog, bus, cdp_client, fake_ws, inspector_first):
        """The session and root crash signals for one renderer count as one crash."""
        subscription = bus.subscribe()
        await watchdog.on_attach(cdp_client)
        fake_ws.feed_event(
            "Target.attachedToTarget",
            {"sessionId": "S1", "targetInfo": {"targetId": "T1", "type": "page"}, "waitingForDebugger": False},
        )
        await wait_for(lambda: "S1" in watchdog._session_targets)
        await watchdog.track_request("r1", "https://a.test/", session_id="S1")
        await watchdog.track_request("r2", "https://b.test/", session_id="S2")

        signals = [
            lambda: fake_ws.feed_event("Inspector.targetCrashed", {}, session_id="S1"),
            lambda: fake_ws.feed_event("Target.targetCrashed", {"targetId": "T1", "status": "crashed", "errorCode": 139}),
        ]
        for feed in signals if inspector_first else reversed(signals):
            feed()
            await wait_for(lambda: watchdog.crash_count == 1)
        await asyncio.sleep(0.02)

        events = await drain(subscription)
        assert watchdog.crash_count == 1
        assert len(events) == 1
        assert events[0].target_id == "T1"
        assert events[0].session_id == "S1"
        assert [tracker.request_id for tracker in watchdog.active_requests()] == ["r2"]
        await watchdog.on_detach()

    @pytest.mark.asyncio
    async def test_root_crash_signal_drops_session_trackers(self, watchdog, cdp_client, fake_ws):
        await watchdog.on_attach(cdp_client)
        fake_ws.feed_event("Target.attachedToTarget", {"sessionId": "S1", "targetInfo": {"targetId": "T1"}})
        await wait_for(lambda: "S1" in watchdog._session_targets)
        await watchdog.track_request("r1", "https://a.test/", session_id="S1", started_at=100.0)

        fake_ws.feed_event("Target.targetCrashed", {"targetId": "T1", "status": "crashed"})
        await wait_for(lambda: watchdog.crash_count == 1)

        assert watchdog.active_request_count == 0
        assert await watchdog.check_for_timeouts(now=500.0) == []
        await watchdog.on_detach()

    @pytest.mark.asyncio
    async def test_reloaded_target_can_crash_again(self, watchdog, cdp_client, fake_ws):
        await watchdog.on_attach(cdp_client)
        fake_ws.feed_event("Target.attachedToTarget", {"sessionId": "S1", "targetInfo": {"targetId": "T1"}})
        fake_ws.feed_event("Inspector.targetCrashed", {}, session_id="S1")
        await wait_for(lambda: watchdog.crash_count == 1)

        fake_ws.feed_event(
            "Network.requestWillBeSent",
            {"requestId": "r1", "request": {"url": "https://a.test/", "method": "GET"}},
            session_id="S1",
        )
        await wait_for(lambda: watchdog.active_request_count == 1)
        fake_ws.feed_event("Target.targetCrashed", {"targetId": "T1", "status": "crashed"})
        await wait_for(lambda: watchdog.crash_count == 2)

        await watchdog.on_detach()

    @pytest.mark.asyncio
    async def test_detach_stops_tracking(self, watchdog, cdp_client, fake_ws):
        await watchdog.on_attach(cdp_client)
        await watchdog.on_detach()

        fake_ws.feed_event("Network.requestWillBeSent", {"requestId": "r1", "request": {"url": "https://a.test/"}})
        await asyncio.sleep(0.02)

        assert watchdog.active_request_count == 0


class TestBusEvents:
    """Lifecycle events from the bus."""

    @pytest.mark.asyncio
    async def test_started_and_stopped_clear_trackers(self, watchdog):
        await watchdog.track_request("r1", "https://a.test/")
        await watchdog.on_event(BrowserStartedEvent())
        assert watchdog.active_request_count == 0

        await watchdog.track_request("r2", "https://b.test/")
        await watchdog.on_event(BrowserStoppedEvent(reason="test"))
        assert watchdog.active_request_count == 0
