"""Crash watchdog: renderer crashes and network requests that never finish."""

import asyncio
import logging
import time
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from cdpwatch.browser.events import (
    BaseBrowserEvent,
    BrowserStartedEvent,
    BrowserStoppedEvent,
    NetworkTimeoutEvent,
    TabClosedEvent,
    TargetCrashedEvent,
)
from cdpwatch.browser.watchdogs.base import BaseWatchdog
from cdpwatch.cdp.client import CDPClient
from cdpwatch.cdp.protocol import SessionID, TargetID

logger = logging.getLogger(__name__)


class RequestTracker(BaseModel):
    """An in-flight network request."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    url: str
    method: str = 'GET'
    started_at: float
    session_id: SessionID | None = None


class CrashWatchdog(BaseWatchdog):
    """Detects crashed targets and hung network requests.

    Every request announced by ``Network.requestWillBeSent`` is tracked until
    the browser reports it finished or failed. A periodic sweep flags the
    ones older than ``network_timeout`` exactly once with a
    NetworkTimeoutEvent. A crashed target is reported once even when both
    ``Inspector.targetCrashed`` and ``Target.targetCrashed`` arrive for it.

    Listens to:
        BrowserStartedEvent: Drops trackers left from a previous run.
        BrowserStoppedEvent: Drops all trackers.
        TabClosedEvent: Logged.

    Emits:
        NetworkTimeoutEvent: A request exceeded network_timeout.
        TargetCrashedEvent: A renderer crashed.
    """

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [
        BrowserStartedEvent,
        BrowserStoppedEvent,
        TabClosedEvent,
    ]

    EMITS: ClassVar[list[type[BaseBrowserEvent]]] = [
        NetworkTimeoutEvent,
        TargetCrashedEvent,
    ]

    network_timeout: float = Field(default=10.0, gt=0)
    check_interval: float = Field(default=5.0, gt=0)

    _active_requests: dict[tuple[SessionID | None, str], RequestTracker] = PrivateAttr(default_factory=dict)
    _crash_count: int = PrivateAttr(default=0)
    _session_targets: dict[SessionID, TargetID] = PrivateAttr(default_factory=dict)
    _crashed: set[str] = PrivateAttr(default_factory=set)

    @property
    def active_request_count(self) -> int:
        return len(self._active_requests)

    @property
    def crash_count(self) -> int:
        return self._crash_count

    def active_requests(self) -> list[RequestTracker]:
        return list(self._active_requests.values())

    async def on_attach(self, cdp_client: CDPClient) -> None:
        await super().on_attach(cdp_client)
        self.subscribe_cdp('Network.requestWillBeSent', self._on_request_will_be_sent)
        self.subscribe_cdp('Network.responseReceived', self._on_request_finished)
        self.subscribe_cdp('Network.loadingFinished', self._on_request_finished)
        self.subscribe_cdp('Network.loadingFailed', self._on_request_failed)
        self.subscribe_cdp('Inspector.targetCrashed', self._on_inspector_target_crashed)
        self.subscribe_cdp('Target.targetCrashed', self._on_target_crashed)
        self.subscribe_cdp('Target.attachedToTarget', self._on_attached_to_target)
        self.subscribe_cdp('Target.detachedFromTarget', self._on_detached_from_target)
        self.subscribe_cdp('Target.targetDestroyed', self._on_target_destroyed)
        self.spawn(self._monitor_loop(), name='crash-watchdog-sweep')
        logger.debug(
            f'[CrashWatchdog] Monitoring requests (timeout {self.network_timeout}s, every {self.check_interval}s)'
        )

    async def on_BrowserStartedEvent(self, event: BrowserStartedEvent) -> None:
        async with self._lock:
            stale = len(self._active_requests)
            self._active_requests.clear()
        if stale:
            logger.debug(f'[CrashWatchdog] Dropped {stale} stale request trackers')

    async def on_BrowserStoppedEvent(self, event: BrowserStoppedEvent) -> None:
        async with self._lock:
            self._active_requests.clear()
            self._session_targets.clear()
            self._crashed.clear()

    async def on_TabClosedEvent(self, event: TabClosedEvent) -> None:
        logger.debug(f'[CrashWatchdog] Tab closed: {event.target_id[-4:]}')

    async def track_request(
        self,
        request_id: str,
        url: str,
        method: str = 'GET',
        session_id: SessionID | None = None,
        started_at: float | None = None,
    ) -> RequestTracker:
        """Start tracking a request. ``started_at`` defaults to now."""
        tracker = RequestTracker(
            request_id=request_id,
            url=url,
            method=method,
            started_at=time.monotonic() if started_at is None else started_at,
            session_id=session_id,
        )
        async with self._lock:
            self._active_requests[(session_id, request_id)] = tracker
        return tracker

    async def finish_request(self, request_id: str, session_id: SessionID | None = None) -> bool:
        """Stop tracking a request. Returns False if it was not tracked."""
        async with self._lock:
            return self._active_requests.pop((session_id, request_id), None) is not None

    async def check_for_timeouts(self, now: float | None = None) -> list[NetworkTimeoutEvent]:
        """Flag and drop every request older than ``network_timeout``.

        Returns:
            The NetworkTimeoutEvents published by this sweep.
        """
        now = time.monotonic() if now is None else now
        async with self._lock:
            expired = [
                (key, tracker)
                for key, tracker in self._active_requests.items()
                if now - tracker.started_at >= self.network_timeout
            ]
            for key, _ in expired:
                del self._active_requests[key]

        events = []
        for _, tracker in expired:
            elapsed = now - tracker.started_at
            logger.warning(
                f'[CrashWatchdog] Network request timed out after {elapsed:.1f}s: {tracker.method} {tracker.url}'
            )
            event = NetworkTimeoutEvent(
                request_id=tracker.request_id,
                url=tracker.url,
                method=tracker.method,
                elapsed=elapsed,
                session_id=tracker.session_id,
            )
            self.emit(event)
            events.append(event)
        return events

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            await self.check_for_timeouts()

    async def _on_request_will_be_sent(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        request = params.get('request', {})
        request_id = params.get('requestId')
        if not request_id:
            return
        if session_id is not None and self._crashed:
            async with self._lock:
                # the target was reloaded after a crash
                self._crashed.difference_update({session_id, self._session_targets.get(session_id)})
        await self.track_request(
            request_id,
            url=request.get('url', ''),
            method=request.get('method', 'GET'),
            session_id=session_id,
        )

    async def _on_request_finished(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        request_id = params.get('requestId')
        if request_id:
            await self.finish_request(request_id, session_id)

    async def _on_request_failed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        request_id = params.get('requestId')
        if request_id and await self.finish_request(request_id, session_id):
            logger.debug(f'[CrashWatchdog] Request {request_id} failed: {params.get("errorText", "unknown error")}')

    async def _on_attached_to_target(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        child_session_id = params.get('sessionId')
        target_id = params.get('targetInfo', {}).get('targetId')
        if child_session_id and target_id:
            async with self._lock:
                self._session_targets[child_session_id] = target_id

    async def _on_detached_from_target(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        async with self._lock:
            self._session_targets.pop(params.get('sessionId'), None)

    async def _on_target_destroyed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        target_id = params.get('targetId')
        async with self._lock:
            self._crashed.discard(target_id)
            for child in [s for s, t in self._session_targets.items() if t == target_id]:
                del self._session_targets[child]

    async def _on_inspector_target_crashed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        await self._record_crash(target_id=None, session_id=session_id, status=None)

    async def _on_target_crashed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        await self._record_crash(target_id=params.get('targetId'), session_id=None, status=params.get('status'))

    async def _record_crash(self, target_id: TargetID | None, session_id: SessionID | None, status: str | None) -> None:
        """Count a crash once per target, however many signals report it."""
        async with self._lock:
            if target_id is None and session_id is not None:
                target_id = self._session_targets.get(session_id)
            sessions = {s for s, t in self._session_targets.items() if target_id is not None and t == target_id}
            if session_id is not None:
                sessions.add(session_id)

            # a crashed renderer will never finish its requests
            for key in [key for key in self._active_requests if key[0] in sessions]:
                del self._active_requests[key]

            crash_key = target_id or session_id
            duplicate = crash_key is not None and crash_key in self._crashed
            if not duplicate:
                if crash_key is not None:
                    self._crashed.add(crash_key)
                self._crash_count += 1
            if session_id is None and sessions:
                session_id = min(sessions)

        if duplicate:
            logger.debug(f'[CrashWatchdog] Crash of {crash_key} already reported')
            return

        logger.error(f'[CrashWatchdog] Target crashed: target={target_id} session={session_id}')
        self.emit(TargetCrashedEvent(target_id=target_id, session_id=session_id, status=status))
