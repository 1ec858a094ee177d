"""Event-driven browser session.

BrowserSession owns the CDP connection, the per-tab CDPSession pool, the
event bus and the watchdog manager. It turns raw target and page events
into bus events and offers tab and navigation operations on top of them.
"""

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from cdpwatch.browser.event_bus import EventBus
from cdpwatch.browser.events import (
    BrowserErrorEvent,
    BrowserStartedEvent,
    BrowserStoppedEvent,
    NavigationBlockedEvent,
    NavigationCompleteEvent,
    NavigationStartedEvent,
    TabClosedEvent,
    TabCreatedEvent,
    TabSwitchedEvent,
)
from cdpwatch.browser.profile import BrowserProfile
from cdpwatch.browser.watchdogs.base import WatchdogManager
from cdpwatch.browser.watchdogs.crash_watchdog import CrashWatchdog
from cdpwatch.browser.watchdogs.downloads_watchdog import DownloadsWatchdog
from cdpwatch.browser.watchdogs.security_watchdog import SecurityPolicy, SecurityWatchdog
from cdpwatch.cdp.client import CDPClient, CDPListener
from cdpwatch.cdp.protocol import SessionID, TargetID, TargetInfo
from cdpwatch.cdp.session import CDPSession
from cdpwatch.exceptions import CDPError, CDPProtocolError, NavigationBlockedError, WatchdogDetachError

logger = logging.getLogger(__name__)


class BrowserSession(BaseModel):
    """Event-driven session on one browser reached over CDP.

    Attributes:
        browser_profile: Connection and watchdog settings.
        event_bus: Bus carrying every BrowserEvent of this session.
        register_default_watchdogs: Register the crash, downloads and
            security watchdogs built from the profile.
        agent_focus: CDPSession of the focused tab, if any.

    Example:
        >>> session = BrowserSession(browser_profile=BrowserProfile(cdp_url='http://localhost:9222'))
        >>> await session.start()
        >>> await session.navigate('https://example.com')
        >>> await session.stop()
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True,
        extra='forbid',
        revalidate_instances='never',
    )

    browser_profile: BrowserProfile = Field(default_factory=BrowserProfile)
    event_bus: EventBus | None = None
    register_default_watchdogs: bool = True

    # Mutable public state
    agent_focus: CDPSession | None = None

    # Mutable private state
    _cdp_client: CDPClient | None = PrivateAttr(default=None)
    _sessions: dict[TargetID, CDPSession] = PrivateAttr(default_factory=dict)
    _attach_locks: dict[TargetID, asyncio.Lock] = PrivateAttr(default_factory=dict)
    _page_targets: set[TargetID] = PrivateAttr(default_factory=set)
    _raw_listeners: list[CDPListener] = PrivateAttr(default_factory=list)
    _watchdog_manager: WatchdogManager = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        if self.event_bus is None:
            self.event_bus = EventBus(capacity=self.browser_profile.event_bus_capacity)
        self._watchdog_manager = WatchdogManager(self.event_bus)
        if self.register_default_watchdogs:
            self._register_default_watchdogs()

    def _register_default_watchdogs(self) -> None:
        profile = self.browser_profile
        self._watchdog_manager.register(
            CrashWatchdog(
                event_bus=self.event_bus,
                network_timeout=profile.network_timeout,
                check_interval=profile.check_interval,
            )
        )
        self._watchdog_manager.register(
            DownloadsWatchdog(
                event_bus=self.event_bus,
                downloads_path=profile.downloads_path,
                max_completed_downloads=profile.max_completed_downloads,
            )
        )
        self._watchdog_manager.register(
            SecurityWatchdog(event_bus=self.event_bus, policy=profile.security_policy())
        )

    @property
    def watchdog_manager(self) -> WatchdogManager:
        return self._watchdog_manager

    @property
    def cdp_client(self) -> CDPClient:
        """The root CDP client.

        Raises:
            RuntimeError: If the session is not started.
        """
        if self._cdp_client is None:
            raise RuntimeError('Browser not connected')
        return self._cdp_client

    @property
    def is_connected(self) -> bool:
        return self._cdp_client is not None and self._cdp_client.is_connected

    @property
    def sessions(self) -> dict[TargetID, CDPSession]:
        return dict(self._sessions)

    @property
    def security_policy(self) -> SecurityPolicy:
        security = self._watchdog_manager.get(SecurityWatchdog)
        return security.policy if security is not None else self.browser_profile.security_policy()

    def is_url_allowed(self, url: str) -> bool:
        return self.security_policy.is_allowed(url)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, attach the watchdogs and start target discovery.

        Raises:
            CDPConnectError: If the browser cannot be reached.
            WatchdogAttachError: If a watchdog fails to attach.
        """
        if self._cdp_client is not None:
            logger.debug('Already connected to CDP, skipping reconnection')
            return

        cdp_url = self.browser_profile.cdp_url
        try:
            self._cdp_client = await CDPClient.connect(cdp_url, open_timeout=self.browser_profile.connect_timeout)

            await self._watchdog_manager.attach_all(self._cdp_client)
            self._watchdog_manager.start()
            self.event_bus.publish(BrowserStartedEvent(cdp_url=self._cdp_client.url))

            self._subscribe_raw_events(self._cdp_client)
            await self._cdp_client.send('Target.setDiscoverTargets', {'discover': True})
            await self._focus_initial_page()
        except Exception as e:
            logger.error(f'Failed to start browser session: {type(e).__name__}: {e}')
            self.event_bus.publish(
                BrowserErrorEvent(
                    error_type='BrowserStartError',
                    message=f'Failed to start browser: {type(e).__name__} {e}',
                    details={'cdp_url': cdp_url},
                )
            )
            await self._shutdown()
            raise

        logger.info(f'Browser session started on {self._cdp_client.url}')

    async def stop(self, reason: str = 'Stopped by request') -> None:
        """Stop watchdogs, release every tab session and close the connection."""
        if self._cdp_client is None:
            return

        self.event_bus.publish(BrowserStoppedEvent(reason=reason))
        await self._shutdown()
        logger.info(f'Browser session stopped: {reason}')

    async def _shutdown(self) -> None:
        await self._watchdog_manager.stop()
        try:
            await self._watchdog_manager.detach_all()
        except WatchdogDetachError as e:
            logger.warning(f'Some watchdogs did not detach cleanly: {e}')

        for listener in self._raw_listeners:
            listener.remove()
        self._raw_listeners.clear()

        for session in list(self._sessions.values()):
            await session.detach()
        self._sessions.clear()
        self._attach_locks.clear()
        self._page_targets.clear()
        self.agent_focus = None

        if self._cdp_client is not None:
            await self._cdp_client.close()
            self._cdp_client = None

    async def __aenter__(self) -> 'BrowserSession':
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Tabs and sessions
    # ------------------------------------------------------------------

    async def get_targets(self, target_type: str | None = None) -> list[TargetInfo]:
        """List browser targets, optionally only those of ``target_type``."""
        result = await self.cdp_client.send('Target.getTargets')
        targets = [TargetInfo.model_validate(info) for info in result.get('targetInfos', [])]
        if target_type is not None:
            targets = [target for target in targets if target.type == target_type]
        return targets

    async def get_or_create_session(self, target_id: TargetID | None = None, focus: bool = True) -> CDPSession:
        """Get the CDP session for a target from the pool or attach one.

        Args:
            target_id: Target to get a session for. Defaults to the focused tab.
            focus: Move agent_focus to this target.

        Raises:
            ValueError: If target_id is None and no tab is focused.
            CDPAttachError: If the browser refuses the attachment.
        """
        if target_id is None:
            if self.agent_focus is None:
                raise ValueError('target_id must be provided when agent_focus is not initialized')
            target_id = self.agent_focus.target_id

        session = self._sessions.get(target_id)
        if session is None:
            # concurrent callers for one target share a single attach
            async with self._attach_locks.setdefault(target_id, asyncio.Lock()):
                session = self._sessions.get(target_id)
                if session is None:
                    session = await CDPSession.attach(
                        self.cdp_client, target_id, domains=self.browser_profile.session_domains
                    )
                    self._sessions[target_id] = session

        if focus and (self.agent_focus is None or self.agent_focus.target_id != target_id):
            if self.agent_focus is not None:
                logger.debug(f'Switching focus: {self.agent_focus.target_id[:8]}... -> {target_id[:8]}...')
            self.agent_focus = session

        return session

    async def current_session(self) -> CDPSession:
        """Session of the focused tab, focusing the first open page if needed.

        Raises:
            RuntimeError: If the browser has no open page.
        """
        if self.agent_focus is not None:
            return self.agent_focus
        pages = await self.get_targets('page')
        if not pages:
            raise RuntimeError('No open page to focus')
        return await self.get_or_create_session(pages[0].target_id, focus=True)

    async def new_tab(self, url: str = 'about:blank') -> CDPSession:
        """Open a tab, focus it and return its session.

        Raises:
            NavigationBlockedError: If ``url`` is refused by the policy.
        """
        self._check_navigation(url)
        result = await self.cdp_client.send('Target.createTarget', {'url': url})
        target_id = result['targetId']
        self._page_targets.add(target_id)
        logger.debug(f'Created new tab {target_id[:8]}... ({url})')
        return await self.get_or_create_session(target_id, focus=True)

    async def switch_tab(self, target_id: TargetID) -> CDPSession:
        """Focus a tab and bring it to the front."""
        session = await self.get_or_create_session(target_id, focus=True)
        try:
            await self.cdp_client.send('Target.activateTarget', {'targetId': target_id})
        except CDPError as e:
            logger.debug(f'Failed to activate tab visually: {e}')
        self.event_bus.publish(TabSwitchedEvent(target_id=target_id))
        return session

    async def close_tab(self, target_id: TargetID) -> None:
        """Close a tab. Focus moves to the most recent remaining page."""
        await self.cdp_client.send('Target.closeTarget', {'targetId': target_id})
        was_focused = self.agent_focus is not None and self.agent_focus.target_id == target_id
        await self._forget_target(target_id)

        if was_focused:
            remaining = [page for page in await self.get_targets('page') if page.target_id != target_id]
            if remaining:
                await self.get_or_create_session(remaining[-1].target_id, focus=True)

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def navigate(self, url: str, target_id: TargetID | None = None) -> dict[str, Any]:
        """Navigate a tab (the focused one by default) to ``url``.

        Raises:
            NavigationBlockedError: If the security policy refuses ``url``.
            CDPProtocolError: If the browser reports a navigation error.
        """
        self._check_navigation(url, target_id)

        if target_id is None:
            session = await self.current_session()
        else:
            session = await self.get_or_create_session(target_id, focus=False)

        self.event_bus.publish(NavigationStartedEvent(target_id=session.target_id, url=url))
        result = await session.navigate(url)
        if result.get('errorText'):
            raise CDPProtocolError(result['errorText'], method='Page.navigate', data=url)
        return result

    def _check_navigation(self, url: str, target_id: TargetID | None = None) -> None:
        if self.is_url_allowed(url):
            return
        logger.warning(f'Blocking navigation to disallowed URL: {url}')
        self.event_bus.publish(NavigationBlockedEvent(url=url, target_id=target_id))
        raise NavigationBlockedError(url)

    # ------------------------------------------------------------------
    # Raw protocol events
    # ------------------------------------------------------------------

    def _subscribe_raw_events(self, cdp_client: CDPClient) -> None:
        self._raw_listeners = [
            cdp_client.subscribe('Target.targetCreated', self._on_target_created),
            cdp_client.subscribe('Target.targetDestroyed', self._on_target_destroyed),
            cdp_client.subscribe('Target.targetCrashed', self._on_target_crashed),
            cdp_client.subscribe('Page.frameNavigated', self._on_frame_navigated),
        ]

    async def _focus_initial_page(self) -> None:
        pages = await self.get_targets('page')
        self._page_targets.update(page.target_id for page in pages)
        if not pages:
            logger.debug('No open pages, nothing to focus')
            return
        try:
            await self.get_or_create_session(pages[0].target_id, focus=True)
        except CDPError as e:
            logger.warning(f'Failed to attach to initial page {pages[0].target_id[:8]}...: {e}')

    def _on_target_created(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        info = TargetInfo.model_validate(params['targetInfo'])
        if info.type != 'page':
            return
        self._page_targets.add(info.target_id)
        self.event_bus.publish(TabCreatedEvent(target_id=info.target_id, url=info.url or 'about:blank'))

    async def _on_target_destroyed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        target_id = params['targetId']
        was_page = target_id in self._page_targets
        await self._forget_target(target_id)
        if was_page:
            self.event_bus.publish(TabClosedEvent(target_id=target_id))

    async def _on_target_crashed(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        target_id = params.get('targetId')
        logger.warning(f'Target {target_id} crashed ({params.get("status", "unknown status")})')
        if target_id:
            await self._forget_target(target_id)

    def _on_frame_navigated(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        frame = params.get('frame', {})
        if frame.get('parentId'):
            return
        session = next((s for s in self._sessions.values() if s.session_id == session_id), None)
        if session is None:
            return
        session.url = frame.get('url', session.url)
        self.event_bus.publish(NavigationCompleteEvent(target_id=session.target_id, url=session.url))

    async def _forget_target(self, target_id: TargetID) -> None:
        self._page_targets.discard(target_id)
        self._attach_locks.pop(target_id, None)
        session = self._sessions.pop(target_id, None)
        if session is not None:
            await session.detach()
        if self.agent_focus is not None and self.agent_focus.target_id == target_id:
            self.agent_focus = None
