"""Security watchdog for enforcing URL access policies.

This module provides the SecurityWatchdog which enforces domain allowlists
and blocklists, preventing navigation to unauthorized URLs.

Classes:
    SecurityPolicy: Immutable set of URL access rules.
    SecurityWatchdog: Monitors and enforces URL access policies.
"""

import ipaddress
import logging
from typing import ClassVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cdpwatch.browser.events import (
    BaseBrowserEvent,
    BrowserStartedEvent,
    NavigationBlockedEvent,
    NavigationCompleteEvent,
    TabCreatedEvent,
)
from cdpwatch.browser.watchdogs.base import BaseWatchdog
from cdpwatch.cdp.protocol import TargetID
from cdpwatch.cdp.session import CDPSession
from cdpwatch.exceptions import CDPError, NavigationBlockedError

logger = logging.getLogger(__name__)

# Pages the browser itself opens; never subject to the domain lists
INTERNAL_URLS = frozenset({'about:blank', 'chrome://new-tab-page/', 'chrome://new-tab-page', 'chrome://newtab/'})
INTERNAL_SCHEMES = ('data:', 'blob:')


class SecurityPolicy(BaseModel):
    """URL access rules.

    At most one of ``allowed_domains`` and ``prohibited_domains`` may be
    set. Entries are exact hosts (``example.com``, which also covers
    ``www.example.com``) or wildcards (``*.example.com``, which covers
    subdomains only and never ``example.com`` itself).

    Example:
        >>> policy = SecurityPolicy(allowed_domains=['example.com', '*.trusted.org'])
        >>> policy.is_allowed('https://docs.trusted.org/page')
        True
    """

    model_config = ConfigDict(frozen=True)

    allowed_domains: frozenset[str] | None = None
    prohibited_domains: frozenset[str] | None = None
    block_ip_addresses: bool = False

    @model_validator(mode='after')
    def _check_exclusive_lists(self) -> 'SecurityPolicy':
        if self.allowed_domains is not None and self.prohibited_domains is not None:
            raise ValueError('allowed_domains and prohibited_domains are mutually exclusive')
        return self

    @property
    def is_restricted(self) -> bool:
        return self.allowed_domains is not None or self.prohibited_domains is not None or self.block_ip_addresses

    def is_allowed(self, url: str) -> bool:
        """Check if a URL is allowed by this policy."""
        if url in INTERNAL_URLS or url.startswith(INTERNAL_SCHEMES):
            return True

        host = _extract_host(url)
        if not host:
            return False

        if self.block_ip_addresses and _is_ip_address(host):
            return False

        if self.allowed_domains is not None:
            return _matches_any(host, self.allowed_domains)
        if self.prohibited_domains is not None:
            return not _matches_any(host, self.prohibited_domains)
        return True

    def describe(self) -> str:
        if self.allowed_domains is not None:
            rules = f'allow {sorted(self.allowed_domains)}'
        elif self.prohibited_domains is not None:
            rules = f'deny {sorted(self.prohibited_domains)}'
        else:
            rules = 'no domain restrictions'
        if self.block_ip_addresses:
            rules += ', IP addresses blocked'
        return rules


def _extract_host(url: str) -> str | None:
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname.rstrip('.')


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _matches_any(host: str, patterns: frozenset[str]) -> bool:
    return any(_matches_pattern(host, pattern.strip().lower()) for pattern in patterns)


def _matches_pattern(host: str, pattern: str) -> bool:
    """Check if host matches a pattern.

    ``*.example.com`` matches ``a.example.com`` and ``a.b.example.com`` but
    not ``example.com``. A plain entry matches itself and its ``www.``
    variant in either direction.
    """
    if pattern.startswith('*.'):
        return host.endswith(pattern[1:])
    if host == pattern:
        return True
    if host.startswith('www.'):
        return host[4:] == pattern
    return pattern.startswith('www.') and pattern[4:] == host


class SecurityWatchdog(BaseWatchdog):
    """Monitors and enforces security policies for URL access.

    Listens to:
        BrowserStartedEvent: Logs the active policy.
        NavigationCompleteEvent: Catches redirects to blocked domains.
        TabCreatedEvent: Closes tabs opened on blocked URLs.

    Emits:
        NavigationBlockedEvent: When a URL is refused.

    Example:
        >>> watchdog = SecurityWatchdog(
        ...     event_bus=bus, policy=SecurityPolicy(allowed_domains=['example.com'])
        ... )
    """

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [
        BrowserStartedEvent,
        NavigationCompleteEvent,
        TabCreatedEvent,
    ]

    EMITS: ClassVar[list[type[BaseBrowserEvent]]] = [
        NavigationBlockedEvent,
    ]

    policy: SecurityPolicy = Field(default_factory=SecurityPolicy)

    def is_allowed(self, url: str) -> bool:
        return self.policy.is_allowed(url)

    def check_url(self, url: str) -> None:
        """Raise NavigationBlockedError if ``url`` is not allowed."""
        if not self.policy.is_allowed(url):
            raise NavigationBlockedError(url)

    def update_policy(self, policy: SecurityPolicy) -> None:
        """Replace the policy. Takes effect for the next check."""
        self.policy = policy
        logger.info(f'[SecurityWatchdog] Policy updated: {policy.describe()}')

    async def on_BrowserStartedEvent(self, event: BrowserStartedEvent) -> None:
        logger.info(f'[SecurityWatchdog] Active policy: {self.policy.describe()}')

    async def on_NavigationCompleteEvent(self, event: NavigationCompleteEvent) -> None:
        """Send the target back to about:blank if a redirect left the policy."""
        if self.is_allowed(event.url):
            return

        logger.warning(f'[SecurityWatchdog] Navigation to non-allowed URL detected: {event.url}')
        self.emit(NavigationBlockedEvent(url=event.url, target_id=event.target_id, reason='redirect_not_allowed'))
        self.spawn(self._reset_target(event.target_id, event.url), name=f'security-reset-{event.target_id[-4:]}')

    async def on_TabCreatedEvent(self, event: TabCreatedEvent) -> None:
        """Close tabs created with disallowed URLs (e.g. popup ads)."""
        if self.is_allowed(event.url):
            return

        logger.warning(f'[SecurityWatchdog] New tab created with disallowed URL: {event.url}')
        self.emit(NavigationBlockedEvent(url=event.url, target_id=event.target_id, reason='tab_not_allowed'))
        try:
            await self.cdp_client.send('Target.closeTarget', {'targetId': event.target_id})
            logger.info(f'[SecurityWatchdog] Closed new tab with non-allowed URL: {event.url}')
        except CDPError as e:
            logger.error(f'[SecurityWatchdog] Failed to close tab with non-allowed URL: {type(e).__name__} {e}')

    async def _reset_target(self, target_id: TargetID, blocked_url: str) -> None:
        try:
            session = await CDPSession.attach(self.cdp_client, target_id, domains=[])
        except CDPError as e:
            logger.error(f'[SecurityWatchdog] Failed to attach to {target_id[-4:]}: {type(e).__name__} {e}')
            return
        try:
            await session.navigate('about:blank')
            logger.info(f'[SecurityWatchdog] Navigated to about:blank after blocked URL: {blocked_url}')
        except CDPError as e:
            logger.error(f'[SecurityWatchdog] Failed to navigate to about:blank: {type(e).__name__} {e}')
        finally:
            await session.detach()
