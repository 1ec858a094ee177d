"""CDP session bound to a single browser target.

All sessions share the client's WebSocket. A session only adds the routing
``sessionId`` to outgoing commands and filters incoming events to its
target.
"""

import asyncio
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, PrivateAttr, ValidationError

from cdpwatch.cdp.client import CDPClient, CDPListener, EventCallback
from cdpwatch.cdp.protocol import SessionID, TargetID, TargetInfo
from cdpwatch.exceptions import (
    CDPAttachError,
    CDPConnectionError,
    CDPError,
    CDPProtocolError,
    CDPSessionDetachedError,
)

logger = logging.getLogger(__name__)

DEFAULT_DOMAINS = ['Page', 'DOM', 'Runtime', 'Network', 'Inspector']


class CDPSession(BaseModel):
    """Info about a single CDP session bound to a specific browser target.

    Attributes:
        cdp_client: Shared CDPClient for WebSocket communication.
        target_id: The CDP target ID this session is attached to.
        session_id: The CDP session ID for this attachment.
        title: Page title when the session was attached.
        url: Current URL of the target.

    Example:
        >>> session = await CDPSession.attach(cdp_client, target_id)
        >>> await session.send('Page.navigate', {'url': 'https://example.com'})
        >>> await session.detach()
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, revalidate_instances='never')

    cdp_client: CDPClient
    target_id: TargetID
    session_id: SessionID
    title: str = 'Unknown title'
    url: str = 'about:blank'

    _detached: bool = PrivateAttr(default=False)
    _listeners: list[CDPListener] = PrivateAttr(default_factory=list)

    @classmethod
    async def attach(
        cls,
        cdp_client: CDPClient,
        target_id: TargetID,
        domains: list[str] | None = None,
    ) -> 'CDPSession':
        """Attach to a target and enable CDP domains.

        Every ``<Domain>.enable`` command is sent before any of them is
        awaited. If the browser refuses the attachment or any domain, the
        browser side session is released and CDPAttachError is raised.

        Args:
            cdp_client: The shared CDP client (root WebSocket connection).
            target_id: Target ID to attach to (page, iframe, worker).
            domains: CDP domains to enable. Defaults to DEFAULT_DOMAINS;
                pass an empty list to enable nothing.

        Raises:
            CDPAttachError: If attaching, enabling a domain or reading the
                target info fails. The browser side session is released.
            CDPConnectionClosedError: If the connection is gone.
        """
        try:
            result = await cdp_client.send(
                'Target.attachToTarget', {'targetId': target_id, 'flatten': True}
            )
        except CDPProtocolError as e:
            raise CDPAttachError(f'Browser rejected attaching to {target_id}: {e}', target_id=target_id) from e

        session_id = result.get('sessionId')
        if not session_id:
            raise CDPAttachError(f'Target.attachToTarget returned no sessionId for {target_id}', target_id=target_id)

        session = cls(cdp_client=cdp_client, target_id=target_id, session_id=session_id)

        domains = DEFAULT_DOMAINS if domains is None else domains
        results = await asyncio.gather(
            *(cdp_client.send(f'{domain}.enable', session_id=session_id) for domain in domains),
            return_exceptions=True,
        )
        failures = {
            domain: result for domain, result in zip(domains, results) if isinstance(result, BaseException)
        }
        if failures:
            await session.detach()
            details = ', '.join(f'{domain}: {error}' for domain, error in failures.items())
            raise CDPAttachError(f'Failed to enable CDP domains for {target_id}: {details}', target_id=target_id)

        try:
            info = await session.get_target_info()
        except CDPConnectionError:
            await session.detach()
            raise
        except (CDPError, KeyError, ValidationError) as e:
            await session.detach()
            raise CDPAttachError(f'Failed to read target info for {target_id}: {e}', target_id=target_id) from e
        session.title = info.title or session.title
        session.url = info.url or session.url

        logger.debug(f'Attached session {session_id[:8]} to target {target_id[:8]} ({session.url})')
        return session

    @property
    def is_detached(self) -> bool:
        return self._detached

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a command within this session's context.

        Raises:
            CDPSessionDetachedError: If the session was detached.
        """
        if self._detached:
            raise CDPSessionDetachedError(self.session_id, self.target_id)
        return await self.cdp_client.send(method, params, session_id=self.session_id, timeout=timeout)

    def subscribe(self, method: str, callback: EventCallback) -> CDPListener:
        """Listen for ``method`` events routed to this session only."""
        if self._detached:
            raise CDPSessionDetachedError(self.session_id, self.target_id)
        listener = self.cdp_client.subscribe(method, callback, session_id=self.session_id)
        self._listeners.append(listener)
        return listener

    async def detach(self) -> None:
        """Release the browser side session and make this handle inert.

        Best effort: a failing Target.detachFromTarget is only logged.
        """
        if self._detached:
            return
        self._detached = True

        for listener in self._listeners:
            listener.remove()
        self._listeners.clear()

        try:
            await self.cdp_client.send('Target.detachFromTarget', {'sessionId': self.session_id})
        except CDPError as e:
            logger.debug(f'Failed to detach session {self.session_id[:8]}: {e}')

    async def get_target_info(self) -> TargetInfo:
        """Get target info (URL, title, type) from the browser."""
        result = await self.cdp_client.send('Target.getTargetInfo', {'targetId': self.target_id})
        return TargetInfo.model_validate(result['targetInfo'])

    async def navigate(self, url: str) -> dict[str, Any]:
        return await self.send('Page.navigate', {'url': url, 'transitionType': 'address_bar'})

    async def evaluate(self, expression: str) -> Any:
        """Evaluate a JavaScript expression and return its value."""
        result = await self.send(
            'Runtime.evaluate', {'expression': expression, 'returnByValue': True, 'awaitPromise': True}
        )
        return result.get('result', {}).get('value')
