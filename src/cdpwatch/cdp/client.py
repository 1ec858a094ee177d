"""CDP client: the single WebSocket connection to the browser.

One connection carries every command and event for every target. Commands
are correlated with their responses through monotonically increasing ids,
events are fanned out to raw listeners registered by method name and,
optionally, by session id.

A closed connection is terminal: every pending command fails with
CDPConnectionClosedError exactly once and every later command fails
immediately. Reconnecting means creating a new client.

Example:
    >>> client = await CDPClient.connect('http://localhost:9222')
    >>> version = await client.send('Browser.getVersion')
    >>> listener = client.subscribe('Target.targetCreated', on_target_created)
    >>> await client.close()
"""

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed

from cdpwatch.cdp.protocol import CDPEvent, CDPRequest, CDPResponse, SessionID, parse_message
from cdpwatch.exceptions import (
    CDPConnectError,
    CDPConnectionClosedError,
    CDPProtocolError,
    CDPTimeoutError,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any], SessionID | None], Awaitable[None] | None]


async def resolve_websocket_url(endpoint: str, timeout: float | None = 10.0) -> str:
    """Turn a DevTools address into the browser WebSocket URL.

    ``ws://`` and ``wss://`` URLs are returned unchanged. For an HTTP address
    the browser endpoint is read from ``/json/version``.
    """
    if endpoint.startswith(('ws://', 'wss://')):
        return endpoint

    url = endpoint.rstrip('/')
    if not url.endswith('/json/version'):
        url = url + '/json/version'

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url)
        response.raise_for_status()
        version_info = response.json()

    ws_url = version_info.get('webSocketDebuggerUrl')
    if not ws_url:
        raise CDPConnectError(f'No webSocketDebuggerUrl in {url}', url=endpoint)
    return ws_url


class CDPListener:
    """Handle for a raw event subscription, returned by CDPClient.subscribe."""

    __slots__ = ('_client', 'method', 'callback', 'session_id')

    def __init__(
        self,
        client: 'CDPClient',
        method: str,
        callback: EventCallback,
        session_id: SessionID | None = None,
    ):
        self._client = client
        self.method = method
        self.callback = callback
        self.session_id = session_id

    def matches(self, event: CDPEvent) -> bool:
        return self.session_id is None or self.session_id == event.session_id

    def remove(self) -> bool:
        """Stop receiving events. Returns False if already removed."""
        return self._client.unsubscribe(self)

    def __repr__(self) -> str:
        session = f' session={self.session_id[:8]}' if self.session_id else ''
        return f'<CDPListener {self.method}{session}>'


class CDPClient:
    """Multiplexed CDP connection shared by all sessions.

    Attributes:
        url: WebSocket URL of the browser endpoint.
    """

    def __init__(self, websocket: Any, url: str = ''):
        self.url = url
        self._ws = websocket
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[CDPResponse]] = {}
        self._listeners: dict[str, list[CDPListener]] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._callback_tasks: set[asyncio.Task] = set()
        self._closed = False
        self._close_reason = 'Connection closed'

    @classmethod
    async def connect(cls, endpoint: str, open_timeout: float | None = 10.0) -> 'CDPClient':
        """Open the connection and start the read loop.

        Args:
            endpoint: ``ws://`` URL or ``http://host:port`` DevTools address.
            open_timeout: Seconds allowed for discovery and the handshake.

        Raises:
            CDPConnectError: If the endpoint cannot be reached.
        """
        try:
            ws_url = await resolve_websocket_url(endpoint, timeout=open_timeout)
            websocket = await websocket_connect(ws_url, max_size=None, open_timeout=open_timeout)
        except CDPConnectError:
            raise
        except Exception as e:
            raise CDPConnectError(
                f'Failed to connect to {endpoint}: {type(e).__name__}: {e}', url=endpoint
            ) from e

        logger.debug(f'Connected to CDP endpoint {ws_url}')
        client = cls(websocket, url=ws_url)
        client.start()
        return client

    def start(self) -> None:
        """Start the background read loop (idempotent)."""
        if self._reader_task is None and not self._closed:
            self._reader_task = asyncio.create_task(self._read_loop(), name='cdp-read-loop')

    @property
    def is_connected(self) -> bool:
        return self._reader_task is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: SessionID | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send a command and wait for its response.

        Args:
            method: CDP method, e.g. ``Page.navigate``.
            params: Command parameters.
            session_id: Route the command to an attached target session.
            timeout: Optional seconds to wait for the response.

        Returns:
            The ``result`` object of the response.

        Raises:
            CDPProtocolError: The browser rejected the command.
            CDPConnectionClosedError: The connection is gone.
            CDPTimeoutError: No response within ``timeout``.
        """
        if self._closed:
            raise CDPConnectionClosedError(self._close_reason, url=self.url)

        request = CDPRequest(id=next(self._ids), method=method, params=params or {}, session_id=session_id)
        future: asyncio.Future[CDPResponse] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future

        try:
            try:
                async with self._write_lock:
                    await self._ws.send(request.to_message())
            except ConnectionClosed as e:
                _consume_exception(future)
                raise CDPConnectionClosedError(f'Connection closed while sending {method}: {e}', url=self.url) from e

            if timeout is None:
                response = await future
            else:
                try:
                    response = await asyncio.wait_for(future, timeout)
                except asyncio.TimeoutError as e:
                    raise CDPTimeoutError(method, timeout) from e
        finally:
            self._pending.pop(request.id, None)

        if response.error is not None:
            raise CDPProtocolError(
                response.error.message,
                code=response.error.code,
                data=response.error.data,
                method=method,
            )
        return response.result or {}

    def subscribe(
        self,
        method: str,
        callback: EventCallback,
        session_id: SessionID | None = None,
    ) -> CDPListener:
        """Register a raw listener for ``method`` events.

        The callback is called as ``callback(params, session_id)`` from the
        read loop. Coroutine callbacks are scheduled as tasks. With
        ``session_id`` set only events routed to that session are delivered.
        """
        listener = CDPListener(self, method, callback, session_id)
        self._listeners.setdefault(method, []).append(listener)
        return listener

    def unsubscribe(self, listener: CDPListener) -> bool:
        listeners = self._listeners.get(listener.method)
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        if not listeners:
            del self._listeners[listener.method]
        return True

    async def close(self) -> None:
        """Close the connection and fail everything still pending."""
        self._mark_closed('Connection closed by client')

        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f'Error closing CDP websocket: {type(e).__name__}: {e}')

        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            await asyncio.gather(self._reader_task, return_exceptions=True)

        for task in list(self._callback_tasks):
            if not task.done():
                task.cancel()
        if self._callback_tasks:
            await asyncio.gather(*self._callback_tasks, return_exceptions=True)
        self._callback_tasks.clear()

    async def __aenter__(self) -> 'CDPClient':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _read_loop(self) -> None:
        reason = 'Connection closed by browser'
        try:
            async for raw in self._ws:
                self._handle_message(raw)
        except ConnectionClosed as e:
            reason = f'Connection closed by browser: {e}'
        except asyncio.CancelledError:
            reason = 'Connection closed by client'
            raise
        except Exception as e:
            reason = f'Connection failed: {type(e).__name__}: {e}'
            logger.error(f'CDP read loop crashed: {type(e).__name__}: {e}')
        finally:
            if not self._closed:
                logger.info(reason)
            self._mark_closed(reason)

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = parse_message(raw)
        except ValueError as e:
            logger.warning(f'Dropping malformed CDP frame: {e}')
            return

        if isinstance(message, CDPResponse):
            future = self._pending.pop(message.id, None)
            if future is None or future.done():
                logger.warning(f'Received response for unknown request: {message.id}')
                return
            future.set_result(message)
        else:
            self._dispatch_event(message)

    def _dispatch_event(self, event: CDPEvent) -> None:
        listeners = self._listeners.get(event.method)
        if not listeners:
            return

        for listener in tuple(listeners):
            if not listener.matches(event):
                continue
            try:
                result = listener.callback(event.params, event.session_id)
            except Exception as e:
                logger.error(f'Error in {event.method} listener: {type(e).__name__}: {e}')
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._on_callback_done)

    def _on_callback_done(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'Error in async CDP event listener: {type(error).__name__}: {error}')

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        pending = list(self._pending.values())
        self._pending.clear()
        failed = 0
        for future in pending:
            if not future.done():
                future.set_exception(CDPConnectionClosedError(reason, url=self.url))
                failed += 1
        if failed:
            logger.warning(f'Failed {failed} pending CDP requests: {reason}')


def _consume_exception(future: asyncio.Future) -> None:
    # the reader may already have failed this future; mark it retrieved
    if future.done() and not future.cancelled():
        future.exception()
