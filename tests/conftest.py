"""Pytest configuration and fixtures for the cdpwatch test suite.

The transport is driven through an in-memory WebSocket so the tests need no
browser:

    FakeWebSocket: Records sent frames and replays queued inbound frames.
    FakeBrowser: A FakeWebSocket that answers commands like a small browser
        with a fixed set of page targets. Handlers can be overridden per test.

Shared helpers (``wait_for``, ``drain``) are importable as ``from conftest
import ...``.
"""

import asyncio
import itertools
import json
from collections.abc import Callable
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedOK

from cdpwatch.cdp.client import CDPClient

FAKE_WS_URL = "ws://127.0.0.1:9222/devtools/browser/fake"


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


class FakeWebSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        message = json.loads(data)
        self.sent.append(message)
        self.handle_sent(message)

    def handle_sent(self, message: dict[str, Any]) -> None:
        """Hook for subclasses reacting to outgoing commands."""

    def feed(self, message: dict[str, Any] | str) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def feed_response(self, request_id: int, result: dict | None = None, error: dict | None = None) -> None:
        message: dict[str, Any] = {"id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result or {}
        self.feed(message)

    def feed_event(self, method: str, params: dict | None = None, session_id: str | None = None) -> None:
        message: dict[str, Any] = {"method": method, "params": params or {}}
        if session_id is not None:
            message["sessionId"] = session_id
        self.feed(message)

    def disconnect(self) -> None:
        """Simulate the browser dropping the connection."""
        self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def sent_methods(self) -> list[str]:
        return [message["method"] for message in self.sent]

    def last_sent(self, method: str) -> dict[str, Any]:
        return next(message for message in reversed(self.sent) if message["method"] == method)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            self.closed = True
            raise StopAsyncIteration
        return item


class BrowserCommandError(Exception):
    """Raised by a FakeBrowser handler to answer with an error response."""

    def __init__(self, message: str, code: int = -32000):
        super().__init__(message)
        self.message = message
        self.code = code


Handler = Callable[[dict[str, Any], str | None], dict[str, Any]]


class FakeBrowser(FakeWebSocket):
    """FakeWebSocket answering CDP commands from a table of handlers.

    Starts with two page targets, ``page-1`` and ``page-2``. Unknown methods
    are answered with a ``-32601`` error like a real browser.
    """

    def __init__(self):
        super().__init__()
        self.targets: dict[str, dict[str, Any]] = {
            "page-1": {"targetId": "page-1", "type": "page", "title": "One", "url": "https://one.test/", "attached": False},
            "page-2": {"targetId": "page-2", "type": "page", "title": "Two", "url": "https://two.test/", "attached": False},
        }
        self._new_target_ids = itertools.count(3)
        self.handlers: dict[str, Handler] = {
            "Target.setDiscoverTargets": lambda params, session_id: {},
            "Target.attachToTarget": self._attach_to_target,
            "Target.detachFromTarget": lambda params, session_id: {},
            "Target.getTargetInfo": self._get_target_info,
            "Target.getTargets": lambda params, session_id: {"targetInfos": list(self.targets.values())},
            "Target.createTarget": self._create_target,
            "Target.closeTarget": self._close_target,
            "Target.activateTarget": lambda params, session_id: {},
            "Page.navigate": lambda params, session_id: {"frameId": "main-frame", "loaderId": "loader"},
            "Runtime.evaluate": lambda params, session_id: {"result": {"type": "number", "value": 42}},
            "Browser.setDownloadBehavior": lambda params, session_id: {},
        }
        for domain in ("Page", "DOM", "Runtime", "Network", "Inspector"):
            self.handlers[f"{domain}.enable"] = lambda params, session_id: {}

    def handle_sent(self, message: dict[str, Any]) -> None:
        handler = self.handlers.get(message["method"])
        response: dict[str, Any] = {"id": message["id"]}
        if "sessionId" in message:
            response["sessionId"] = message["sessionId"]
        if handler is None:
            response["error"] = {"code": -32601, "message": f"'{message['method']}' wasn't found"}
        else:
            try:
                response["result"] = handler(message.get("params", {}), message.get("sessionId"))
            except BrowserCommandError as e:
                response["error"] = {"code": e.code, "message": e.message}
        self.feed(response)

    def _attach_to_target(self, params: dict[str, Any], session_id: str | None) -> dict[str, Any]:
        target_id = params["targetId"]
        if target_id not in self.targets:
            raise BrowserCommandError(f"No target with given id found: {target_id}")
        return {"sessionId": f"session-{target_id}"}

    def _get_target_info(self, params: dict[str, Any], session_id: str | None) -> dict[str, Any]:
        target_id = params["targetId"]
        if target_id not in self.targets:
            raise BrowserCommandError(f"No target with given id found: {target_id}")
        return {"targetInfo": self.targets[target_id]}

    def _create_target(self, params: dict[str, Any], session_id: str | None) -> dict[str, Any]:
        target_id = f"page-{next(self._new_target_ids)}"
        self.targets[target_id] = {
            "targetId": target_id,
            "type": "page",
            "title": "",
            "url": params.get("url", "about:blank"),
            "attached": False,
        }
        return {"targetId": target_id}

    def _close_target(self, params: dict[str, Any], session_id: str | None) -> dict[str, Any]:
        self.targets.pop(params["targetId"], None)
        return {"success": True}


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met within timeout")
        await asyncio.sleep(0.005)


async def drain(subscription) -> list:
    """Receive every event currently queued on a bus subscription."""
    events = []
    while subscription.pending:
        events.append(await subscription.recv())
    return events


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_ws():
    return FakeWebSocket()


@pytest.fixture()
async def cdp_client(fake_ws):
    """CDPClient reading from a bare FakeWebSocket (responses fed by hand)."""
    client = CDPClient(fake_ws, url=FAKE_WS_URL)
    client.start()
    yield client
    await client.close()


@pytest.fixture()
def fake_browser():
    return FakeBrowser()


@pytest.fixture()
async def browser_client(fake_browser):
    """CDPClient connected to an auto-responding FakeBrowser."""
    client = CDPClient(fake_browser, url=FAKE_WS_URL)
    client.start()
    yield client
    await client.close()
