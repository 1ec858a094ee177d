"""Chrome DevTools Protocol transport: one WebSocket, multiplexed sessions."""

from cdpwatch.cdp.client import CDPClient, CDPListener
from cdpwatch.cdp.protocol import CDPEvent, CDPRequest, CDPResponse, SessionID, TargetID, TargetInfo
from cdpwatch.cdp.session import CDPSession

__all__ = [
    "CDPClient",
    "CDPEvent",
    "CDPListener",
    "CDPRequest",
    "CDPResponse",
    "CDPSession",
    "SessionID",
    "TargetID",
    "TargetInfo",
]
