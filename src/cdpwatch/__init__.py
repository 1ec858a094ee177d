"""cdpwatch - browser automation core over the Chrome DevTools Protocol."""

__version__ = "0.1.0"

from cdpwatch.browser.event_bus import EventBus
from cdpwatch.browser.profile import BrowserProfile
from cdpwatch.browser.session import BrowserSession
from cdpwatch.browser.watchdogs import (
    BaseWatchdog,
    CrashWatchdog,
    DownloadsWatchdog,
    SecurityPolicy,
    SecurityWatchdog,
    WatchdogManager,
)
from cdpwatch.cdp import CDPClient, CDPSession

# Browser alias for a shorter public API
Browser = BrowserSession

__all__ = [
    "BaseWatchdog",
    "Browser",
    "BrowserProfile",
    "BrowserSession",
    "CDPClient",
    "CDPSession",
    "CrashWatchdog",
    "DownloadsWatchdog",
    "EventBus",
    "SecurityPolicy",
    "SecurityWatchdog",
    "WatchdogManager",
]
