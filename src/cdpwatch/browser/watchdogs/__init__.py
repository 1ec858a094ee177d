"""Browser watchdogs for event-driven browser monitoring."""

from cdpwatch.browser.watchdogs.base import BaseWatchdog, WatchdogManager
from cdpwatch.browser.watchdogs.crash_watchdog import CrashWatchdog, RequestTracker
from cdpwatch.browser.watchdogs.downloads_watchdog import DownloadRecord, DownloadState, DownloadsWatchdog
from cdpwatch.browser.watchdogs.security_watchdog import SecurityPolicy, SecurityWatchdog

__all__ = [
    "BaseWatchdog",
    "CrashWatchdog",
    "DownloadRecord",
    "DownloadState",
    "DownloadsWatchdog",
    "RequestTracker",
    "SecurityPolicy",
    "SecurityWatchdog",
    "WatchdogManager",
]
