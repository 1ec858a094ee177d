"""Browser layer: session orchestration, event bus and watchdogs."""

from cdpwatch.browser.event_bus import EventBus, EventBusSubscription
from cdpwatch.browser.profile import BrowserProfile
from cdpwatch.browser.session import BrowserSession

__all__ = ["BrowserProfile", "BrowserSession", "EventBus", "EventBusSubscription"]
