"""Event definitions for the browser event bus.

Every bus event is a frozen pydantic model with a literal ``event_type``;
``BrowserEvent`` is the closed union of all of them, so consumers can match
exhaustively on it.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from cdpwatch.cdp.protocol import SessionID, TargetID


class BaseBrowserEvent(BaseModel):
    """Common fields of every bus event."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Browser Lifecycle Events
# ============================================================================


class BrowserStartedEvent(BaseBrowserEvent):
    """Browser connection established and watchdogs attached."""

    event_type: Literal['BrowserStarted'] = 'BrowserStarted'
    cdp_url: str | None = None


class BrowserStoppedEvent(BaseBrowserEvent):
    """Browser has stopped/disconnected."""

    event_type: Literal['BrowserStopped'] = 'BrowserStopped'
    reason: str | None = None


# ============================================================================
# Navigation Events
# ============================================================================


class NavigationStartedEvent(BaseBrowserEvent):
    """Navigation started."""

    event_type: Literal['NavigationStarted'] = 'NavigationStarted'
    target_id: TargetID
    url: str


class NavigationCompleteEvent(BaseBrowserEvent):
    """A main frame committed a new URL."""

    event_type: Literal['NavigationComplete'] = 'NavigationComplete'
    target_id: TargetID
    url: str


class NavigationBlockedEvent(BaseBrowserEvent):
    """Navigation refused by the security policy."""

    event_type: Literal['NavigationBlocked'] = 'NavigationBlocked'
    url: str
    target_id: TargetID | None = None
    reason: str = 'not_allowed_by_policy'


# ============================================================================
# Tab Management Events
# ============================================================================


class TabCreatedEvent(BaseBrowserEvent):
    """A new tab was created."""

    event_type: Literal['TabCreated'] = 'TabCreated'
    target_id: TargetID
    url: str = 'about:blank'


class TabClosedEvent(BaseBrowserEvent):
    """A tab was closed."""

    event_type: Literal['TabClosed'] = 'TabClosed'
    target_id: TargetID


class TabSwitchedEvent(BaseBrowserEvent):
    """Focus moved to a different tab."""

    event_type: Literal['TabSwitched'] = 'TabSwitched'
    target_id: TargetID


# ============================================================================
# Failure Detection Events
# ============================================================================


class TargetCrashedEvent(BaseBrowserEvent):
    """A renderer crashed."""

    event_type: Literal['TargetCrashed'] = 'TargetCrashed'
    target_id: TargetID | None = None
    session_id: SessionID | None = None
    status: str | None = None


class NetworkTimeoutEvent(BaseBrowserEvent):
    """A network request got no completion within the crash timeout."""

    event_type: Literal['NetworkTimeout'] = 'NetworkTimeout'
    request_id: str
    url: str
    method: str = 'GET'
    elapsed: float
    session_id: SessionID | None = None


# ============================================================================
# File Download Events
# ============================================================================


class FileDownloadedEvent(BaseBrowserEvent):
    """A file has been downloaded."""

    event_type: Literal['FileDownloaded'] = 'FileDownloaded'
    guid: str
    url: str
    path: str
    file_name: str
    total_bytes: int = 0


class DownloadCanceledEvent(BaseBrowserEvent):
    """A download was canceled before completing."""

    event_type: Literal['DownloadCanceled'] = 'DownloadCanceled'
    guid: str
    url: str


# ============================================================================
# Error Events
# ============================================================================


class BrowserErrorEvent(BaseBrowserEvent):
    """An error occurred in the browser layer."""

    event_type: Literal['BrowserError'] = 'BrowserError'
    error_type: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


BrowserEvent = Annotated[
    Union[
        BrowserStartedEvent,
        BrowserStoppedEvent,
        NavigationStartedEvent,
        NavigationCompleteEvent,
        NavigationBlockedEvent,
        TabCreatedEvent,
        TabClosedEvent,
        TabSwitchedEvent,
        TargetCrashedEvent,
        NetworkTimeoutEvent,
        FileDownloadedEvent,
        DownloadCanceledEvent,
        BrowserErrorEvent,
    ],
    Field(discriminator='event_type'),
]

browser_event_adapter: TypeAdapter[BrowserEvent] = TypeAdapter(BrowserEvent)
