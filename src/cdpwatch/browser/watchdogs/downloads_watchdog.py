"""Downloads watchdog for monitoring and handling file downloads.

This module provides the DownloadsWatchdog which enables browser downloads
into a configured directory, follows every download through its lifecycle
and emits FileDownloadedEvent when one completes.

Classes:
    DownloadState: Lifecycle state of a download.
    DownloadRecord: Last known state of one download.
    DownloadsWatchdog: Monitors downloads and emits completion events.
"""

import logging
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, Field, PrivateAttr

from cdpwatch.browser.events import (
    BaseBrowserEvent,
    BrowserStartedEvent,
    BrowserStoppedEvent,
    DownloadCanceledEvent,
    FileDownloadedEvent,
)
from cdpwatch.browser.watchdogs.base import BaseWatchdog
from cdpwatch.cdp.client import CDPClient
from cdpwatch.cdp.protocol import SessionID
from cdpwatch.exceptions import CDPError

logger = logging.getLogger(__name__)


class DownloadState(str, Enum):
    STARTED = 'started'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELED = 'canceled'

    @property
    def is_terminal(self) -> bool:
        return self in (DownloadState.COMPLETED, DownloadState.CANCELED)


_TRANSITIONS: dict[DownloadState, set[DownloadState]] = {
    DownloadState.STARTED: {DownloadState.IN_PROGRESS},
    DownloadState.IN_PROGRESS: {DownloadState.IN_PROGRESS, DownloadState.COMPLETED, DownloadState.CANCELED},
    DownloadState.COMPLETED: set(),
    DownloadState.CANCELED: set(),
}

_PROGRESS_STATES = {
    'inProgress': DownloadState.IN_PROGRESS,
    'completed': DownloadState.COMPLETED,
    'canceled': DownloadState.CANCELED,
}


class DownloadRecord(BaseModel):
    """Last known state of one download, keyed by the browser's guid."""

    guid: str
    url: str
    suggested_filename: str
    destination: Path
    received_bytes: int = 0
    total_bytes: int = 0
    state: DownloadState = DownloadState.STARTED


class DownloadsWatchdog(BaseWatchdog):
    """Monitors downloads and handles file download events.

    Sets up CDP download behavior and listens for download events.
    Tracks download progress and emits FileDownloadedEvent on completion.

    Listens to:
        BrowserStartedEvent: Makes sure downloads_path exists.
        BrowserStoppedEvent: Logged.

    Emits:
        FileDownloadedEvent: When a file download completes.
        DownloadCanceledEvent: When a download is canceled.

    Note:
        Query methods keep returning the last known state after detach.
    """

    LISTENS_TO: ClassVar[list[type[BaseBrowserEvent]]] = [
        BrowserStartedEvent,
        BrowserStoppedEvent,
    ]

    EMITS: ClassVar[list[type[BaseBrowserEvent]]] = [
        FileDownloadedEvent,
        DownloadCanceledEvent,
    ]

    downloads_path: Path = Field(default_factory=lambda: Path.home() / 'Downloads' / 'cdpwatch')
    max_completed_downloads: int = Field(default=100, ge=1)

    _active_downloads: dict[str, DownloadRecord] = PrivateAttr(default_factory=dict)
    _completed_downloads: deque[DownloadRecord] = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        self._completed_downloads = deque(maxlen=self.max_completed_downloads)

    def active_downloads(self) -> list[DownloadRecord]:
        return [record.model_copy() for record in self._active_downloads.values()]

    def completed_downloads(self) -> list[DownloadRecord]:
        """Finished and canceled downloads, oldest first."""
        return [record.model_copy() for record in self._completed_downloads]

    def get_download(self, guid: str) -> DownloadRecord | None:
        record = self._active_downloads.get(guid)
        if record is None:
            record = next((r for r in self._completed_downloads if r.guid == guid), None)
        return record.model_copy() if record is not None else None

    async def on_attach(self, cdp_client: CDPClient) -> None:
        await super().on_attach(cdp_client)
        self._ensure_downloads_dir()

        try:
            await cdp_client.send(
                'Browser.setDownloadBehavior',
                {'behavior': 'allow', 'downloadPath': str(self.downloads_path), 'eventsEnabled': True},
            )
        except CDPError as e:
            logger.warning(f'[DownloadsWatchdog] Failed to set download behavior: {type(e).__name__}: {e}')

        # some browsers only report downloads through the Page domain
        for domain in ('Browser', 'Page'):
            self.subscribe_cdp(f'{domain}.downloadWillBegin', self._on_download_will_begin)
            self.subscribe_cdp(f'{domain}.downloadProgress', self._on_download_progress)
        logger.debug(f'[DownloadsWatchdog] Downloading to {self.downloads_path}')

    async def on_BrowserStartedEvent(self, event: BrowserStartedEvent) -> None:
        self._ensure_downloads_dir()

    async def on_BrowserStoppedEvent(self, event: BrowserStoppedEvent) -> None:
        logger.debug(
            f'[DownloadsWatchdog] Browser stopped with {len(self._active_downloads)} downloads in progress'
        )

    async def _on_download_will_begin(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        guid = params.get('guid')
        if not guid:
            return
        suggested_filename = params.get('suggestedFilename') or guid
        async with self._lock:
            if guid in self._active_downloads or any(r.guid == guid for r in self._completed_downloads):
                logger.debug(f'[DownloadsWatchdog] Ignoring repeated downloadWillBegin for {guid}')
                return
            self._active_downloads[guid] = DownloadRecord(
                guid=guid,
                url=params.get('url', ''),
                suggested_filename=suggested_filename,
                destination=self.downloads_path / suggested_filename,
            )
        logger.info(f'[DownloadsWatchdog] Download started: {suggested_filename}')

    async def _on_download_progress(self, params: dict[str, Any], session_id: SessionID | None) -> None:
        guid = params.get('guid')
        new_state = _PROGRESS_STATES.get(params.get('state', ''))
        if not guid or new_state is None:
            return

        async with self._lock:
            record = self._active_downloads.get(guid)
            if record is None:
                logger.debug(f'[DownloadsWatchdog] Ignoring progress for unknown or finished download {guid}')
                return

            if record.state == DownloadState.STARTED and new_state.is_terminal:
                record.state = DownloadState.IN_PROGRESS
            if new_state not in _TRANSITIONS[record.state]:
                logger.debug(f'[DownloadsWatchdog] Ignoring {record.state.value} -> {new_state.value} for {guid}')
                return

            record.state = new_state
            record.received_bytes = params.get('receivedBytes', record.received_bytes)
            record.total_bytes = params.get('totalBytes', record.total_bytes)
            if params.get('filePath'):
                record.destination = Path(params['filePath'])

            if new_state.is_terminal:
                del self._active_downloads[guid]
                self._completed_downloads.append(record)
            finished = record.model_copy()

        if finished.state == DownloadState.COMPLETED:
            logger.info(f'[DownloadsWatchdog] Download completed: {finished.destination}')
            self.emit(
                FileDownloadedEvent(
                    guid=finished.guid,
                    url=finished.url,
                    path=str(finished.destination),
                    file_name=finished.destination.name,
                    total_bytes=finished.total_bytes or finished.received_bytes,
                )
            )
        elif finished.state == DownloadState.CANCELED:
            logger.info(f'[DownloadsWatchdog] Download canceled: {finished.suggested_filename}')
            self.emit(DownloadCanceledEvent(guid=finished.guid, url=finished.url))

    def _ensure_downloads_dir(self) -> None:
        try:
            self.downloads_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f'[DownloadsWatchdog] Cannot create downloads directory {self.downloads_path}: {e}')
