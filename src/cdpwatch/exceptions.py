"""Exceptions raised by the CDP transport, sessions, bus and watchdogs."""


class CDPError(Exception):
    """Base exception for all CDP communication errors."""
    pass


class CDPConnectionError(CDPError):
    """The connection to the browser is unreachable or gone."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.message = message
        self.url = url


class CDPConnectError(CDPConnectionError):
    """Raised when the DevTools endpoint cannot be reached."""
    pass


class CDPConnectionClosedError(CDPConnectionError):
    """Raised for every pending and future request once the connection closed."""

    def __init__(self, message: str = 'Connection closed', url: str | None = None):
        super().__init__(message, url)


class CDPProtocolError(CDPError):
    """The browser answered a command with an error response."""

    def __init__(
        self,
        message: str,
        code: int = -32000,
        data: object | None = None,
        method: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data
        self.method = method

    def __str__(self) -> str:
        if self.method:
            return f"[{self.code}] {self.method}: {self.message}"
        return f"[{self.code}] {self.message}"


class CDPTimeoutError(CDPError):
    """A command did not get its response within the requested timeout."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f'{method} timed out after {timeout}s')
        self.method = method
        self.timeout = timeout


class CDPAttachError(CDPError):
    """The browser rejected attaching a session to a target."""

    def __init__(self, message: str, target_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.target_id = target_id


class CDPSessionDetachedError(CDPError):
    """A command was issued on a session that has already been detached."""

    def __init__(self, session_id: str, target_id: str | None = None):
        super().__init__(f'Session {session_id} for target {target_id} is detached')
        self.session_id = session_id
        self.target_id = target_id


class WatchdogError(Exception):
    """Base exception for watchdog lifecycle errors."""
    pass


class WatchdogAttachError(WatchdogError):
    """A watchdog failed to attach to the transport."""

    def __init__(self, watchdog_name: str, error: BaseException):
        super().__init__(f'{watchdog_name} failed to attach: {type(error).__name__}: {error}')
        self.watchdog_name = watchdog_name
        self.error = error


class WatchdogDetachError(WatchdogError):
    """One or more watchdogs failed to detach cleanly."""

    def __init__(self, failures: dict[str, BaseException]):
        names = ', '.join(failures)
        super().__init__(f'Watchdogs failed to detach: {names}')
        self.failures = failures


class NavigationBlockedError(Exception):
    """Navigation refused by the security policy."""

    def __init__(self, url: str, reason: str = 'not_allowed_by_policy'):
        super().__init__(f'Navigation to {url} blocked by security policy ({reason})')
        self.url = url
        self.reason = reason


class EventBusError(Exception):
    """Base exception for event bus delivery errors."""
    pass


class EventBusLaggedError(EventBusError):
    """The subscriber fell behind and events were dropped from its queue."""

    def __init__(self, skipped: int):
        super().__init__(f'Subscriber lagged behind, {skipped} events skipped')
        self.skipped = skipped


class EventBusClosedError(EventBusError):
    """The subscription or the bus has been closed."""
    pass
