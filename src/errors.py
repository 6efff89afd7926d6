"""Exception hierarchy for the live monitor.

Only StartupConfigError is allowed to end the process. Everything else is
raised close to its source and recovered at a component boundary.
"""

from typing import Optional


class MonitorError(Exception):
    """Base class for monitor errors."""


class StartupConfigError(MonitorError):
    """Missing or invalid configuration, or an empty roster."""


class ExtractionError(MonitorError):
    """The embedded application state is missing or cannot be parsed."""


class NavigationError(MonitorError):
    """A page could not be loaded within its timeout."""

    def __init__(self, message: str, *, url: str = "") -> None:
        self.url = url
        super().__init__(message)


class TransportError(MonitorError):
    """The notification transport rejected or failed to deliver a message."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(MonitorError):
    """Reading or writing the state file failed."""
