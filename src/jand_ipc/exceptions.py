"""Exception hierarchy for the JanD IPC client.

All client exceptions inherit from :class:`JandIpcError` so callers can
catch a single base class when they do not care about the failure mode.
Connection-related errors also inherit from :class:`ConnectionError`, and
timeouts from :class:`TimeoutError`, so generic handlers keep working.
"""

from __future__ import annotations


class JandIpcError(Exception):
    """Base exception for all JanD IPC operations."""


class ProtocolError(JandIpcError):
    """The daemon answered with an error sentinel or an unexpected token.

    Attributes:
        token: The raw payload received from the daemon (e.g. ``ERR:invalid-process``).
    """

    def __init__(self, message: str, token: str | None = None) -> None:
        super().__init__(message)
        self.token = token if token is not None else message


class InvalidPropertyError(ProtocolError):
    """Raised when ``set-process-property`` is rejected with an ``Invalid*`` token."""

    def __init__(self, property_name: str, token: str) -> None:
        super().__init__(f"Property {property_name} is invalid.", token)
        self.property = property_name


class NotConnectedError(JandIpcError, ConnectionError):
    """An operation was invoked before the client connected."""


class JandConnectionError(JandIpcError, ConnectionError):
    """The daemon endpoint could not be reached."""


class ConnectionClosedError(JandIpcError, ConnectionError):
    """The connection closed while a request or waiter was still pending."""


class RequestTimeoutError(JandIpcError, TimeoutError):
    """No matching reply arrived within the configured timeout.

    Distinct from the built-in :class:`TimeoutError` so callers can tell
    daemon timeouts apart from OS-level ones, while ``except TimeoutError``
    still catches it.
    """
