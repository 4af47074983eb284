"""JanD IPC - client for the JanD process daemon.

Connects to the daemon's local pipe and provides:
- JandIpcClient: one coroutine per daemon operation
- Event subscriptions: bitmask-gated process and log notifications
- MockConnection: for testing without a running daemon
"""

from .address import DEFAULT_PIPE_NAME, resolve_address
from .client import JandIpcClient, create_client, create_test_client
from .config import ClientConfig, CorrelationMode
from .correlator import (
    BaseCorrelator,
    Expectation,
    FifoCorrelator,
    MatchingCorrelator,
    PendingRequest,
    RequestState,
)
from .event_channel import EventChannel
from .exceptions import (
    ConnectionClosedError,
    InvalidPropertyError,
    JandConnectionError,
    JandIpcError,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
)
from .protocol import (
    DaemonConfig,
    DaemonEvent,
    DaemonStatus,
    EventCategory,
    LogEvent,
    NewProcess,
    ProcessInfo,
    RuntimeProcessInfo,
)
from .transport import BaseConnection, ConnectionRole, MockConnection, StreamConnection, TransportState

__version__ = "0.1.0"

__all__ = [
    # Client
    "JandIpcClient",
    "create_client",
    "create_test_client",
    "ClientConfig",
    "CorrelationMode",
    "DEFAULT_PIPE_NAME",
    "resolve_address",
    # Correlation
    "BaseCorrelator",
    "FifoCorrelator",
    "MatchingCorrelator",
    "Expectation",
    "PendingRequest",
    "RequestState",
    # Events
    "EventChannel",
    "EventCategory",
    "DaemonEvent",
    "LogEvent",
    # Payloads
    "DaemonConfig",
    "DaemonStatus",
    "NewProcess",
    "ProcessInfo",
    "RuntimeProcessInfo",
    # Transport
    "BaseConnection",
    "ConnectionRole",
    "MockConnection",
    "StreamConnection",
    "TransportState",
    # Errors
    "JandIpcError",
    "ProtocolError",
    "InvalidPropertyError",
    "NotConnectedError",
    "JandConnectionError",
    "ConnectionClosedError",
    "RequestTimeoutError",
]
