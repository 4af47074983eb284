"""JanD IPC wire protocol.

Defines the frames exchanged with the daemon:
- Commands: client → daemon ``{"Type", "Data"}`` documents, no identifiers
- Responses: JSON values or bare text tokens, classified on arrival
- Events: ``{"Event": <category>, ...}`` notifications gated by a bitmask
"""

from .classifier import (
    ERROR_PREFIX,
    ClassifiedResponse,
    ResponseKind,
    classify_response,
    split_payloads,
)
from .commands import Command, CommandType, parse_command
from .events import (
    DaemonEvent,
    EventCategory,
    LogEvent,
    ProcessAddedEvent,
    ProcessDeletedEvent,
    ProcessRenamedEvent,
    ProcessStartedEvent,
    ProcessStoppedEvent,
    is_event_frame,
    parse_event,
)
from .types import DaemonConfig, DaemonStatus, NewProcess, ProcessInfo, RuntimeProcessInfo

__all__ = [
    # Commands
    "Command",
    "CommandType",
    "parse_command",
    # Responses
    "ERROR_PREFIX",
    "ClassifiedResponse",
    "ResponseKind",
    "classify_response",
    "split_payloads",
    # Events
    "DaemonEvent",
    "EventCategory",
    "LogEvent",
    "ProcessAddedEvent",
    "ProcessDeletedEvent",
    "ProcessRenamedEvent",
    "ProcessStartedEvent",
    "ProcessStoppedEvent",
    "is_event_frame",
    "parse_event",
    # Payloads
    "DaemonConfig",
    "DaemonStatus",
    "NewProcess",
    "ProcessInfo",
    "RuntimeProcessInfo",
]
