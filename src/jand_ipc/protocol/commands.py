"""Command definitions for the protocol layer.

Commands are requests from the client to the daemon. Unlike most RPC
protocols, a command carries no identifier: the daemon answers commands
strictly in the order received, and the client pairs replies by position.

Wire format (one JSON document per write, no delimiter):

    {"Type": "rename-process", "Data": "old:new"}

``Data`` is always a string. Structured payloads are JSON-encoded into it,
and it is omitted entirely for commands that take no argument.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CommandType(str, Enum):
    """All command types understood by the daemon."""

    # Daemon
    STATUS = "status"
    EXIT = "exit"

    # Processes
    GET_PROCESSES = "get-processes"
    GET_PROCESS_INFO = "get-process-info"
    NEW_PROCESS = "new-process"
    DELETE_PROCESS = "delete-process"
    RENAME_PROCESS = "rename-process"
    STOP_PROCESS = "stop-process"
    RESTART_PROCESS = "restart-process"
    SET_ENABLED = "set-enabled"
    SET_PROCESS_PROPERTY = "set-process-property"
    SEND_PROCESS_STDIN_LINE = "send-process-stdin-line"

    # Configuration
    GET_CONFIG = "get-config"
    SET_CONFIG = "set-config"
    SAVE_CONFIG = "save-config"
    FLUSH_ALL_LOGS = "flush-all-logs"

    # Event subscriptions
    SUBSCRIBE_EVENTS = "subscribe-events"
    SUBSCRIBE_LOG_EVENT = "subscribe-log-event"
    SUBSCRIBE_OUTLOG_EVENT = "subscribe-outlog-event"
    SUBSCRIBE_ERRLOG_EVENT = "subscribe-errlog-event"


def encode_data(data: Any) -> str | None:
    """Encode a command argument into the string ``Data`` field.

    Strings pass through untouched, pydantic models are dumped by alias,
    and anything else is JSON-encoded. None means "no Data field".
    """
    if data is None:
        return None
    if isinstance(data, str):
        return data
    if isinstance(data, BaseModel):
        return data.model_dump_json(by_alias=True, exclude_none=True)
    return json.dumps(data, separators=(",", ":"))


class Command(BaseModel):
    """A command from client to daemon.

    Example:
        {
            "Type": "set-config",
            "Data": "FormatConfig:true"
        }
    """

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(alias="Type")
    data: str | None = Field(default=None, alias="Data")

    def to_wire(self) -> str:
        """Serialize to the exact JSON document written to the pipe."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def create(cls, cmd: str | CommandType, data: Any = None) -> Command:
        """Factory method for creating commands."""
        return cls(
            type=cmd.value if isinstance(cmd, CommandType) else cmd,
            data=encode_data(data),
        )

    # Convenience factories for commands with composite arguments

    @classmethod
    def rename_process(cls, old_name: str, new_name: str) -> Command:
        """Create a rename-process command."""
        return cls.create(CommandType.RENAME_PROCESS, f"{old_name}:{new_name}")

    @classmethod
    def send_process_stdin_line(cls, process: str, text: str) -> Command:
        """Create a send-process-stdin-line command."""
        return cls.create(CommandType.SEND_PROCESS_STDIN_LINE, f"{process}:{text}")

    @classmethod
    def set_enabled(cls, process: str, enabled: bool) -> Command:
        """Create a set-enabled command (``name:true`` / ``name:false``)."""
        return cls.create(CommandType.SET_ENABLED, f"{process}:{str(enabled).lower()}")

    @classmethod
    def set_process_property(cls, process: str, property_name: str, value: str) -> Command:
        """Create a set-process-property command."""
        return cls.create(
            CommandType.SET_PROCESS_PROPERTY,
            {"Process": process, "Property": property_name, "Data": value},
        )

    @classmethod
    def set_config(cls, option: str, value: str) -> Command:
        """Create a set-config command."""
        return cls.create(CommandType.SET_CONFIG, f"{option}:{value}")

    @classmethod
    def subscribe_events(cls, mask: int) -> Command:
        """Create a subscribe-events command carrying the full category mask."""
        return cls.create(CommandType.SUBSCRIBE_EVENTS, str(int(mask)))


def parse_command(raw: str | bytes) -> Command:
    """Parse a wire frame back into a :class:`Command`."""
    return Command.model_validate_json(raw)
