"""JanD IPC client.

Connects to the daemon's pipe and exposes each daemon capability as a
coroutine that sends one command and decodes one reply.

Usage:
    async with create_client() as client:
        status = await client.get_daemon_status()
        for proc in await client.get_runtime_process_list():
            print(proc.name, proc.running)

        client.on(EventCategory.PROCSTART, lambda e: print("started", e.process))
        await client.subscribe([EventCategory.PROCSTART])

        # Testing
        client = create_test_client()
        await client.connect()
        client.command_connection.set_response("status", '{"Processes": 0, ...}')
"""

from __future__ import annotations

import dataclasses
import logging
import re
import warnings
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any, TypeVar, cast

from pydantic import BaseModel, ValidationError

from .address import resolve_address
from .config import ClientConfig
from .correlator import DEFAULT, BaseCorrelator, Expectation, PendingRequest, create_correlator
from .event_channel import EventCallback, EventChannel
from .exceptions import (
    ConnectionClosedError,
    InvalidPropertyError,
    JandConnectionError,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
)
from .protocol.classifier import classify_response
from .protocol.commands import Command, CommandType
from .protocol.events import DaemonEvent, EventCategory, is_event_frame
from .protocol.types import DaemonConfig, DaemonStatus, NewProcess, RuntimeProcessInfo
from .transport import (
    BaseConnection,
    ConnectionFactory,
    ConnectionRole,
    MockConnection,
    open_stream_connection,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

INVALID_PROCESS = "ERR:invalid-process"

# Acknowledgement of subscribe-* commands on the event connection
ACK_PATTERN = re.compile(r"^(done|ERR:.*)$")

# Expected reply shapes, per operation
EXPECT_PROCESS_LIST = Expectation.json("Name", "Running", "Stopped", is_array=True, allow_empty_array=True)
EXPECT_STATUS = Expectation.json("Processes", "NotSaved")
EXPECT_PROCESS_INFO = Expectation.json(
    "Name",
    "Filename",
    "Arguments",
    "WorkingDirectory",
    "AutoRestart",
    "Enabled",
    pattern=rf"^{INVALID_PROCESS}",
)
EXPECT_CONFIG = Expectation.json("LogIpc", "FormatConfig")
EXPECT_DONE = Expectation.text(r"^done$")
EXPECT_DONE_OR_ERROR = Expectation.text(r"^(done|ERR:.+)$")
EXPECT_ENABLED = Expectation.text(r"^(True|False)$")
EXPECT_PROPERTY_SET = Expectation.text(r"^(done|Invalid.*)$")
EXPECT_STOPPED = Expectation.text(r"^(killed|already-stopped)$")
EXPECT_ADDED = Expectation.text(r"^(added|ERR:.+)$")
EXPECT_CONFIG_SET = Expectation.text(r"^(done|Option.+)$")


class JandIpcClient:
    """Client for one JanD daemon.

    The client owns its connections exclusively. Requests on the command
    connection are answered strictly in order, one in flight at a time;
    events arrive independently on a second connection.

    Args:
        name: Pipe name or absolute socket path (overrides ``config.name``).
        config: Client configuration (defaults to :class:`ClientConfig`).
        connection_factory: Builds connections; swap in for testing.
    """

    def __init__(
        self,
        name: str | None = None,
        *,
        config: ClientConfig | None = None,
        connection_factory: ConnectionFactory | None = None,
    ) -> None:
        config = config or ClientConfig()
        if name is not None:
            config = dataclasses.replace(config, name=name)
        self.config = config
        self._connection_factory = connection_factory or open_stream_connection
        self._command: BaseConnection | None = None
        self._event_conn: BaseConnection | None = None
        self._events = EventChannel()
        self._correlator: BaseCorrelator = create_correlator(
            config.correlation, self._send_command, config.timeout, self._on_stall
        )

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def address(self) -> str:
        """Resolved socket / pipe path."""
        return resolve_address(self.config.name)

    @property
    def connected(self) -> bool:
        """Check if the command connection is open."""
        return self._command is not None and self._command.is_connected

    @property
    def command_connection(self) -> BaseConnection | None:
        return self._command

    @property
    def event_connection(self) -> BaseConnection | None:
        return self._event_conn

    @property
    def correlator(self) -> BaseCorrelator:
        return self._correlator

    async def connect(self) -> None:
        """Open the command connection (and the event connection if enabled).

        Raises:
            JandConnectionError: If the daemon endpoint is unreachable.
        """
        if self.connected:
            return

        address = self.address
        command = self._open_connection(address, ConnectionRole.COMMAND)
        await command.open(self._on_command_payload, self._on_connection_closed)
        self._command = command

        if self.config.events:
            event_conn = self._open_connection(address, ConnectionRole.EVENTS)
            try:
                await event_conn.open(self._on_event_payload, self._on_connection_closed)
            except JandConnectionError:
                await command.close()
                self._command = None
                raise
            self._event_conn = event_conn

        logger.info(f"Connected to daemon at {address}")

    async def close(self) -> None:
        """Close all connections, failing anything still pending."""
        await self._teardown(ConnectionClosedError("Client closed"))

    async def _teardown(self, error: ConnectionClosedError) -> None:
        self._correlator.cancel_all(error)
        self._events.cancel_waiters(error)
        self._events.cancel_listeners()

        connections = (self._event_conn, self._command)
        self._event_conn = None
        self._command = None
        for connection in connections:
            if connection is not None:
                await connection.close()

    async def __aenter__(self) -> JandIpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _open_connection(self, address: str, role: ConnectionRole) -> BaseConnection:
        connection = self._connection_factory(address, role)
        connection.read_size = self.config.read_size
        return connection

    def _on_connection_closed(self, connection: BaseConnection, error: BaseException | None) -> None:
        closed = ConnectionClosedError(f"Daemon closed the {connection.role.value} connection")
        closed.__cause__ = error
        if connection is self._command:
            self._correlator.cancel_all(closed)
        self._events.cancel_waiters(closed)

    async def _on_stall(self, request: PendingRequest) -> None:
        """A sent request timed out: its reply would be handed to the next request."""
        if self._command is None:
            return
        logger.warning(f"No reply to {request.tag!r}; closing connections to {self.address}")
        await self._teardown(ConnectionClosedError(f"Connection reset after {request.tag!r} went unanswered"))

    def _require_connected(self) -> None:
        if not self.connected:
            raise NotConnectedError("Not connected to daemon; call connect() first")

    # -------------------------------------------------------------------------
    # Inbound routing
    # -------------------------------------------------------------------------

    async def _on_command_payload(self, payload: str) -> None:
        response = classify_response(payload)
        if response.is_json and is_event_frame(response.value):
            # Single-connection daemons push events on the command pipe
            await self._events.dispatch_event(response.value)
            return
        self._correlator.feed(response)

    async def _on_event_payload(self, payload: str) -> None:
        await self._events.dispatch(classify_response(payload))

    def _send_command(self, command: Command) -> None:
        if self._command is None:
            raise NotConnectedError("Not connected to daemon")
        self._command.write(command)

    async def _request(
        self,
        command: Command,
        expectation: Expectation | None = None,
        timeout: float | None | object = DEFAULT,
    ) -> Any:
        self._require_connected()
        return await self._correlator.request(command, expectation, timeout)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @property
    def subscribed_mask(self) -> EventCategory:
        """Categories subscribed so far (only ever grows)."""
        return self._events.mask

    def on(self, category: EventCategory | str, callback: EventCallback) -> Callable[[], None]:
        """Register a listener for a category (or ``"*"``); returns an unsubscribe function.

        Listeners only fire for categories that are also subscribed.
        """
        return self._events.on(category, callback)

    def events(self) -> AsyncIterator[DaemonEvent]:
        """Async iterator over every dispatched event."""
        return self._events.stream()

    async def wait_for_event(
        self,
        match: EventCategory | str | re.Pattern[str],
        timeout: float | None | object = DEFAULT,
    ) -> Any:
        """Wait for the next event of a category, or the next text matching a pattern.

        A string naming a category (``"procstart"``) waits for that category,
        any other string is a pattern. *timeout* defaults to ``config.timeout``.
        """
        limit = self.config.timeout if timeout is DEFAULT else cast("float | None", timeout)
        waiter = self._events.expect(match)
        try:
            return await self._events.wait(waiter, limit)
        except TimeoutError:
            raise RequestTimeoutError(f"No event matching {match!r} within {limit}s") from None

    async def subscribe(self, categories: Iterable[EventCategory | str]) -> EventCategory:
        """Subscribe to event categories.

        The requested bits are OR-ed into the existing mask, and the full
        mask is sent to the daemon.

        Returns:
            The effective mask after subscribing.
        """
        self._require_connected()
        mask = self._events.add_categories(categories)
        await self._acknowledged(Command.subscribe_events(mask))
        return mask

    async def subscribe_log_event(self, process: str) -> None:
        """Subscribe to output of one process (``outlog`` / ``errlog`` events)."""
        self._require_connected()
        await self._acknowledged(Command.create(CommandType.SUBSCRIBE_LOG_EVENT, process))

    async def subscribe_log_events(self, processes: Iterable[str]) -> None:
        """Subscribe to output of several processes."""
        for process in processes:
            await self.subscribe_log_event(process)

    async def subscribe_out_log_event(self, process: str) -> None:
        """Subscribe to stdout of a process.

        Deprecated: use :meth:`subscribe_log_event`.
        """
        warnings.warn(
            "subscribe_out_log_event is deprecated; use subscribe_log_event",
            DeprecationWarning,
            stacklevel=2,
        )
        self._require_connected()
        await self._acknowledged(Command.create(CommandType.SUBSCRIBE_OUTLOG_EVENT, process))

    async def subscribe_err_log_event(self, process: str) -> None:
        """Subscribe to stderr of a process.

        Deprecated: use :meth:`subscribe_log_event`.
        """
        warnings.warn(
            "subscribe_err_log_event is deprecated; use subscribe_log_event",
            DeprecationWarning,
            stacklevel=2,
        )
        self._require_connected()
        await self._acknowledged(Command.create(CommandType.SUBSCRIBE_ERRLOG_EVENT, process))

    async def _acknowledged(self, command: Command) -> None:
        """Send a subscribe-* command and wait for its ``done``."""
        if self._event_conn is None:
            reply = await self._request(command, EXPECT_DONE_OR_ERROR)
            _expect_token(command, reply, "done")
            return

        if not self._event_conn.is_connected:
            raise NotConnectedError("Event connection is not open")

        waiter = self._events.expect(ACK_PATTERN)
        try:
            self._event_conn.write(command)
        except Exception:
            self._events.discard(waiter)
            raise

        try:
            await self._events.wait(waiter, self.config.timeout)
        except TimeoutError:
            raise RequestTimeoutError(
                f"No acknowledgement of {command.type!r} within {self.config.timeout}s"
            ) from None

    # -------------------------------------------------------------------------
    # Daemon operations
    # -------------------------------------------------------------------------

    async def get_runtime_process_list(self) -> list[RuntimeProcessInfo]:
        """List all processes with their runtime state."""
        command = Command.create(CommandType.GET_PROCESSES)
        reply = await self._request(command, EXPECT_PROCESS_LIST)
        if not isinstance(reply, list):
            raise ProtocolError(f"Expected a process list from {command.type!r}", str(reply))
        return [_as_model(command, item, RuntimeProcessInfo) for item in reply]

    async def get_daemon_status(self) -> DaemonStatus:
        """Get daemon status (process count, unsaved changes, directory, version)."""
        command = Command.create(CommandType.STATUS)
        return _as_model(command, await self._request(command, EXPECT_STATUS), DaemonStatus)

    async def rename_process(self, old_name: str, new_name: str) -> None:
        command = Command.rename_process(old_name, new_name)
        _expect_token(command, await self._request(command, EXPECT_DONE_OR_ERROR), "done")

    async def send_process_stdin_line(self, process: str, text: str) -> None:
        """Send a line to the target process's stdin."""
        command = Command.send_process_stdin_line(process, text)
        _expect_token(command, await self._request(command, EXPECT_DONE), "done")

    async def exit(self) -> None:
        """Tell the daemon to exit, then close the client.

        The daemon does not reply; the request completes once written.
        """
        await self._request(Command.create(CommandType.EXIT), Expectation.no_reply())
        await self.close()

    async def set_enabled(self, process: str, enabled: bool) -> bool:
        """Enable or disable a process.

        Returns:
            The enabled state reported back by the daemon.
        """
        command = Command.set_enabled(process, enabled)
        reply = _expect_token(command, await self._request(command, EXPECT_ENABLED), "True", "False")
        return reply == "True"

    async def set_process_property(self, process: str, property_name: str, value: str) -> None:
        """Set an arbitrary process property.

        Raises:
            InvalidPropertyError: The daemon does not know *property_name*.
        """
        command = Command.set_process_property(process, property_name, value)
        reply = await self._request(command, EXPECT_PROPERTY_SET)
        if isinstance(reply, str) and reply.startswith("Invalid"):
            raise InvalidPropertyError(property_name, reply)
        _expect_token(command, reply, "done")

    async def get_process_info(self, process: str) -> RuntimeProcessInfo | None:
        """Get a process's info, or None if the daemon does not know it."""
        command = Command.create(CommandType.GET_PROCESS_INFO, process)
        try:
            reply = await self._request(command, EXPECT_PROCESS_INFO)
        except ProtocolError as e:
            if INVALID_PROCESS in e.token:
                return None
            raise
        return _as_model(command, reply, RuntimeProcessInfo)

    async def stop_process(self, process: str) -> bool:
        """Stop a process.

        Returns:
            True if the process was running, False if it was already stopped.
        """
        command = Command.create(CommandType.STOP_PROCESS, process)
        reply = _expect_token(
            command, await self._request(command, EXPECT_STOPPED), "killed", "already-stopped"
        )
        return reply == "killed"

    async def restart_process(self, process: str) -> None:
        command = Command.create(CommandType.RESTART_PROCESS, process)
        _expect_token(command, await self._request(command, EXPECT_DONE), "done")

    async def new_process(self, process: NewProcess | dict[str, Any]) -> None:
        """Create a process and enable it, without starting it."""
        if not isinstance(process, NewProcess):
            process = NewProcess.model_validate(process)
        command = Command.create(CommandType.NEW_PROCESS, process)
        _expect_token(command, await self._request(command, EXPECT_ADDED), "added")

    async def delete_process(self, process: str) -> None:
        """Kill a process and delete it."""
        command = Command.create(CommandType.DELETE_PROCESS, process)
        _expect_token(command, await self._request(command, EXPECT_DONE), "done")

    async def save_config(self) -> None:
        command = Command.create(CommandType.SAVE_CONFIG)
        _expect_token(command, await self._request(command, EXPECT_DONE), "done")

    async def get_config(self) -> DaemonConfig:
        command = Command.create(CommandType.GET_CONFIG)
        return _as_model(command, await self._request(command, EXPECT_CONFIG), DaemonConfig)

    async def set_config(self, option: str, value: str) -> None:
        """Set a daemon config option.

        Raises:
            ProtocolError: The daemon rejected the option (``Option ...`` reply).
        """
        command = Command.set_config(option, value)
        reply = await self._request(command, EXPECT_CONFIG_SET)
        if reply != "done":
            raise ProtocolError(f"set-config {option!r} rejected: {reply}", str(reply))

    async def flush_all_logs(self) -> None:
        command = Command.create(CommandType.FLUSH_ALL_LOGS)
        _expect_token(command, await self._request(command, EXPECT_DONE), "done")


def _expect_token(command: Command, reply: Any, *tokens: str) -> str:
    """Return *reply* if it is one of *tokens*, else raise ProtocolError."""
    if isinstance(reply, str) and reply in tokens:
        return reply
    raise ProtocolError(f"Unexpected reply to {command.type!r}: {reply!r}", str(reply))


def _as_model(command: Command, reply: Any, model: type[M]) -> M:
    """Validate a JSON reply into *model*, raising ProtocolError if it does not fit."""
    if not isinstance(reply, dict):
        raise ProtocolError(f"Expected a JSON object from {command.type!r}", str(reply))
    try:
        return model.model_validate(reply)
    except ValidationError as e:
        raise ProtocolError(f"Malformed reply to {command.type!r}: {e}", str(reply)) from e


# Factory functions


def create_client(name: str | None = None, **options: Any) -> JandIpcClient:
    """Create a client configured from the environment.

    Args:
        name: Pipe name or socket path (default: ``JAND_PIPE_NAME`` or ``jand``)
        **options: Any :class:`ClientConfig` field, overriding the environment

    Returns:
        JandIpcClient using real socket / pipe connections
    """
    return JandIpcClient(config=ClientConfig.from_env(name=name, **options))


def create_test_client(name: str = "jand", **options: Any) -> JandIpcClient:
    """Create a client backed by :class:`MockConnection` objects.

    After ``connect()``, ``client.command_connection`` and
    ``client.event_connection`` are the mocks.
    """

    def factory(address: str, role: ConnectionRole) -> BaseConnection:
        return MockConnection(address, role)

    return JandIpcClient(
        config=ClientConfig(name=name, **options),
        connection_factory=factory,
    )
