"""Byte-stream connections to the daemon.

Each connection wraps one stream (Unix socket or Windows named
pipe), runs a background reader, and hands every inbound payload to the
handler the client installs. Writes are synchronous: the daemon's frames
are tiny and ordering is enforced by the correlator, not by flow control.

Architecture:
- BaseConnection owns the state machine and the reader task
- StreamConnection implements it over asyncio streams
- MockConnection records writes and replays canned replies (for testing)

Wire format: one JSON document per write, no delimiter. Reads are assumed to
preserve message boundaries; coalesced JSON documents are split apart again
by :func:`~jand_ipc.protocol.classifier.split_payloads`.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum

from .exceptions import JandConnectionError, NotConnectedError
from .protocol.classifier import split_payloads
from .protocol.commands import Command, parse_command

logger = logging.getLogger(__name__)

ENCODING = "utf-8"

PayloadHandler = Callable[[str], Awaitable[None]]
CloseHandler = Callable[["BaseConnection", BaseException | None], None]


class TransportState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class ConnectionRole(str, Enum):
    """What a connection carries."""

    COMMAND = "command"
    EVENTS = "events"


class BaseConnection(ABC):
    """Base class for daemon connections.

    Provides:
    - State management
    - Background reader task
    - Payload splitting and handler dispatch
    - Close notification (so the client can fail pending requests)
    """

    def __init__(
        self,
        address: str,
        role: ConnectionRole = ConnectionRole.COMMAND,
        read_size: int = 65536,
    ) -> None:
        self.address = address
        self.role = role
        self.read_size = read_size
        self._state = TransportState.DISCONNECTED
        self._handler: PayloadHandler | None = None
        self._on_close: CloseHandler | None = None
        self._reader_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> TransportState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if the stream is open."""
        return self._state == TransportState.CONNECTED

    async def open(self, handler: PayloadHandler, on_close: CloseHandler | None = None) -> None:
        """Open the stream and start reading.

        Raises:
            JandConnectionError: If the endpoint cannot be reached.
        """
        if self._state == TransportState.CONNECTED:
            return

        self._handler = handler
        self._on_close = on_close
        self._state = TransportState.CONNECTING
        try:
            await self._do_open()
        except Exception as e:
            self._state = TransportState.DISCONNECTED
            raise JandConnectionError(f"Cannot connect to daemon at {self.address}: {e}") from e

        self._state = TransportState.CONNECTED
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.debug(f"{self.role.value} connection open ({self.address})")

    async def close(self) -> None:
        """Close the stream. Safe to call multiple times."""
        if self._state in (TransportState.DISCONNECTED, TransportState.CLOSED):
            return

        self._state = TransportState.CLOSED

        task = self._reader_task
        self._reader_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._do_close()
        logger.debug(f"{self.role.value} connection closed ({self.address})")

    def write(self, command: Command) -> None:
        """Write one frame.

        Raises:
            NotConnectedError: If the connection is not open.
        """
        if not self.is_connected:
            raise NotConnectedError(f"{self.role.value} connection is not open")
        frame = command.to_wire()
        logger.debug(f"Sent on {self.role.value}: {frame}")
        self._do_write(frame.encode(ENCODING))

    async def _deliver(self, chunk: str) -> None:
        """Split a chunk and hand each payload to the handler."""
        if self._handler is None:
            return
        for payload in split_payloads(chunk):
            logger.debug(f"Received on {self.role.value}: {payload[:200]}")
            try:
                await self._handler(payload)
            except Exception:
                logger.exception(f"Error handling payload on {self.role.value} connection")

    async def _read_loop(self) -> None:
        """Background task reading chunks until EOF."""
        error: BaseException | None = None
        try:
            async for chunk in self._receive_chunks():
                await self._deliver(chunk)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.error(f"Read loop error on {self.role.value} connection: {e}")
            error = e

        # EOF or read failure: the daemon went away
        if self._state == TransportState.CONNECTED:
            self._state = TransportState.DISCONNECTED
            with contextlib.suppress(Exception):
                await self._do_close()
            logger.info(f"Daemon closed the {self.role.value} connection")
            if self._on_close is not None:
                self._on_close(self, error)

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_open(self) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_close(self) -> None:
        """Implementation-specific disconnection logic."""
        ...

    @abstractmethod
    def _do_write(self, data: bytes) -> None:
        """Implementation-specific write logic."""
        ...

    @abstractmethod
    def _receive_chunks(self) -> AsyncIterator[str]:
        """Implementation-specific receive logic. Must be an async generator."""
        ...


class StreamConnection(BaseConnection):
    """Connection over an asyncio stream.

    POSIX: Unix-domain socket via ``asyncio.open_unix_connection``.
    Windows: named pipe via the proactor loop's ``create_pipe_connection``.
    """

    def __init__(
        self,
        address: str,
        role: ConnectionRole = ConnectionRole.COMMAND,
        read_size: int = 65536,
    ) -> None:
        super().__init__(address, role, read_size)
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def _do_open(self) -> None:
        if sys.platform == "win32":
            self._reader, self._writer = await self._open_windows_pipe()
        else:
            self._reader, self._writer = await asyncio.open_unix_connection(self.address)

    async def _open_windows_pipe(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        loop = asyncio.get_running_loop()
        connected: asyncio.Future[tuple[asyncio.StreamReader, asyncio.StreamWriter]] = (
            loop.create_future()
        )

        def client_connected_cb(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            connected.set_result((reader, writer))

        reader = asyncio.StreamReader()
        protocol = asyncio.StreamReaderProtocol(reader, client_connected_cb)
        # Only the proactor event loop implements pipe connections
        await loop.create_pipe_connection(lambda: protocol, self.address)  # type: ignore[attr-defined]
        return await connected

    async def _do_close(self) -> None:
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def _do_write(self, data: bytes) -> None:
        if self._writer is None:
            raise NotConnectedError(f"{self.role.value} stream not open")
        self._writer.write(data)

    async def _receive_chunks(self) -> AsyncIterator[str]:
        if self._reader is None:
            raise NotConnectedError(f"{self.role.value} stream not open")

        # Reads can split a multi-byte character; the decoder carries it over
        decoder = codecs.getincrementaldecoder(ENCODING)(errors="replace")
        while True:
            data = await self._reader.read(self.read_size)
            if not data:
                # EOF - daemon closed the pipe
                tail = decoder.decode(b"", final=True)
                if tail:
                    yield tail
                break
            text = decoder.decode(data)
            if text:
                yield text


class MockConnection(BaseConnection):
    """Mock connection for testing.

    Records written commands and replays canned replies. No actual I/O.

    Usage:
        conn = MockConnection("/tmp/CoreFxPipe_jand")
        conn.set_response("status", '{"Processes": 0, ...}')
        # ... open via a client, issue requests ...
        assert conn.recorded_commands[0].type == "status"

    Commands without a canned reply get none; push one manually with
    :meth:`inject` to control timing.
    """

    def __init__(
        self,
        address: str = "mock",
        role: ConnectionRole = ConnectionRole.COMMAND,
        read_size: int = 65536,
    ) -> None:
        super().__init__(address, role, read_size)
        self._responses: dict[str, list[str]] = {}
        self._recorded_commands: list[Command] = []
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()
        self.fail_open: Exception | None = None

    @property
    def recorded_commands(self) -> list[Command]:
        """Get all commands written to this connection."""
        return self._recorded_commands.copy()

    def set_response(self, command_type: str, *payloads: str) -> None:
        """Set canned reply payloads for a command type.

        Each payload is delivered as a separate read, in order.
        """
        self._responses[command_type] = list(payloads)

    async def inject(self, payload: str) -> None:
        """Deliver *payload* as if it had been read from the daemon.

        Bypasses the reader task so the handler has run by the time this returns.
        """
        await self._deliver(payload)

    def disconnect_from_daemon(self) -> None:
        """Simulate the daemon closing the pipe (EOF)."""
        self._inbound.put_nowait(None)

    async def _do_open(self) -> None:
        if self.fail_open is not None:
            raise self.fail_open

    async def _do_close(self) -> None:
        """No-op for mock."""
        pass

    def _do_write(self, data: bytes) -> None:
        """Record command and queue its canned reply."""
        command = parse_command(data)
        self._recorded_commands.append(command)
        for payload in self._responses.get(command.type, []):
            self._inbound.put_nowait(payload)

    async def _receive_chunks(self) -> AsyncIterator[str]:
        while True:
            payload = await self._inbound.get()
            if payload is None:
                break
            yield payload


ConnectionFactory = Callable[[str, ConnectionRole], BaseConnection]


def open_stream_connection(address: str, role: ConnectionRole) -> BaseConnection:
    """Default factory: a real socket / pipe connection."""
    return StreamConnection(address, role)
