"""Request/response correlation for the command connection.

The daemon's replies carry no request identifier. The only thing tying a
reply to its request is position: the daemon handles commands in the order
received and answers each exactly once. :class:`FifoCorrelator` therefore
keeps at most one request in flight and hands every inbound payload to the
head of its queue.

Lifecycle of a request::

    PENDING ──reply──────────▶ RESOLVED
       │    ──ERR: sentinel──▶ REJECTED
       │    ──timeout────────▶ REJECTED (RequestTimeoutError)
       └────teardown/cancel─▶ CANCELLED

A request whose caller is cancelled after it was transmitted stays at the
head of the queue as an abandoned slot, so the reply it eventually
receives is swallowed instead of being handed to the next request. A
request that times out the same way leaves the queue stalled on a reply
that may never come; the correlator reports it through ``on_stall`` so the
owner can tear the connection down.

:class:`MatchingCorrelator` implements the older strategy of matching each
payload against the expected shape of every pending request. It is kept
for compatibility only: two requests expecting overlapping shapes can
steal each other's replies.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, cast

from .config import CorrelationMode
from .exceptions import ProtocolError, RequestTimeoutError
from .protocol.classifier import ClassifiedResponse, ResponseKind
from .protocol.commands import Command

logger = logging.getLogger(__name__)

# Sentinel meaning "use the correlator's default timeout"
DEFAULT = object()

SendFunc = Callable[[Command], None]


class RequestState(str, Enum):
    """State machine for a single request."""

    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Expectation:
    """What a request expects back.

    The FIFO correlator only looks at ``expects_reply`` and
    ``allow_empty_array``; the matching correlator uses all of it.
    """

    fields: tuple[str, ...] = ()
    pattern: re.Pattern[str] | None = None
    is_array: bool = False
    allow_empty_array: bool = False
    expects_reply: bool = True

    @classmethod
    def json(
        cls,
        *fields: str,
        is_array: bool = False,
        allow_empty_array: bool = False,
        pattern: str | None = None,
    ) -> Expectation:
        """Expect a JSON object (or array of objects) carrying *fields*.

        *pattern* optionally claims text replies too (e.g. a known error).
        """
        return cls(
            fields=fields,
            pattern=re.compile(pattern) if pattern else None,
            is_array=is_array,
            allow_empty_array=allow_empty_array,
        )

    @classmethod
    def text(cls, pattern: str) -> Expectation:
        """Expect a bare text token matching *pattern*."""
        return cls(pattern=re.compile(pattern))

    @classmethod
    def no_reply(cls) -> Expectation:
        """Fire-and-forget: the request resolves once written."""
        return cls(expects_reply=False)

    def matches(self, response: ClassifiedResponse) -> bool:
        """Structural match used by the matching correlator."""
        if response.kind == ResponseKind.JSON:
            if not self.fields:
                return False
            value = response.value
            if self.is_array:
                if not isinstance(value, list):
                    return False
                if not value:
                    return self.allow_empty_array
                # Sample the first element
                value = value[0]
            if not isinstance(value, dict):
                return False
            return all(name in value for name in self.fields)

        if self.pattern is None:
            return False
        return self.pattern.search(response.raw) is not None


@dataclass(eq=False)
class PendingRequest:
    """A request waiting for its reply."""

    command: Command
    expectation: Expectation
    future: asyncio.Future[Any]
    state: RequestState = RequestState.PENDING
    sent: bool = False
    abandoned: bool = False
    error: BaseException | None = field(default=None, repr=False)

    @property
    def tag(self) -> str:
        """The command type, for logs and error messages."""
        return self.command.type

    @property
    def payload(self) -> str:
        """The serialized frame."""
        return self.command.to_wire()

    @property
    def is_pending(self) -> bool:
        return self.state == RequestState.PENDING

    def resolve(self, value: Any) -> None:
        if not self.is_pending:
            return
        self.state = RequestState.RESOLVED
        if not self.future.done():
            self.future.set_result(value)

    def reject(self, error: BaseException) -> None:
        if not self.is_pending:
            return
        self.state = RequestState.REJECTED
        self.error = error
        if not self.future.done():
            self.future.set_exception(error)

    def cancel(self, error: BaseException | None = None) -> None:
        """Cancel the request, optionally failing the waiter with *error*."""
        if not self.is_pending:
            return
        self.state = RequestState.CANCELLED
        self.error = error
        if self.future.done():
            return
        if error is None:
            self.future.cancel()
        else:
            self.future.set_exception(error)


StallHandler = Callable[[PendingRequest], Awaitable[None]]


class BaseCorrelator(ABC):
    """Common request bookkeeping: waiting, timeouts, teardown."""

    mode: CorrelationMode

    def __init__(
        self,
        send: SendFunc,
        timeout: float | None = None,
        on_stall: StallHandler | None = None,
    ) -> None:
        self._send = send
        self.timeout = timeout
        self.on_stall = on_stall

    @property
    @abstractmethod
    def pending(self) -> list[PendingRequest]:
        """Requests not yet answered, oldest first."""
        ...

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    @abstractmethod
    def submit(self, command: Command, expectation: Expectation | None = None) -> PendingRequest:
        """Enqueue *command* and return its pending request without waiting."""
        ...

    @abstractmethod
    def feed(self, response: ClassifiedResponse) -> None:
        """Deliver one classified inbound payload."""
        ...

    @abstractmethod
    def _discard(self, request: PendingRequest) -> None:
        """Take a timed-out or cancelled request out of circulation."""
        ...

    async def request(
        self,
        command: Command,
        expectation: Expectation | None = None,
        timeout: float | None | object = DEFAULT,
    ) -> Any:
        """Submit *command* and wait for its reply.

        Returns:
            Decoded JSON or the bare text token.

        Raises:
            ProtocolError: The daemon replied with an ``ERR:`` sentinel.
            RequestTimeoutError: No reply within *timeout* seconds.
            ConnectionClosedError: The connection was torn down first.
        """
        return await self.wait(self.submit(command, expectation), timeout)

    async def wait(
        self,
        request: PendingRequest,
        timeout: float | None | object = DEFAULT,
    ) -> Any:
        """Wait for an already-submitted request.

        If the request times out after it was transmitted, ``on_stall`` is
        awaited before the timeout is raised.
        """
        limit = self.timeout if timeout is DEFAULT else cast("float | None", timeout)
        try:
            async with asyncio.timeout(limit):
                return await request.future
        except TimeoutError:
            error = RequestTimeoutError(f"No reply to {request.tag!r} within {limit}s")
            if request.is_pending:
                self._discard(request)
                request.reject(error)
            if request.abandoned and self.on_stall is not None:
                logger.debug(f"{request.tag!r} timed out after it was sent; queue is stalled")
                await self.on_stall(request)
            raise error from None
        except asyncio.CancelledError:
            if request.is_pending:
                self._discard(request)
                request.cancel()
            raise

    def cancel_all(self, error: BaseException) -> None:
        """Fail every pending request with *error* (connection teardown)."""
        requests = self.pending
        self._clear()
        for request in requests:
            if request.is_pending:
                logger.debug(f"Cancelling {request.tag!r}: {error}")
            request.cancel(error)

    @abstractmethod
    def _clear(self) -> None: ...

    def _transmit(self, request: PendingRequest) -> bool:
        """Write *request*; returns False (after rejecting it) on failure."""
        try:
            self._send(request.command)
        except Exception as e:
            logger.debug(f"Failed to send {request.tag!r}: {e}")
            request.reject(e)
            return False
        request.sent = True
        logger.debug(f"Sent {request.payload}")
        return True


class FifoCorrelator(BaseCorrelator):
    """Single-flight correlator: the next reply always belongs to the head."""

    mode = CorrelationMode.FIFO

    def __init__(
        self,
        send: SendFunc,
        timeout: float | None = None,
        on_stall: StallHandler | None = None,
    ) -> None:
        super().__init__(send, timeout, on_stall)
        self._queue: deque[PendingRequest] = deque()

    @property
    def pending(self) -> list[PendingRequest]:
        return list(self._queue)

    @property
    def in_flight(self) -> PendingRequest | None:
        """The request currently awaiting a reply, if any."""
        if self._queue and self._queue[0].sent:
            return self._queue[0]
        return None

    def submit(self, command: Command, expectation: Expectation | None = None) -> PendingRequest:
        request = PendingRequest(
            command=command,
            expectation=expectation or Expectation(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._queue.append(request)
        if len(self._queue) == 1:
            self._transmit_head()
        return request

    def feed(self, response: ClassifiedResponse) -> None:
        head = self.in_flight
        if head is None:
            logger.warning(f"Dropping unsolicited payload: {response.raw[:120]!r}")
            return

        if head.abandoned:
            logger.warning(f"Discarding late reply to abandoned {head.tag!r}: {response.raw[:120]!r}")
            self._advance()
            return

        if response.is_empty_array and not head.expectation.allow_empty_array:
            logger.debug(f"Skipping empty array while waiting for {head.tag!r}")
            return

        if response.is_error:
            head.reject(ProtocolError(response.raw, response.raw))
        else:
            if response.kind == ResponseKind.TEXT and not response.is_known_token:
                logger.warning(f"Unrecognised reply to {head.tag!r}: {response.raw[:120]!r}")
            head.resolve(response.value)
        self._advance()

    def _advance(self) -> None:
        self._queue.popleft()
        self._transmit_head()

    def _transmit_head(self) -> None:
        while self._queue:
            head = self._queue[0]
            if head.sent:
                return
            if not self._transmit(head):
                self._queue.popleft()
                continue
            if head.expectation.expects_reply:
                return
            self._queue.popleft()
            head.resolve(None)

    def _discard(self, request: PendingRequest) -> None:
        if request.sent and self._queue and self._queue[0] is request:
            # Keep the slot so the eventual reply is not misdelivered
            request.abandoned = True
            return
        try:
            self._queue.remove(request)
        except ValueError:
            pass

    def _clear(self) -> None:
        self._queue.clear()


class MatchingCorrelator(BaseCorrelator):
    """Legacy correlator: resolve the first request whose expectation fits.

    Requests are written immediately. JSON payloads go to the first request
    expecting all of their fields; text payloads to the first request whose
    pattern matches. Error sentinels nobody's pattern claims fall back to
    the oldest pending request.
    """

    mode = CorrelationMode.MATCH

    def __init__(
        self,
        send: SendFunc,
        timeout: float | None = None,
        on_stall: StallHandler | None = None,
    ) -> None:
        super().__init__(send, timeout, on_stall)
        self._waiting: list[PendingRequest] = []

    @property
    def pending(self) -> list[PendingRequest]:
        return list(self._waiting)

    def submit(self, command: Command, expectation: Expectation | None = None) -> PendingRequest:
        request = PendingRequest(
            command=command,
            expectation=expectation or Expectation(),
            future=asyncio.get_running_loop().create_future(),
        )
        if not self._transmit(request):
            return request
        if request.expectation.expects_reply:
            self._waiting.append(request)
        else:
            request.resolve(None)
        return request

    def feed(self, response: ClassifiedResponse) -> None:
        match = next((r for r in self._waiting if r.expectation.matches(response)), None)
        if match is None and response.is_error and self._waiting:
            match = self._waiting[0]
        if match is None:
            logger.warning(f"No pending request matches payload: {response.raw[:120]!r}")
            return

        self._waiting.remove(match)
        if response.is_error:
            match.reject(ProtocolError(response.raw, response.raw))
        else:
            match.resolve(response.value)

    def _discard(self, request: PendingRequest) -> None:
        if request in self._waiting:
            self._waiting.remove(request)

    def _clear(self) -> None:
        self._waiting.clear()


def create_correlator(
    mode: CorrelationMode,
    send: SendFunc,
    timeout: float | None = None,
    on_stall: StallHandler | None = None,
) -> BaseCorrelator:
    """Build the correlator for *mode*."""
    if mode == CorrelationMode.MATCH:
        return MatchingCorrelator(send, timeout, on_stall)
    return FifoCorrelator(send, timeout, on_stall)
