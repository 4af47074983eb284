"""Event Channel - subscription mask, listeners and one-shot waiters.

Every payload read from the event connection ends up here. Tagged JSON
frames are dispatched to listeners when their category bit is subscribed;
bare text (subscription acknowledgements) resolves pending waiters.

The channel is owned by a single client and only touched from the event
loop thread, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from .exceptions import ProtocolError
from .protocol.classifier import ClassifiedResponse, ResponseKind
from .protocol.events import DaemonEvent, EventCategory, is_event_frame, parse_event

logger = logging.getLogger(__name__)

# Listener callbacks may be plain functions or coroutines
EventCallback = Callable[[DaemonEvent], Awaitable[None] | None]

WILDCARD = "*"


@dataclass(eq=False)
class EventWaiter:
    """A one-shot match on the event connection.

    Matches either a tagged event of ``category`` or a text payload matching
    ``pattern``.
    """

    future: asyncio.Future[Any]
    category: EventCategory | None = None
    pattern: re.Pattern[str] | None = None

    def matches_event(self, event: DaemonEvent) -> bool:
        return self.category is not None and event.event == self.category.wire_name

    def matches_text(self, text: str) -> bool:
        return self.pattern is not None and self.pattern.search(text) is not None


@dataclass
class SubscriptionState:
    """Additive category bitmask. Bits are only ever set, never cleared."""

    mask: EventCategory = field(default_factory=lambda: EventCategory(0))

    def add(self, categories: EventCategory) -> EventCategory:
        """OR *categories* into the mask and return the new mask."""
        self.mask |= categories
        return self.mask

    def __contains__(self, category: EventCategory) -> bool:
        return bool(self.mask & category)


class EventChannel:
    """Dispatches daemon events to listeners, streams and waiters."""

    def __init__(self) -> None:
        self.subscriptions = SubscriptionState()
        self._listeners: dict[str, list[EventCallback]] = {}
        self._waiters: list[EventWaiter] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def mask(self) -> EventCategory:
        """Currently subscribed categories."""
        return self.subscriptions.mask

    @property
    def waiter_count(self) -> int:
        return len(self._waiters)

    @property
    def listener_tasks(self) -> set[asyncio.Task[Any]]:
        """Async listeners still running."""
        return set(self._tasks)

    def add_categories(self, categories: Iterable[EventCategory | str]) -> EventCategory:
        """Merge *categories* into the subscription mask."""
        return self.subscriptions.add(EventCategory.combine(categories))

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on(self, category: EventCategory | str, callback: EventCallback) -> Callable[[], None]:
        """Register a persistent listener for one category.

        Args:
            category: Category member or wire tag, or ``"*"`` for every event.
            callback: Called with each dispatched event. An async callback
                runs as its own task, so it may call back into the client.

        Returns:
            Unsubscribe function
        """
        key = _listener_key(category)
        self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            if key in self._listeners and callback in self._listeners[key]:
                self._listeners[key].remove(callback)

        return unsubscribe

    async def stream(self) -> AsyncIterator[DaemonEvent]:
        """Async iterator over every dispatched event.

        Usage:
            async for event in channel.stream():
                print(event.event, event.process)
        """
        queue: asyncio.Queue[DaemonEvent] = asyncio.Queue()
        unsubscribe = self.on(WILDCARD, queue.put_nowait)

        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()

    # -------------------------------------------------------------------------
    # Waiters
    # -------------------------------------------------------------------------

    def expect(self, match: EventCategory | str | re.Pattern[str]) -> EventWaiter:
        """Register a one-shot waiter.

        A category member (or its wire tag) matches the next dispatched event
        of that category; any other string or compiled pattern matches the
        next text payload.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        if isinstance(match, str):
            try:
                match = EventCategory.from_wire(match)
            except ValueError:
                pass
        if isinstance(match, EventCategory):
            waiter = EventWaiter(future=future, category=match)
        else:
            pattern = match if isinstance(match, re.Pattern) else re.compile(match)
            waiter = EventWaiter(future=future, pattern=pattern)
        self._waiters.append(waiter)
        return waiter

    async def wait(self, waiter: EventWaiter, timeout: float | None = None) -> Any:
        """Wait for *waiter* to match.

        Raises:
            TimeoutError: Nothing matched within *timeout* seconds.
        """
        try:
            async with asyncio.timeout(timeout):
                return await waiter.future
        finally:
            self.discard(waiter)

    def discard(self, waiter: EventWaiter) -> None:
        if waiter in self._waiters:
            self._waiters.remove(waiter)

    def cancel_waiters(self, error: BaseException) -> None:
        """Fail every pending waiter (connection teardown)."""
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(error)

    def cancel_listeners(self) -> None:
        """Cancel async listeners still running (client teardown)."""
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def dispatch(self, response: ClassifiedResponse) -> None:
        """Route one classified payload from the event connection."""
        if response.kind == ResponseKind.JSON:
            if is_event_frame(response.value):
                await self.dispatch_event(response.value)
            else:
                logger.warning(f"Ignoring untagged JSON on event channel: {response.raw[:120]!r}")
            return

        self._resolve_text(response)

    async def dispatch_event(self, frame: dict[str, Any]) -> None:
        """Dispatch a decoded ``{"Event": ...}`` frame if its bit is subscribed."""
        tag = frame.get("Event")
        try:
            category = EventCategory.from_wire(str(tag))
        except ValueError:
            logger.warning(f"Dropping event with unknown category {tag!r}")
            return

        if category not in self.subscriptions:
            logger.debug(f"Dropping unsubscribed event {tag!r}")
            return

        event = parse_event(frame)

        waiter = next((w for w in self._waiters if w.matches_event(event)), None)
        if waiter is not None:
            self._waiters.remove(waiter)
            if not waiter.future.done():
                waiter.future.set_result(event)

        # Copy listener lists to avoid mutation during iteration
        specific = list(self._listeners.get(category.wire_name, []))
        wildcard = list(self._listeners.get(WILDCARD, []))

        for callback in specific + wildcard:
            try:
                result = callback(event)
            except Exception:
                logger.exception(f"Error in listener for {category.wire_name}")
                continue
            if inspect.isawaitable(result):
                # The reader must keep running while the listener waits on replies
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Error in async listener: {error}", exc_info=error)

    def _resolve_text(self, response: ClassifiedResponse) -> None:
        waiter = next((w for w in self._waiters if w.matches_text(response.raw)), None)
        if waiter is None:
            logger.warning(f"Unmatched payload on event channel: {response.raw[:120]!r}")
            return

        self._waiters.remove(waiter)
        if waiter.future.done():
            return
        if response.is_error:
            waiter.future.set_exception(ProtocolError(response.raw, response.raw))
        else:
            waiter.future.set_result(response.raw)


def _listener_key(category: EventCategory | str) -> str:
    if isinstance(category, EventCategory):
        return category.wire_name
    if category == WILDCARD:
        return category
    return EventCategory.from_wire(category).wire_name
