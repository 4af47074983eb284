"""Event definitions for the protocol layer.

Events are notifications pushed by the daemon, normally on the dedicated
event connection. Each one is a JSON object tagged with its category:

    {"Event": "procren", "Process": "web", "Value": "web-old"}

A client only receives (and only dispatches) categories whose bit is set
in its subscription mask.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from enum import IntFlag
from typing import Any

from pydantic import Field, ValidationError

from .types import WireModel

logger = logging.getLogger(__name__)

EVENT_TAG = "Event"


class EventCategory(IntFlag):
    """Event categories as power-of-two flags.

    Members are named after the wire tag in upper case; use
    :meth:`from_wire` / :attr:`wire_name` to convert.
    """

    OUTLOG = 0b0000_0001
    ERRLOG = 0b0000_0010
    PROCSTOP = 0b0000_0100
    PROCSTART = 0b0000_1000
    PROCADD = 0b0001_0000
    PROCDEL = 0b0010_0000
    PROCREN = 0b0100_0000

    @property
    def wire_name(self) -> str:
        """The ``Event`` tag used on the wire (e.g. ``"procstart"``)."""
        if not self.value or self.value & (self.value - 1):
            raise ValueError(f"Flag {int(self)} is not a single category")
        return self.name.lower()

    @classmethod
    def from_wire(cls, tag: str) -> EventCategory:
        """Look up a category by its wire tag.

        Raises:
            ValueError: If *tag* is not a known category.
        """
        try:
            return cls[tag.upper()]
        except KeyError:
            raise ValueError(f"Unknown event category: {tag!r}") from None

    @classmethod
    def combine(cls, categories: Iterable[EventCategory | str]) -> EventCategory:
        """OR together categories given as members or wire tags."""
        mask = cls(0)
        for category in categories:
            if isinstance(category, str):
                category = cls.from_wire(category)
            mask |= category
        return mask


class DaemonEvent(WireModel):
    """Base event. Every event carries its category tag."""

    event: str
    process: str | None = None

    @property
    def category(self) -> EventCategory:
        return EventCategory.from_wire(self.event)


class ProcessStartedEvent(DaemonEvent):
    """A process was started."""


class ProcessStoppedEvent(DaemonEvent):
    """A process stopped."""


class ProcessAddedEvent(DaemonEvent):
    """A process was added."""


class ProcessDeletedEvent(DaemonEvent):
    """A process was deleted."""


class ProcessRenamedEvent(DaemonEvent):
    """A process was renamed. ``value`` is the other name."""

    value: str | None = None


class LogEvent(DaemonEvent):
    """A line of process output (``outlog``) or error output (``errlog``)."""

    value: str = Field(default="")


EVENT_MODELS: dict[EventCategory, type[DaemonEvent]] = {
    EventCategory.OUTLOG: LogEvent,
    EventCategory.ERRLOG: LogEvent,
    EventCategory.PROCSTOP: ProcessStoppedEvent,
    EventCategory.PROCSTART: ProcessStartedEvent,
    EventCategory.PROCADD: ProcessAddedEvent,
    EventCategory.PROCDEL: ProcessDeletedEvent,
    EventCategory.PROCREN: ProcessRenamedEvent,
}


def is_event_frame(value: Any) -> bool:
    """Check whether a decoded JSON value is an event notification."""
    return isinstance(value, dict) and EVENT_TAG in value


def parse_event(data: dict[str, Any]) -> DaemonEvent:
    """Build the typed event for a decoded event frame.

    Unknown categories fall back to :class:`DaemonEvent`.
    """
    tag = data.get(EVENT_TAG, "")
    try:
        model = EVENT_MODELS.get(EventCategory.from_wire(tag), DaemonEvent)
    except ValueError:
        model = DaemonEvent
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Event {tag!r} did not fit {model.__name__}: {e}")
        return DaemonEvent.model_validate(data)
