"""Client configuration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from .address import DEFAULT_PIPE_NAME

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_READ_SIZE = 65536

_TRUTHY = ("1", "true", "yes", "on")


class CorrelationMode(str, Enum):
    """How replies on the command connection are paired with requests."""

    FIFO = "fifo"  # Strict issue order, one request in flight
    MATCH = "match"  # Legacy: first pending request whose expectation matches


@dataclass
class ClientConfig:
    """Configuration for :class:`~jand_ipc.client.JandIpcClient`."""

    # Endpoint
    name: str = DEFAULT_PIPE_NAME

    # Per-request timeout in seconds; None waits forever
    timeout: float | None = DEFAULT_TIMEOUT

    # Open a second connection dedicated to event notifications
    events: bool = True

    correlation: CorrelationMode = CorrelationMode.FIFO

    # Max bytes per socket read
    read_size: int = DEFAULT_READ_SIZE

    @classmethod
    def from_env(cls, **overrides: object) -> ClientConfig:
        """Build a config from ``JAND_*`` environment variables.

        Recognised variables:
            JAND_PIPE_NAME: Endpoint name or absolute path.
            JAND_IPC_TIMEOUT: Timeout in seconds; ``0`` or ``none`` disables it.
            JAND_IPC_EVENTS: Whether to open the event connection.
            JAND_IPC_CORRELATION: ``fifo`` or ``match``.

        Keyword overrides that are not None win over the environment.
        """
        config = cls()

        if name := os.getenv("JAND_PIPE_NAME"):
            config.name = name

        if (timeout := os.getenv("JAND_IPC_TIMEOUT")) is not None:
            config.timeout = _parse_timeout(timeout)

        if (events := os.getenv("JAND_IPC_EVENTS")) is not None:
            config.events = events.strip().lower() in _TRUTHY

        if correlation := os.getenv("JAND_IPC_CORRELATION"):
            try:
                config.correlation = CorrelationMode(correlation.strip().lower())
            except ValueError:
                logger.warning(f"Ignoring unknown JAND_IPC_CORRELATION={correlation!r}")

        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise TypeError(f"Unknown config option: {key}")
            setattr(config, key, value)

        return config


def _parse_timeout(value: str) -> float | None:
    value = value.strip().lower()
    if value in ("", "0", "none", "off"):
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid JAND_IPC_TIMEOUT={value!r}")
        return DEFAULT_TIMEOUT
