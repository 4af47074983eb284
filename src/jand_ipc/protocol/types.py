"""Typed payloads exchanged with the daemon.

The daemon speaks PascalCase JSON (``WorkingDirectory``, ``NotSaved``).
Models expose snake_case attributes and accept either spelling on input;
``model_dump(by_alias=True)`` produces the wire form. Unknown fields sent
by newer daemons are kept rather than rejected.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal


class WireModel(BaseModel):
    """Base for models that mirror daemon JSON."""

    model_config = ConfigDict(
        alias_generator=to_pascal,
        populate_by_name=True,
        extra="allow",
    )


class ProcessInfo(WireModel):
    """Saved configuration of a process."""

    name: str
    filename: str
    arguments: list[str] = Field(default_factory=list)
    working_directory: str | None = None
    auto_restart: bool = False
    enabled: bool = True


class RuntimeProcessInfo(ProcessInfo):
    """A process as currently tracked by the daemon."""

    process_id: int = -1
    stopped: bool = False
    exit_code: int = 0
    restart_count: int = 0
    running: bool = False
    watch: bool = False
    safe_index: int | None = None


class NewProcess(WireModel):
    """Descriptor for creating a process (``new-process``)."""

    name: str
    filename: str
    arguments: list[str] = Field(default_factory=list)
    working_directory: str | None = None


class DaemonStatus(WireModel):
    """Response to ``status``."""

    processes: int
    not_saved: bool
    directory: str
    version: str


class DaemonConfig(WireModel):
    """Response to ``get-config``."""

    log_ipc: bool = False
    format_config: bool = False
    max_restarts: int = 0
    log_process_output: bool = False
