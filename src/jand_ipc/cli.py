"""JanD IPC CLI.

Talks to a running JanD daemon over its pipe.

Usage:
    jand-ipc status                      # Daemon status
    jand-ipc list                        # List processes
    jand-ipc list --format json          # ... as JSON
    jand-ipc info <name>                 # Show process details
    jand-ipc start|stop|restart <name>   # Control a process
    jand-ipc enable|disable <name>       # Toggle a process
    jand-ipc new <name> <file> [args]    # Register a process
    jand-ipc rename <old> <new>          # Rename a process
    jand-ipc delete <name>               # Kill and delete a process
    jand-ipc set <name> <prop> <value>   # Set a process property

    jand-ipc config show                 # Show daemon configuration
    jand-ipc config set <option> <value> # Change an option
    jand-ipc config save                 # Persist the configuration

    jand-ipc flush-logs                  # Flush all process logs
    jand-ipc events [category ...]       # Stream events until Ctrl+C
    jand-ipc exit                        # Stop the daemon
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from .client import JandIpcClient, create_client
from .exceptions import JandIpcError
from .protocol.events import DaemonEvent, EventCategory
from .protocol.types import NewProcess

T = TypeVar("T")

# Output format options
FORMAT_TABLE = "table"
FORMAT_JSON = "json"

EVENT_CHOICES = [c.wire_name for c in EventCategory]


def truncate(text: str | None, max_len: int = 50) -> str:
    """Truncate text for display."""
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def format_bool(value: bool) -> str:
    return "yes" if value else "no"


def _run(ctx: click.Context, action: Callable[[JandIpcClient], Awaitable[T]], events: bool = False) -> T:
    """Connect, run *action*, close; errors exit with status 1."""
    options = ctx.obj

    async def execute() -> T:
        client = create_client(options["name"], timeout=options["timeout"], events=events)
        async with client:
            return await action(client)

    try:
        return asyncio.run(execute())
    except JandIpcError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--name", "-n", default=None, help="Pipe name or socket path (default: $JAND_PIPE_NAME or jand)")
@click.option("--timeout", "-t", type=float, default=None, help="Request timeout in seconds")
@click.option("--verbose", "-v", is_flag=True, help="Log protocol traffic to stderr")
@click.pass_context
def main(ctx: click.Context, name: str | None, timeout: float | None, verbose: bool) -> None:
    """JanD IPC client - control a JanD process daemon."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj = {"name": name, "timeout": timeout}


@main.command()
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def status(ctx: click.Context, output_format: str) -> None:
    """Show daemon status."""
    result = _run(ctx, lambda c: c.get_daemon_status())

    if output_format == FORMAT_JSON:
        click.echo(json.dumps(result.model_dump(by_alias=True), indent=2))
        return

    click.echo(f"Processes: {result.processes}")
    click.echo(f"Unsaved:   {format_bool(result.not_saved)}")
    click.echo(f"Directory: {result.directory or 'N/A'}")
    click.echo(f"Version:   {result.version or 'N/A'}")


@main.command("list")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def list_processes(ctx: click.Context, output_format: str) -> None:
    """List processes with their runtime state.

    Examples:

        # Table of processes
        jand-ipc list

        # JSON output for scripting
        jand-ipc list --format json
    """
    processes = _run(ctx, lambda c: c.get_runtime_process_list())

    if output_format == FORMAT_JSON:
        click.echo(json.dumps([p.model_dump(by_alias=True) for p in processes], indent=2))
        return

    if not processes:
        click.echo("No processes found.")
        return

    # Table format
    click.echo(f"{'Name':<20} {'PID':>7} {'Running':<8} {'Enabled':<8} {'Restarts':>8} {'Exit':>5}")
    click.echo("-" * 61)

    for p in processes:
        pid = str(p.process_id) if p.process_id >= 0 else "-"
        click.echo(
            f"{truncate(p.name, 20):<20} {pid:>7} {format_bool(p.running):<8} "
            f"{format_bool(p.enabled):<8} {p.restart_count:>8} {p.exit_code:>5}"
        )

    click.echo(f"\nTotal: {len(processes)} process(es)")


@main.command()
@click.argument("process")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def info(ctx: click.Context, process: str, output_format: str) -> None:
    """Show detailed information about a process."""
    result = _run(ctx, lambda c: c.get_process_info(process))

    if result is None:
        click.echo(f"Process not found: {process}", err=True)
        sys.exit(1)

    if output_format == FORMAT_JSON:
        click.echo(json.dumps(result.model_dump(by_alias=True), indent=2))
        return

    click.echo(f"Process:   {result.name}")
    click.echo(f"Filename:  {result.filename}")
    click.echo(f"Arguments: {' '.join(result.arguments) or '-'}")
    click.echo(f"Directory: {result.working_directory}")
    click.echo(f"Running:   {format_bool(result.running)}")
    click.echo(f"Enabled:   {format_bool(result.enabled)}")
    click.echo(f"Restart:   {format_bool(result.auto_restart)}")
    if result.process_id >= 0:
        click.echo(f"PID:       {result.process_id}")
    click.echo(f"Exit code: {result.exit_code}")
    click.echo(f"Restarts:  {result.restart_count}")


@main.command()
@click.argument("process")
@click.pass_context
def start(ctx: click.Context, process: str) -> None:
    """Start (or restart) a process."""
    _run(ctx, lambda c: c.restart_process(process))
    click.echo(f"Started {process}")


@main.command()
@click.argument("process")
@click.pass_context
def restart(ctx: click.Context, process: str) -> None:
    """Restart a process."""
    _run(ctx, lambda c: c.restart_process(process))
    click.echo(f"Restarted {process}")


@main.command()
@click.argument("process")
@click.pass_context
def stop(ctx: click.Context, process: str) -> None:
    """Stop a process."""
    killed = _run(ctx, lambda c: c.stop_process(process))
    if killed:
        click.echo(f"Stopped {process}")
    else:
        click.echo(f"{process} was already stopped")


@main.command()
@click.argument("process")
@click.pass_context
def enable(ctx: click.Context, process: str) -> None:
    """Enable a process."""
    state = _run(ctx, lambda c: c.set_enabled(process, True))
    click.echo(f"{process}: enabled={format_bool(state)}")


@main.command()
@click.argument("process")
@click.pass_context
def disable(ctx: click.Context, process: str) -> None:
    """Disable a process."""
    state = _run(ctx, lambda c: c.set_enabled(process, False))
    click.echo(f"{process}: enabled={format_bool(state)}")


@main.command()
@click.argument("process")
@click.argument("filename")
@click.argument("arguments", nargs=-1)
@click.option("--cwd", "working_directory", default=".", help="Working directory for the process")
@click.pass_context
def new(
    ctx: click.Context,
    process: str,
    filename: str,
    arguments: tuple[str, ...],
    working_directory: str,
) -> None:
    """Register a new process (enabled, not started).

    Examples:

        jand-ipc new web /usr/bin/node server.js --cwd /srv/web
    """
    spec = NewProcess(
        name=process,
        filename=filename,
        arguments=list(arguments),
        working_directory=working_directory,
    )
    _run(ctx, lambda c: c.new_process(spec))
    click.echo(f"Added {process}")


@main.command()
@click.argument("old_name")
@click.argument("new_name")
@click.pass_context
def rename(ctx: click.Context, old_name: str, new_name: str) -> None:
    """Rename a process."""
    _run(ctx, lambda c: c.rename_process(old_name, new_name))
    click.echo(f"Renamed {old_name} to {new_name}")


@main.command()
@click.argument("process")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def delete(ctx: click.Context, process: str, yes: bool) -> None:
    """Kill a process and delete it."""
    if not yes and not click.confirm(f"Delete process {process}?"):
        click.echo("Cancelled.")
        return

    _run(ctx, lambda c: c.delete_process(process))
    click.echo(f"Deleted {process}")


@main.command("set")
@click.argument("process")
@click.argument("property_name")
@click.argument("value")
@click.pass_context
def set_property(ctx: click.Context, process: str, property_name: str, value: str) -> None:
    """Set a process property."""
    _run(ctx, lambda c: c.set_process_property(process, property_name, value))
    click.echo(f"{process}.{property_name} = {value}")


@main.command()
@click.argument("process")
@click.argument("text")
@click.pass_context
def stdin(ctx: click.Context, process: str, text: str) -> None:
    """Send a line to a process's stdin."""
    _run(ctx, lambda c: c.send_process_stdin_line(process, text))


@main.command("flush-logs")
@click.pass_context
def flush_logs(ctx: click.Context) -> None:
    """Flush all process logs."""
    _run(ctx, lambda c: c.flush_all_logs())
    click.echo("Logs flushed")


@main.command("exit")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.pass_context
def exit_daemon(ctx: click.Context, yes: bool) -> None:
    """Stop the daemon."""
    if not yes and not click.confirm("Stop the JanD daemon?"):
        click.echo("Cancelled.")
        return

    _run(ctx, lambda c: c.exit())
    click.echo("Daemon exiting")


# =============================================================================
# Config Commands
# =============================================================================


@main.group()
def config() -> None:
    """Show or change daemon configuration."""


@config.command("show")
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice([FORMAT_TABLE, FORMAT_JSON]),
    default=FORMAT_TABLE,
    help="Output format",
)
@click.pass_context
def config_show(ctx: click.Context, output_format: str) -> None:
    """Show daemon configuration."""
    result = _run(ctx, lambda c: c.get_config())
    values: dict[str, Any] = result.model_dump(by_alias=True)

    if output_format == FORMAT_JSON:
        click.echo(json.dumps(values, indent=2))
        return

    width = max(len(key) for key in values)
    for key, value in values.items():
        click.echo(f"{key:<{width}}  {value}")


@config.command("set")
@click.argument("option")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, option: str, value: str) -> None:
    """Change a daemon option (not persisted until `config save`)."""
    _run(ctx, lambda c: c.set_config(option, value))
    click.echo(f"{option} = {value}")


@config.command("save")
@click.pass_context
def config_save(ctx: click.Context) -> None:
    """Persist the daemon configuration."""
    _run(ctx, lambda c: c.save_config())
    click.echo("Configuration saved")


# =============================================================================
# Events
# =============================================================================


def format_event(event: DaemonEvent) -> str:
    """One line per event."""
    parts = [event.event]
    if event.process:
        parts.append(event.process)
    value = getattr(event, "value", None)
    if value:
        parts.append(truncate(str(value).rstrip("\n"), 200))
    return " ".join(parts)


@main.command()
@click.argument("categories", nargs=-1, type=click.Choice(EVENT_CHOICES))
@click.option("--log", "log_processes", multiple=True, help="Also subscribe to output of this process")
@click.pass_context
def events(ctx: click.Context, categories: tuple[str, ...], log_processes: tuple[str, ...]) -> None:
    """Stream daemon events until interrupted.

    Examples:

        # Process lifecycle events
        jand-ipc events procstart procstop

        # Output of one process
        jand-ipc events outlog errlog --log web
    """
    selected = list(categories) or [c for c in EVENT_CHOICES if c not in ("outlog", "errlog")]

    async def follow(client: JandIpcClient) -> None:
        await client.subscribe(selected)
        await client.subscribe_log_events(log_processes)
        click.echo(f"Subscribed to {', '.join(selected)}", err=True)
        async for event in client.events():
            click.echo(format_event(event))

    try:
        _run(ctx, follow, events=True)
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)


if __name__ == "__main__":
    main()
