"""Fake JanD daemon for integration tests.

Serves the daemon's wire protocol on a real Unix-domain socket, backed by
an in-memory process table. Replies are written exactly like the daemon
writes them: one JSON document or bare token per write, no delimiter.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Bits of the daemon's event mask
OUTLOG, ERRLOG, PROCSTOP, PROCSTART, PROCADD, PROCDEL, PROCREN = (1 << i for i in range(7))

SETTABLE_PROPERTIES = {"Filename", "Arguments", "WorkingDirectory", "AutoRestart", "Watch"}

_decoder = json.JSONDecoder()


class FakeDaemon:
    """In-process stand-in for the JanD daemon.

    Usage:
        async with FakeDaemon() as daemon:
            client = JandIpcClient(daemon.address)
            ...
    """

    def __init__(self) -> None:
        # Short directory: Unix socket paths are limited to ~100 bytes
        self.directory = tempfile.mkdtemp(prefix="jand")
        self.address = str(Path(self.directory) / "jand.sock")
        self.processes: dict[str, dict[str, Any]] = {}
        self.config: dict[str, Any] = {
            "LogIpc": True,
            "FormatConfig": True,
            "MaxRestarts": 5,
            "LogProcessOutput": True,
        }
        self.not_saved = False
        self.received: list[dict[str, Any]] = []
        self.silent: set[str] = set()
        self.exited = asyncio.Event()
        self._server: asyncio.AbstractServer | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self._subscribers: dict[asyncio.StreamWriter, int] = {}
        self._log_subscriptions: dict[asyncio.StreamWriter, set[str]] = {}
        self._stop_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> FakeDaemon:
        self._server = await asyncio.start_unix_server(self._handle_client, path=self.address)
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
        shutil.rmtree(self.directory, ignore_errors=True)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None
        await self.drop_clients()

    async def drop_clients(self) -> None:
        """Close every client connection (as if the daemon crashed)."""
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def add_process(self, name: str, filename: str = "/bin/sleep", running: bool = False, **extra: Any) -> None:
        self.processes[name] = {
            "Name": name,
            "Filename": filename,
            "Arguments": extra.pop("arguments", []),
            "WorkingDirectory": "/srv",
            "AutoRestart": True,
            "Enabled": True,
            "ProcessId": 4242 if running else -1,
            "Stopped": not running,
            "ExitCode": 0,
            "RestartCount": 0,
            "Running": running,
            "Watch": False,
            "SafeIndex": len(self.processes),
            **extra,
        }

    async def push_log(self, process: str, line: str, category: int = OUTLOG) -> None:
        """Emit a line of process output to subscribed connections."""
        tag = "outlog" if category == OUTLOG else "errlog"
        for writer, mask in list(self._subscribers.items()):
            if mask & category and process in self._log_subscriptions.get(writer, set()):
                await self._write(writer, {"Event": tag, "Process": process, "Value": line})

    async def emit(self, category: int, tag: str, process: str, value: str | None = None) -> None:
        frame: dict[str, Any] = {"Event": tag, "Process": process}
        if value is not None:
            frame["Value"] = value
        for writer, mask in list(self._subscribers.items()):
            if mask & category:
                await self._write(writer, frame)

    # -------------------------------------------------------------------------
    # Connection handling
    # -------------------------------------------------------------------------

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                text = data.decode("utf-8")
                idx = 0
                while idx < len(text):
                    frame, idx = _decoder.raw_decode(text, idx)
                    self.received.append(frame)
                    reply = await self._dispatch(writer, frame)
                    if reply is not None:
                        await self._write(writer, reply)
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            self._subscribers.pop(writer, None)
            self._log_subscriptions.pop(writer, None)
            if writer in self._writers:
                self._writers.remove(writer)
            writer.close()

    async def _write(self, writer: asyncio.StreamWriter, reply: Any) -> None:
        payload = reply if isinstance(reply, str) else json.dumps(reply)
        writer.write(payload.encode("utf-8"))
        await writer.drain()

    async def _dispatch(self, writer: asyncio.StreamWriter, frame: dict[str, Any]) -> Any:
        kind = frame["Type"]
        data = frame.get("Data")
        if kind in self.silent:
            return None

        if kind == "status":
            return {
                "Processes": len(self.processes),
                "NotSaved": self.not_saved,
                "Directory": self.directory,
                "Version": "0.7.1",
            }
        if kind == "get-processes":
            return list(self.processes.values())
        if kind == "get-process-info":
            return self.processes.get(data, "ERR:invalid-process")
        if kind == "new-process":
            spec = json.loads(data)
            if spec["Name"] in self.processes:
                return "ERR:already-exists"
            self.add_process(spec["Name"], spec["Filename"], arguments=spec.get("Arguments", []))
            self.not_saved = True
            await self.emit(PROCADD, "procadd", spec["Name"])
            return "added"
        if kind == "delete-process":
            if self.processes.pop(data, None) is None:
                return "ERR:invalid-process"
            await self.emit(PROCDEL, "procdel", data)
            return "done"
        if kind == "rename-process":
            old, new = data.split(":", 1)
            if old not in self.processes:
                return "ERR:invalid-process"
            proc = self.processes.pop(old)
            proc["Name"] = new
            self.processes[new] = proc
            await self.emit(PROCREN, "procren", new, old)
            return "done"
        if kind == "stop-process":
            proc = self.processes.get(data)
            if proc is None:
                return "ERR:invalid-process"
            if not proc["Running"]:
                return "already-stopped"
            proc.update(Running=False, Stopped=True, ProcessId=-1)
            await self.emit(PROCSTOP, "procstop", data)
            return "killed"
        if kind == "restart-process":
            proc = self.processes.get(data)
            if proc is None:
                return "ERR:invalid-process"
            proc.update(Running=True, Stopped=False, ProcessId=4242)
            await self.emit(PROCSTART, "procstart", data)
            return "done"
        if kind == "set-enabled":
            name, value = data.rsplit(":", 1)
            if name not in self.processes:
                return "ERR:invalid-process"
            self.processes[name]["Enabled"] = value == "true"
            return str(self.processes[name]["Enabled"])
        if kind == "set-process-property":
            spec = json.loads(data)
            if spec["Process"] not in self.processes:
                return "ERR:invalid-process"
            if spec["Property"] not in SETTABLE_PROPERTIES:
                return "Invalid property."
            self.processes[spec["Process"]][spec["Property"]] = spec["Data"]
            return "done"
        if kind == "send-process-stdin-line":
            return "done"
        if kind == "get-config":
            return self.config
        if kind == "set-config":
            option, value = data.split(":", 1)
            if option not in self.config:
                return f"Option {option} doesn't exist."
            self.config[option] = value.lower() == "true" if value.lower() in ("true", "false") else value
            self.not_saved = True
            return "done"
        if kind in ("save-config", "flush-all-logs"):
            self.not_saved = False
            return "done"
        if kind == "subscribe-events":
            self._subscribers[writer] = int(data)
            return "done"
        if kind in ("subscribe-log-event", "subscribe-outlog-event", "subscribe-errlog-event"):
            self._log_subscriptions.setdefault(writer, set()).add(data)
            return "done"
        if kind == "exit":
            self.exited.set()
            self._stop_task = asyncio.create_task(self.stop())
            return None
        return "ERR:unknown-command"


@pytest.fixture
def daemon() -> Iterator[FakeDaemon]:
    """An unstarted fake daemon; use ``async with daemon:`` inside the test."""
    fake = FakeDaemon()
    yield fake
    shutil.rmtree(fake.directory, ignore_errors=True)
