"""Integration tests against a fake daemon on a real Unix socket.

Exercises the full stack: socket transport, payload splitting, response
classification, FIFO correlation and the event connection.
"""

from __future__ import annotations

import asyncio
import sys

import pytest

from jand_ipc import (
    ClientConfig,
    ConnectionClosedError,
    CorrelationMode,
    EventCategory,
    InvalidPropertyError,
    JandConnectionError,
    JandIpcClient,
    LogEvent,
    NewProcess,
    NotConnectedError,
    ProtocolError,
    RequestTimeoutError,
)

pytestmark = pytest.mark.skipif(
    sys.platform == "win32",
    reason="fake daemon serves a Unix-domain socket",
)


def make_client(daemon, **options) -> JandIpcClient:
    options.setdefault("timeout", 2.0)
    return JandIpcClient(daemon.address, config=ClientConfig(**options))


# =============================================================================
# Tests: Requests
# =============================================================================


class TestRequests:
    """Request/response round trips."""

    @pytest.mark.anyio
    async def test_status_and_process_list(self, daemon):
        """Status and process list decode into typed models."""
        daemon.add_process("web", running=True)
        daemon.add_process("worker")

        async with daemon, make_client(daemon) as client:
            status = await client.get_daemon_status()
            processes = await client.get_runtime_process_list()

        assert status.processes == 2
        assert status.version == "0.7.1"
        assert [p.name for p in processes] == ["web", "worker"]
        assert processes[0].running is True
        assert processes[0].process_id == 4242
        assert processes[1].running is False

    @pytest.mark.anyio
    async def test_empty_process_list(self, daemon):
        """An empty daemon answers get-processes with []."""
        async with daemon, make_client(daemon) as client:
            assert await client.get_runtime_process_list() == []

    @pytest.mark.anyio
    async def test_concurrent_requests_resolve_in_order(self, daemon):
        """Concurrent callers each get their own reply."""
        daemon.add_process("web")

        async with daemon, make_client(daemon) as client:
            status, config, processes, info = await asyncio.gather(
                client.get_daemon_status(),
                client.get_config(),
                client.get_runtime_process_list(),
                client.get_process_info("web"),
            )

        assert status.processes == 1
        assert config.max_restarts == 5
        assert len(processes) == 1
        assert info is not None and info.name == "web"
        types = [frame["Type"] for frame in daemon.received if not frame["Type"].startswith("subscribe")]
        assert types == ["status", "get-config", "get-processes", "get-process-info"]

    @pytest.mark.anyio
    async def test_unknown_process_info_is_none(self, daemon):
        async with daemon, make_client(daemon) as client:
            assert await client.get_process_info("ghost") is None

    @pytest.mark.anyio
    async def test_stop_reports_whether_process_was_running(self, daemon):
        daemon.add_process("web", running=True)

        async with daemon, make_client(daemon) as client:
            assert await client.stop_process("web") is True
            assert await client.stop_process("web") is False

    @pytest.mark.anyio
    async def test_process_lifecycle(self, daemon):
        """Create, enable, rename and delete a process."""
        async with daemon, make_client(daemon) as client:
            await client.new_process(
                NewProcess(name="api", filename="/usr/bin/node", arguments=["server.js"])
            )
            assert await client.set_enabled("api", False) is False
            assert await client.set_enabled("api", True) is True
            await client.rename_process("api", "backend")
            await client.restart_process("backend")
            await client.send_process_stdin_line("backend", "reload")

            info = await client.get_process_info("backend")
            assert info is not None
            assert info.arguments == ["server.js"]
            assert info.running is True

            await client.delete_process("backend")
            assert await client.get_process_info("backend") is None

    @pytest.mark.anyio
    async def test_rename_unknown_process_raises(self, daemon):
        async with daemon, make_client(daemon) as client:
            with pytest.raises(ProtocolError) as exc_info:
                await client.rename_process("ghost", "spirit")

        assert exc_info.value.token == "ERR:invalid-process"

    @pytest.mark.anyio
    async def test_error_does_not_desynchronise_queue(self, daemon):
        """A rejected request leaves later requests correctly paired."""
        async with daemon, make_client(daemon) as client:
            results = await asyncio.gather(
                client.restart_process("ghost"),
                client.get_daemon_status(),
                return_exceptions=True,
            )

        assert isinstance(results[0], ProtocolError)
        assert results[1].processes == 0

    @pytest.mark.anyio
    async def test_set_process_property(self, daemon):
        daemon.add_process("web")

        async with daemon, make_client(daemon) as client:
            await client.set_process_property("web", "AutoRestart", "false")
            with pytest.raises(InvalidPropertyError) as exc_info:
                await client.set_process_property("web", "Colour", "blue")

        assert daemon.processes["web"]["AutoRestart"] == "false"
        assert exc_info.value.property == "Colour"

    @pytest.mark.anyio
    async def test_config_round_trip(self, daemon):
        async with daemon, make_client(daemon) as client:
            await client.set_config("FormatConfig", "true")
            await client.set_config("LogIpc", "false")
            config = await client.get_config()
            assert config.log_ipc is False
            assert config.format_config is True

            status = await client.get_daemon_status()
            assert status.not_saved is True

            await client.save_config()
            await client.flush_all_logs()
            status = await client.get_daemon_status()
            assert status.not_saved is False

    @pytest.mark.anyio
    async def test_set_unknown_config_option_raises(self, daemon):
        async with daemon, make_client(daemon) as client:
            with pytest.raises(ProtocolError, match="Colour"):
                await client.set_config("Colour", "blue")

    @pytest.mark.anyio
    async def test_matching_mode_round_trip(self, daemon):
        """Legacy matching correlation pairs replies by shape."""
        daemon.add_process("web", running=True)

        async with daemon, make_client(daemon, correlation=CorrelationMode.MATCH) as client:
            status, stopped = await asyncio.gather(
                client.get_daemon_status(),
                client.stop_process("web"),
            )

        assert status.processes == 1
        assert stopped is True


# =============================================================================
# Tests: Events
# =============================================================================


class TestEvents:
    """Event subscriptions over the second connection."""

    @pytest.mark.anyio
    async def test_only_subscribed_categories_are_delivered(self, daemon):
        daemon.add_process("web", running=True)
        received = []
        got_stop = asyncio.Event()

        def on_event(event):
            received.append(event)
            if event.event == "procstop":
                got_stop.set()

        async with daemon, make_client(daemon) as client:
            client.on("*", on_event)
            mask = await client.subscribe([EventCategory.PROCSTOP])
            assert mask == EventCategory.PROCSTOP

            await client.restart_process("web")
            await client.stop_process("web")
            await asyncio.wait_for(got_stop.wait(), 2.0)

        assert [e.event for e in received] == ["procstop"]
        assert received[0].process == "web"

    @pytest.mark.anyio
    async def test_subscription_mask_is_additive(self, daemon):
        async with daemon, make_client(daemon) as client:
            await client.subscribe(["procstart"])
            await client.subscribe(["procren"])

        frames = [f for f in daemon.received if f["Type"] == "subscribe-events"]
        assert [f["Data"] for f in frames] == ["8", "72"]

    @pytest.mark.anyio
    async def test_wait_for_rename_event(self, daemon):
        daemon.add_process("web")

        async with daemon, make_client(daemon) as client:
            await client.subscribe([EventCategory.PROCREN])
            waiter = asyncio.create_task(client.wait_for_event(EventCategory.PROCREN, timeout=2.0))
            await asyncio.sleep(0)
            await client.rename_process("web", "frontend")
            event = await waiter

        assert event.process == "frontend"
        assert event.value == "web"

    @pytest.mark.anyio
    async def test_log_events(self, daemon):
        daemon.add_process("web", running=True)
        lines = asyncio.Queue()

        async with daemon, make_client(daemon) as client:
            client.on(EventCategory.OUTLOG, lines.put_nowait)
            await client.subscribe([EventCategory.OUTLOG])
            await client.subscribe_log_event("web")

            await daemon.push_log("web", "listening on :8080\n")
            event = await asyncio.wait_for(lines.get(), 2.0)

        assert isinstance(event, LogEvent)
        assert event.value == "listening on :8080\n"

    @pytest.mark.anyio
    @pytest.mark.parametrize("events", [True, False])
    async def test_listener_subscribes_to_new_process(self, daemon, events):
        lines = asyncio.Queue()

        async with daemon, make_client(daemon, events=events) as client:
            subscribed = asyncio.Event()

            async def on_added(event):
                await client.subscribe_log_event(event.process)
                subscribed.set()

            client.on(EventCategory.PROCADD, on_added)
            client.on(EventCategory.OUTLOG, lines.put_nowait)
            await client.subscribe([EventCategory.PROCADD, EventCategory.OUTLOG])
            await client.new_process({"Name": "api", "Filename": "/bin/true"})
            await asyncio.wait_for(subscribed.wait(), 2.0)

            await daemon.push_log("api", "ready\n")
            event = await asyncio.wait_for(lines.get(), 2.0)

        assert {"Type": "subscribe-log-event", "Data": "api"} in daemon.received
        assert event.process == "api"

    @pytest.mark.anyio
    async def test_subscribe_without_event_connection(self, daemon):
        """With events disabled, subscriptions go over the command connection."""
        async with daemon, make_client(daemon, events=False) as client:
            assert client.event_connection is None
            await client.subscribe([EventCategory.PROCADD])
            added = []
            client.on(EventCategory.PROCADD, added.append)
            await client.new_process({"Name": "api", "Filename": "/bin/true"})

        # The event is written before the reply on the same stream
        assert [e.process for e in added] == ["api"]
        assert daemon.received[0] == {"Type": "subscribe-events", "Data": "16"}


# =============================================================================
# Tests: Connection Failures
# =============================================================================


class TestConnectionFailures:
    """Behaviour when the daemon is unreachable or goes away."""

    @pytest.mark.anyio
    async def test_connect_to_missing_socket(self, daemon):
        client = make_client(daemon)
        with pytest.raises(JandConnectionError):
            await client.connect()
        assert client.connected is False

    @pytest.mark.anyio
    async def test_daemon_disconnect_fails_pending_request(self, daemon):
        daemon.silent.add("status")

        async with daemon, make_client(daemon) as client:
            request = asyncio.create_task(client.get_daemon_status())
            await asyncio.sleep(0.05)
            await daemon.drop_clients()

            with pytest.raises(ConnectionClosedError):
                await request
            assert client.connected is False

    @pytest.mark.anyio
    async def test_unanswered_request_resets_connection(self, daemon):
        daemon.silent.add("flush-all-logs")

        async with daemon, make_client(daemon, timeout=0.3) as client:
            with pytest.raises(RequestTimeoutError):
                await client.flush_all_logs()

            assert client.connected is False
            with pytest.raises(NotConnectedError):
                await client.get_daemon_status()

            await client.connect()
            status = await client.get_daemon_status()

        assert status.processes == 0
        assert [f["Type"] for f in daemon.received] == ["flush-all-logs", "status"]

    @pytest.mark.anyio
    async def test_exit_closes_client(self, daemon):
        async with daemon:
            client = make_client(daemon)
            await client.connect()
            await client.exit()

            await asyncio.wait_for(daemon.exited.wait(), 2.0)
            assert client.connected is False
            assert daemon.received[-1] == {"Type": "exit"}
