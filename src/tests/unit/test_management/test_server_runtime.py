"""Tests for the per-server runtime state machine."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_server_manager.config.exceptions import PersistenceError
from mcp_server_manager.config.models import ExecutionSpec, RuntimeConfig
from mcp_server_manager.management.exceptions import ServerError, SpawnError
from mcp_server_manager.management.health import HealthResult, HealthStrategy
from mcp_server_manager.management.runtime import (
    LocalServerKind,
    RemoteServerKind,
    ServerRuntime,
    ServerStatus,
)


def fake_handle(pid: int = 4242, exited: bool = False) -> MagicMock:
    handle = MagicMock()
    handle.pid = pid
    handle.released = False
    handle.has_exited = exited
    handle.wait = AsyncMock(return_value=0)
    return handle


def result(online: bool, strategy=HealthStrategy.PROCESS, ping_ms=None) -> HealthResult:
    return HealthResult(strategy=strategy, online=online, ping_ms=ping_ms)


class RuntimeTestCase:
    """Shared construction of a runtime with mocked collaborators."""

    def make_runtime(self, args=None, host=None, port=None, status=ServerStatus.STOPPED):
        self.supervisor = MagicMock()
        self.handle = fake_handle()
        self.supervisor.spawn = AsyncMock(return_value=self.handle)
        self.supervisor.kill = MagicMock(return_value=True)

        self.health = MagicMock()
        self.health.check = AsyncMock(return_value=result(True))
        self.health.check_sse = AsyncMock(return_value=result(False, HealthStrategy.SSE))
        self.health.check_port = AsyncMock(return_value=result(False, HealthStrategy.PORT))
        self.health.kill_port_listeners = AsyncMock(return_value=0)

        self.statuses = []
        config = RuntimeConfig(
            execution=ExecutionSpec(command="srv", args=args or []), host=host, port=port
        )
        return ServerRuntime(
            "srv",
            config,
            supervisor=self.supervisor,
            health=self.health,
            status_listener=lambda name, status: self.statuses.append(status),
            initial_status=status,
            stop_attempts=3,
            stop_backoff=0,
            sse_stop_timeout=0.1,
        )


class TestLocalRuntime(RuntimeTestCase):
    """Test ServerRuntime with a local server kind."""

    def test_kind_selection(self):
        assert isinstance(self.make_runtime().kind, LocalServerKind)
        assert isinstance(self.make_runtime(host="127.0.0.1", port=80).kind, LocalServerKind)
        runtime = self.make_runtime(host="mcp.example.com", port=443)
        assert isinstance(runtime.kind, RemoteServerKind)
        assert runtime.is_remote

    @pytest.mark.asyncio
    async def test_start_spawns_and_runs(self):
        runtime = self.make_runtime()
        await runtime.start()

        assert runtime.status is ServerStatus.RUNNING
        assert runtime.process is self.handle
        assert self.statuses == [ServerStatus.RUNNING]
        kwargs = self.supervisor.spawn.call_args.kwargs
        assert kwargs["on_exit"] == runtime.on_process_exit
        assert kwargs["name"] == "srv"

    @pytest.mark.asyncio
    async def test_start_kills_stale_handle(self):
        runtime = self.make_runtime()
        stale = fake_handle(pid=1)
        runtime.attach_process(stale)

        await runtime.start()

        assert stale.released is True
        self.supervisor.kill.assert_called_once_with(stale)
        assert runtime.process is self.handle

    @pytest.mark.asyncio
    async def test_spawn_failure_sets_error(self):
        runtime = self.make_runtime()
        self.supervisor.spawn.side_effect = SpawnError("cannot start")

        with pytest.raises(SpawnError):
            await runtime.start()

        assert runtime.status is ServerStatus.ERROR
        assert runtime.process is None

    @pytest.mark.asyncio
    async def test_process_exit_codes(self):
        runtime = self.make_runtime()
        await runtime.start()
        runtime.on_process_exit(self.handle, 1)
        assert runtime.status is ServerStatus.ERROR
        assert runtime.process is None

        self.handle = fake_handle(pid=5)
        self.supervisor.spawn.return_value = self.handle
        await runtime.start()
        runtime.on_process_exit(self.handle, 0)
        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_exit_of_released_process_is_ignored(self):
        runtime = self.make_runtime()
        await runtime.start()
        old = runtime.release_process()

        runtime.on_process_exit(old, 137)

        assert runtime.status is ServerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_exit_of_foreign_handle_is_ignored(self):
        runtime = self.make_runtime()
        await runtime.start()

        runtime.on_process_exit(fake_handle(pid=99), 1)

        assert runtime.status is ServerStatus.RUNNING
        assert runtime.process is self.handle

    @pytest.mark.asyncio
    async def test_stop_process_only(self):
        runtime = self.make_runtime()
        await runtime.start()

        await runtime.stop()

        self.supervisor.kill.assert_called_once_with(self.handle)
        self.handle.wait.assert_awaited()
        assert self.handle.released is True
        assert runtime.status is ServerStatus.STOPPED
        assert runtime.process is None

    @pytest.mark.asyncio
    async def test_stop_sse_kills_and_verifies(self):
        runtime = self.make_runtime(args=["--sse", "http://localhost:8931/sse"])
        await runtime.start()
        self.health.check_sse.side_effect = [
            result(True, HealthStrategy.SSE),
            result(False, HealthStrategy.SSE),
        ]

        await runtime.stop()

        assert self.supervisor.kill.call_count == 2
        assert self.health.check_sse.await_count == 2
        assert self.health.check_sse.call_args.kwargs["timeout"] == 0.1
        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_port_kills_listeners(self):
        runtime = self.make_runtime(port=9000)
        await runtime.start()
        self.health.check_port.side_effect = [
            result(True, HealthStrategy.PORT),
            result(True, HealthStrategy.PORT),
            result(True, HealthStrategy.PORT),
        ]

        await runtime.stop()

        assert self.health.kill_port_listeners.await_count == 3
        assert self.health.check_port.await_count == 3
        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_always_ends_stopped(self):
        runtime = self.make_runtime(port=9000)
        await runtime.start()
        self.health.kill_port_listeners.side_effect = RuntimeError("boom")

        await runtime.stop()

        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_check_status_online_marks_running(self):
        runtime = self.make_runtime()
        self.health.check.return_value = result(True, ping_ms=3.2)

        await runtime.check_status()

        assert runtime.status is ServerStatus.RUNNING
        assert runtime.snapshot() == {"name": "srv", "status": "running", "online": True, "pingMs": 3.2}

    @pytest.mark.asyncio
    async def test_check_status_offline_while_running_marks_stopped(self):
        runtime = self.make_runtime()
        await runtime.start()
        self.health.check.return_value = result(False)

        await runtime.check_status()

        assert runtime.status is ServerStatus.STOPPED
        assert runtime.process is None
        assert self.handle.released is True
        self.supervisor.kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_check_status_error_while_running_marks_error(self):
        runtime = self.make_runtime(status=ServerStatus.RUNNING)
        self.health.check.side_effect = RuntimeError("probe exploded")

        health = await runtime.check_status()

        assert not health.online
        assert runtime.status is ServerStatus.ERROR

    @pytest.mark.asyncio
    async def test_check_status_offline_while_stopped_is_unchanged(self):
        runtime = self.make_runtime()
        self.health.check.return_value = result(False)

        await runtime.check_status()

        assert runtime.status is ServerStatus.STOPPED
        assert self.statuses == []

    def test_persistence_failure_does_not_raise(self):
        runtime = self.make_runtime()

        def failing_listener(name, status):
            raise PersistenceError("disk full")

        runtime.status_listener = failing_listener
        runtime.update_status(ServerStatus.RUNNING)

        assert runtime.status is ServerStatus.RUNNING


class TestRemoteRuntime(RuntimeTestCase):
    """Test ServerRuntime with a remote server kind."""

    @pytest.mark.asyncio
    async def test_start_reachable(self):
        runtime = self.make_runtime(host="mcp.example.com", port=443)
        self.health.check_port.return_value = result(True, HealthStrategy.PORT)

        await runtime.start()

        assert runtime.status is ServerStatus.RUNNING
        self.supervisor.spawn.assert_not_called()
        self.health.check_port.assert_awaited_once_with("mcp.example.com", 443)

    @pytest.mark.asyncio
    async def test_start_unreachable_raises(self):
        runtime = self.make_runtime(host="mcp.example.com", port=443)

        with pytest.raises(ServerError):
            await runtime.start()

        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_does_not_kill(self):
        runtime = self.make_runtime(host="mcp.example.com", port=443, status=ServerStatus.RUNNING)

        await runtime.stop()

        self.supervisor.kill.assert_not_called()
        self.health.kill_port_listeners.assert_not_called()
        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_check_prefers_sse_without_port(self):
        runtime = self.make_runtime(args=["--sse", "https://mcp.example.com/sse"], host="mcp.example.com")
        self.health.check_sse.return_value = result(True, HealthStrategy.SSE)

        await runtime.check_status()

        self.health.check_sse.assert_awaited_once()
        assert runtime.status is ServerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_sse_endpoint_wins_over_open_port(self):
        runtime = self.make_runtime(
            args=["--sse", "https://mcp.example.com/sse"],
            host="mcp.example.com",
            port=443,
            status=ServerStatus.RUNNING,
        )
        self.health.check_port.return_value = result(True, HealthStrategy.PORT)

        await runtime.check_status()

        self.health.check_sse.assert_awaited_once()
        self.health.check_port.assert_not_awaited()
        assert runtime.status is ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_check_falls_back_to_port_80(self):
        runtime = self.make_runtime(host="mcp.example.com")

        await runtime.check_status()

        self.health.check_port.assert_awaited_once_with("mcp.example.com", 80, timeout=0.5)
