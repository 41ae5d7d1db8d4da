"""Registry of server runtimes coordinating lifecycle operations."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog

from ..config.models import RuntimeConfig
from ..config.settings import HealthCheckConfig
from .exceptions import ServerError
from .health import HealthChecker
from .process_supervisor import ProcessSupervisor
from .runtime import ServerRuntime, ServerStatus, StatusListener

logger = structlog.get_logger(__name__)


@dataclass
class OperationResult:
    """Outcome of a lifecycle operation."""

    success: bool
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class MCPServerManager:
    """Main server manager holding one runtime per server name."""

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        health: Optional[HealthChecker] = None,
        status_listener: Optional[StatusListener] = None,
        health_config: Optional[HealthCheckConfig] = None,
    ):
        """Initialize server manager.

        Args:
            supervisor: Process supervisor used by local runtimes
            health: Health checker used by all runtimes
            status_listener: Called on every status update, used to persist
                whether a server is running
            health_config: Stop verification and timeout settings
        """
        self.health_config = health_config or HealthCheckConfig()
        self.supervisor = supervisor or ProcessSupervisor()
        self.health = health or HealthChecker(
            sse_timeout=self.health_config.sse_timeout,
            port_timeout=self.health_config.port_timeout,
        )
        self.status_listener = status_listener

        self.runtimes: Dict[str, ServerRuntime] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def exclusive(self, server_name: str) -> asyncio.Lock:
        """Lock serializing all operations on one server."""
        lock = self._locks.get(server_name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[server_name] = lock
        return lock

    def _create_runtime(
        self,
        server_name: str,
        config: RuntimeConfig,
        status: ServerStatus = ServerStatus.STOPPED,
    ) -> ServerRuntime:
        return ServerRuntime(
            server_name,
            config,
            supervisor=self.supervisor,
            health=self.health,
            status_listener=self.status_listener,
            initial_status=status,
            stop_attempts=self.health_config.stop_attempts,
            stop_backoff=self.health_config.stop_backoff,
            sse_stop_timeout=self.health_config.sse_stop_timeout,
        )

    def load(
        self,
        configs: Dict[str, RuntimeConfig],
        running: Iterable[str] = (),
        pids: Optional[Dict[str, int]] = None,
    ) -> None:
        """Create runtimes for resolved configs.

        Args:
            configs: Runtime configs keyed by server name
            running: Names persisted as running; they start in ``running``
                and are corrected by the next status update
            pids: Persisted process ids of running local servers; live ones
                are adopted so they can be checked and stopped
        """
        running = set(running)
        pids = pids or {}
        for name, config in configs.items():
            status = ServerStatus.RUNNING if name in running else ServerStatus.STOPPED
            runtime = self._create_runtime(name, config, status)
            pid = pids.get(name)
            if status is ServerStatus.RUNNING and pid and not runtime.is_remote:
                handle = self.supervisor.adopt(pid, config.execution, name=name)
                if handle is not None:
                    runtime.attach_process(handle)
            self.runtimes[name] = runtime
        logger.info("Server runtimes loaded", count=len(self.runtimes))

    def get_runtime(self, server_name: str) -> Optional[ServerRuntime]:
        return self.runtimes.get(server_name)

    def get_status(self) -> List[Dict[str, Any]]:
        """Snapshot of every runtime."""
        return [runtime.snapshot() for runtime in self.runtimes.values()]

    async def start_server(self, server_name: str) -> OperationResult:
        """Start a server; a no-op when it is already running."""
        async with self.exclusive(server_name):
            return await self.start_server_unlocked(server_name)

    async def start_server_unlocked(self, server_name: str) -> OperationResult:
        """Start a server; the caller must hold ``exclusive(server_name)``."""
        runtime = self.runtimes.get(server_name)
        if runtime is None:
            return OperationResult(False, f"Server '{server_name}' not found")

        if runtime.status == ServerStatus.RUNNING:
            return OperationResult(True, f"Server '{server_name}' is already running")

        try:
            await runtime.start()
        except ServerError as e:
            logger.error("Failed to start server", server=server_name, error=e.message)
            details = {"suggestion": e.suggestion} if e.suggestion else {}
            return OperationResult(False, e.message, details)

        details: Dict[str, Any] = {}
        if runtime.process is not None:
            details["pid"] = runtime.process.pid
        return OperationResult(True, f"Server '{server_name}' started", details)

    async def stop_server(self, server_name: str) -> OperationResult:
        """Stop a server; a no-op when it is already stopped."""
        async with self.exclusive(server_name):
            return await self.stop_server_unlocked(server_name)

    async def stop_server_unlocked(self, server_name: str) -> OperationResult:
        """Stop a server; the caller must hold ``exclusive(server_name)``."""
        runtime = self.runtimes.get(server_name)
        if runtime is None:
            return OperationResult(False, f"Server '{server_name}' not found")

        if runtime.status == ServerStatus.STOPPED:
            return OperationResult(True, f"Server '{server_name}' is already stopped")

        await runtime.stop()
        return OperationResult(True, f"Server '{server_name}' stopped")

    async def update_statuses(self) -> List[Dict[str, Any]]:
        """Health-check every runtime concurrently and reconcile statuses.

        A runtime busy with another operation reports its cached snapshot;
        a failing check is logged and does not affect the others.
        """

        async def _update(runtime: ServerRuntime) -> Dict[str, Any]:
            lock = self.exclusive(runtime.name)
            if lock.locked():
                return runtime.snapshot()
            try:
                async with lock:
                    await runtime.check_status()
            except Exception as e:
                logger.error("Status update failed", server=runtime.name, error=str(e))
            return runtime.snapshot()

        return list(
            await asyncio.gather(*(_update(runtime) for runtime in list(self.runtimes.values())))
        )

    def update_execution_details(self, server_name: str, config: RuntimeConfig) -> ServerRuntime:
        """Rebind a runtime to a new config, creating it if needed."""
        runtime = self.runtimes.get(server_name)
        if runtime is None:
            runtime = self._create_runtime(server_name, config)
            self.runtimes[server_name] = runtime
        else:
            runtime.rebind(config)
        return runtime

    def remove_server(self, server_name: str) -> Optional[ServerRuntime]:
        self._locks.pop(server_name, None)
        return self.runtimes.pop(server_name, None)

    async def shutdown(self) -> None:
        """Stop every local server whose process this manager owns."""
        owned = [
            name
            for name, runtime in self.runtimes.items()
            if not runtime.is_remote and runtime.process is not None
        ]
        for name in owned:
            await self.stop_server(name)
        if owned:
            logger.info("Stopped owned servers", servers=owned)
