"""Per-server runtime state machine."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from ..config.exceptions import ConfigurationError
from ..config.logging import get_logger
from ..config.models import RuntimeConfig
from .exceptions import ServerError
from .health import HealthChecker, HealthResult, HealthStrategy, select_strategy
from .polling import poll_until
from .process_supervisor import Handle, ProcessHandle, ProcessSupervisor

logger = structlog.get_logger(__name__)

REMOTE_FALLBACK_PORT = 80
REMOTE_FALLBACK_TIMEOUT = 0.5


class ServerStatus(str, Enum):
    """Lifecycle status of a server runtime."""

    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


StatusListener = Callable[[str, ServerStatus], None]


class ServerKind(ABC):
    """Capability that knows how to start, stop and probe one kind of server."""

    is_remote = False

    @abstractmethod
    async def start(self, runtime: "ServerRuntime") -> None:
        """Bring the server up; raises ServerError on failure."""

    @abstractmethod
    async def stop(self, runtime: "ServerRuntime") -> None:
        """Take the server down. Must not raise."""

    @abstractmethod
    async def probe(self, runtime: "ServerRuntime", sse_timeout: Optional[float] = None) -> HealthResult:
        """Run a single health check."""


class LocalServerKind(ServerKind):
    """A server whose process is spawned and owned by this manager."""

    async def start(self, runtime: "ServerRuntime") -> None:
        stale = runtime.release_process()
        if stale is not None:
            runtime.supervisor.kill(stale)

        try:
            handle = await runtime.supervisor.spawn(
                runtime.config.execution, on_exit=runtime.on_process_exit, name=runtime.name
            )
        except ServerError:
            runtime.update_status(ServerStatus.ERROR)
            raise

        runtime.attach_process(handle)
        runtime.update_status(ServerStatus.RUNNING)

    async def stop(self, runtime: "ServerRuntime") -> None:
        handle = runtime.release_process()
        supervisor = runtime.supervisor
        health = runtime.health
        strategy, target = select_strategy(runtime.config)

        def kill_handle() -> None:
            if handle is not None:
                supervisor.kill(handle)

        if strategy is HealthStrategy.SSE:
            kill_handle()

            async def sse_closed() -> bool:
                result = await health.check_sse(target, timeout=runtime.sse_stop_timeout)
                return not result.online

            async def retry_kill(attempt: int) -> None:
                kill_handle()

            closed = await poll_until(
                sse_closed, runtime.stop_attempts, runtime.stop_backoff, on_retry=retry_kill
            )
            if not closed:
                logger.warning("SSE endpoint still reachable after stop", server=runtime.name, url=target)

        elif strategy is HealthStrategy.PORT:
            port = runtime.config.port
            await health.kill_port_listeners(port)
            kill_handle()

            async def port_closed() -> bool:
                result = await health.check_port(runtime.config.probe_host, port)
                return not result.online

            async def retry_port_kill(attempt: int) -> None:
                await health.kill_port_listeners(port)

            closed = await poll_until(
                port_closed, runtime.stop_attempts, runtime.stop_backoff, on_retry=retry_port_kill
            )
            if not closed:
                logger.warning("Port still open after stop", server=runtime.name, port=port)

        else:
            kill_handle()
            if handle is not None:
                await handle.wait(timeout=runtime.stop_attempts * runtime.stop_backoff)

    async def probe(self, runtime: "ServerRuntime", sse_timeout: Optional[float] = None) -> HealthResult:
        return await runtime.health.check(runtime.config, runtime.process, sse_timeout=sse_timeout)


class RemoteServerKind(ServerKind):
    """A server hosted elsewhere; only its reachability is tracked."""

    is_remote = True

    async def start(self, runtime: "ServerRuntime") -> None:
        result = await self.probe(runtime)
        if not result.online:
            raise ServerError(
                f"Remote server '{runtime.name}' is not reachable",
                "Check that the remote host is up and the address is correct",
                {"host": runtime.config.host, "reason": result.message},
            )
        runtime.update_status(ServerStatus.RUNNING)

    async def stop(self, runtime: "ServerRuntime") -> None:
        # Remote processes are not ours to stop
        return None

    async def probe(self, runtime: "ServerRuntime", sse_timeout: Optional[float] = None) -> HealthResult:
        config = runtime.config
        health = runtime.health
        sse_url = config.execution.find_sse_endpoint()
        if sse_url:
            return await health.check_sse(sse_url, sse_timeout)
        if config.port:
            return await health.check_port(config.probe_host, config.port)
        return await health.check_port(
            config.probe_host, REMOTE_FALLBACK_PORT, timeout=REMOTE_FALLBACK_TIMEOUT
        )


class ServerRuntime:
    """Live state of one server: status, owned process and last health."""

    def __init__(
        self,
        name: str,
        config: RuntimeConfig,
        supervisor: ProcessSupervisor,
        health: HealthChecker,
        status_listener: Optional[StatusListener] = None,
        initial_status: ServerStatus = ServerStatus.STOPPED,
        stop_attempts: int = 3,
        stop_backoff: float = 0.5,
        sse_stop_timeout: float = 1.0,
    ):
        self.name = name
        self.config = config
        self.kind: ServerKind = self._kind_for(config)
        self.supervisor = supervisor
        self.health = health
        self.status_listener = status_listener
        self.status = initial_status
        self.stop_attempts = stop_attempts
        self.stop_backoff = stop_backoff
        self.sse_stop_timeout = sse_stop_timeout

        self.online = False
        self.ping_ms: Optional[float] = None
        self.last_message = ""
        self._process: Optional[Handle] = None
        self._logger = get_logger(__name__, server=name)

    @staticmethod
    def _kind_for(config: RuntimeConfig) -> ServerKind:
        return RemoteServerKind() if config.is_remote else LocalServerKind()

    @property
    def process(self) -> Optional[Handle]:
        return self._process

    @property
    def is_remote(self) -> bool:
        return self.kind.is_remote

    def rebind(self, config: RuntimeConfig) -> None:
        """Swap in a new runtime config; takes effect on the next start."""
        self.config = config
        self.kind = self._kind_for(config)

    def attach_process(self, handle: Handle) -> None:
        self._process = handle

    def release_process(self) -> Optional[Handle]:
        """Give up ownership of the current process; its exit will be ignored."""
        handle = self._process
        self._process = None
        if handle is not None:
            handle.released = True
        return handle

    def update_status(self, status: ServerStatus) -> None:
        """Set the status and persist whether the server is running."""
        previous = self.status
        self.status = status
        if previous != status:
            self._logger.info("Status changed", previous=previous.value, status=status.value)

        if self.status_listener is None:
            return
        try:
            self.status_listener(self.name, status)
        except ConfigurationError as e:
            self._logger.error("Failed to persist status", error=str(e))

    def on_process_exit(self, handle: ProcessHandle, returncode: int) -> None:
        """Exit observer for the owned process."""
        if handle.released or handle is not self._process:
            self._logger.debug("Ignoring exit of released process", pid=handle.pid)
            return

        self._process = None
        self.online = False
        if returncode == 0:
            self.update_status(ServerStatus.STOPPED)
        else:
            self._logger.warning("Server process crashed", returncode=returncode)
            self.update_status(ServerStatus.ERROR)

    async def start(self) -> None:
        self._logger.info("Starting server", remote=self.is_remote)
        await self.kind.start(self)

    async def stop(self) -> None:
        """Stop the server; always ends in ``stopped``."""
        self._logger.info("Stopping server", remote=self.is_remote)
        try:
            await self.kind.stop(self)
        except Exception as e:
            self._logger.error("Error while stopping server", error=str(e))
        finally:
            self.online = False
            self.ping_ms = None
            self.update_status(ServerStatus.STOPPED)

    async def check_status(self, sse_timeout: Optional[float] = None) -> HealthResult:
        """Run a health check and reconcile the status with it."""
        try:
            result = await self.kind.probe(self, sse_timeout=sse_timeout)
        except Exception as e:
            self._logger.error("Health check failed", error=str(e))
            self.online = False
            self.ping_ms = None
            self.last_message = str(e)
            if self.status == ServerStatus.RUNNING:
                self.update_status(ServerStatus.ERROR)
            strategy, _ = select_strategy(self.config)
            return HealthResult(strategy=strategy, online=False, message=str(e))

        self.online = result.online
        self.ping_ms = result.ping_ms
        self.last_message = result.message

        if result.online and self.status != ServerStatus.RUNNING:
            self.update_status(ServerStatus.RUNNING)
        elif not result.online and self.status == ServerStatus.RUNNING:
            self.release_process()
            self.update_status(ServerStatus.STOPPED)

        return result

    def snapshot(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "online": self.online,
        }
        if self.ping_ms is not None:
            result["pingMs"] = self.ping_ms
        return result
