"""Health checking of MCP servers: SSE, TCP port and process handle."""

import asyncio
import json
import os
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp
import psutil
import structlog

from ..config.logging import log_health_probe
from ..config.models import RuntimeConfig
from ..installation.commands import run_shell
from ..installation.exceptions import CommandError
from .exceptions import HealthCheckError
from .process_supervisor import Handle

logger = structlog.get_logger(__name__)

SSE_CONTENT_TYPES = ("text/event-stream", "application/json")


class HealthStrategy(Enum):
    """How a server's liveness is observed."""

    SSE = "sse"
    PORT = "port"
    PROCESS = "process"


@dataclass
class HealthResult:
    """Result of a single health check."""

    strategy: HealthStrategy
    online: bool
    ping_ms: Optional[float] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "online": self.online,
            "pingMs": self.ping_ms,
            "message": self.message,
        }


def select_strategy(
    config: RuntimeConfig,
) -> Tuple[HealthStrategy, Optional[str]]:
    """Pick the health strategy for a runtime config.

    Returns:
        (strategy, target) where target is the SSE URL, ``host:port``, or None
    """
    sse_url = config.execution.find_sse_endpoint()
    if sse_url:
        return HealthStrategy.SSE, sse_url
    if config.port:
        return HealthStrategy.PORT, f"{config.probe_host}:{config.port}"
    return HealthStrategy.PROCESS, None


def is_error_payload(chunk: bytes) -> bool:
    """Whether a first body chunk is a JSON error object."""
    try:
        data = json.loads(chunk.decode("utf-8").strip())
    except (UnicodeDecodeError, ValueError):
        return False
    return isinstance(data, dict) and ("code" in data or "message" in data)


class HealthChecker:
    """Runs health probes with bounded timeouts."""

    def __init__(
        self,
        sse_timeout: float = 3.0,
        port_timeout: float = 1.0,
        first_chunk_timeout: float = 0.5,
    ):
        self.sse_timeout = sse_timeout
        self.port_timeout = port_timeout
        self.first_chunk_timeout = first_chunk_timeout

    async def check(
        self,
        config: RuntimeConfig,
        handle: Optional[Handle] = None,
        sse_timeout: Optional[float] = None,
    ) -> HealthResult:
        """Check a server with the first matching strategy (SSE, port, process)."""
        strategy, _ = select_strategy(config)
        if strategy is HealthStrategy.SSE:
            return await self.check_sse(config.execution.find_sse_endpoint(), sse_timeout)
        if strategy is HealthStrategy.PORT:
            return await self.check_port(config.probe_host, config.port)
        return self.check_process(handle)

    async def check_sse(self, url: str, timeout: Optional[float] = None) -> HealthResult:
        """Probe an SSE endpoint.

        Online when the endpoint answers 200 with an SSE or JSON content
        type, or with any body, unless the first chunk is a JSON error object.
        """
        timeout = self.sse_timeout if timeout is None else timeout
        start_time = time.monotonic()
        online = False
        message = ""
        ping_ms: Optional[float] = None

        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as session:
                async with session.get(
                    url, headers={"Accept": "text/event-stream"}
                ) as response:
                    ping_ms = (time.monotonic() - start_time) * 1000

                    if response.status != 200:
                        message = f"SSE endpoint returned status {response.status}"
                    else:
                        content_type = response.headers.get("Content-Type", "").lower()
                        typed = any(ct in content_type for ct in SSE_CONTENT_TYPES)
                        chunk = await self._first_chunk(
                            response, self.first_chunk_timeout if typed else timeout
                        )

                        if chunk and is_error_payload(chunk):
                            message = "SSE endpoint returned an error payload"
                        elif typed or chunk:
                            online = True
                            message = "SSE endpoint is reachable"
                        else:
                            message = "SSE endpoint returned an empty response"

        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            message = f"SSE check failed: {str(e) or type(e).__name__}"

        duration_ms = (time.monotonic() - start_time) * 1000
        log_health_probe(logger, HealthStrategy.SSE.value, online, duration_ms, url=url)
        return HealthResult(
            strategy=HealthStrategy.SSE,
            online=online,
            ping_ms=round(ping_ms, 1) if online and ping_ms is not None else None,
            message=message,
        )

    @staticmethod
    async def _first_chunk(response: aiohttp.ClientResponse, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(response.content.readany(), timeout=timeout)
        except asyncio.TimeoutError:
            return b""

    async def check_port(
        self, host: str, port: int, timeout: Optional[float] = None
    ) -> HealthResult:
        """Probe a TCP port by connecting to it.

        Raises:
            HealthCheckError: If the port number is invalid
        """
        if not 0 < int(port) < 65536:
            raise HealthCheckError(
                f"Invalid port {port} for {host}",
                "Fix the port in the server configuration",
            )
        timeout = self.port_timeout if timeout is None else timeout
        start_time = time.monotonic()

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            log_health_probe(logger, HealthStrategy.PORT.value, False, duration_ms, port=port)
            return HealthResult(
                strategy=HealthStrategy.PORT,
                online=False,
                message=f"Cannot connect to {host}:{port}: {str(e) or type(e).__name__}",
            )

        duration_ms = (time.monotonic() - start_time) * 1000
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

        log_health_probe(logger, HealthStrategy.PORT.value, True, duration_ms, port=port)
        return HealthResult(
            strategy=HealthStrategy.PORT,
            online=True,
            ping_ms=round(duration_ms, 1),
            message=f"Port {port} is reachable",
        )

    @staticmethod
    def check_process(handle: Optional[Handle]) -> HealthResult:
        """A server without network endpoints is online while its process lives."""
        online = handle is not None and not handle.has_exited
        return HealthResult(
            strategy=HealthStrategy.PROCESS,
            online=online,
            message="Process is running" if online else "No running process",
        )

    async def kill_port_listeners(self, port: int) -> int:
        """Kill every process listening on ``port``.

        Uses psutil; falls back to the platform command line tools when
        connection enumeration is not permitted.

        Returns:
            int: Number of processes killed via psutil (0 after a fallback)
        """
        own_pid = os.getpid()
        killed = 0

        try:
            connections = psutil.net_connections(kind="inet")
        except psutil.AccessDenied:
            logger.debug("psutil denied connection listing, using fallback", port=port)
            await self._kill_port_listeners_fallback(port)
            return 0

        pids = {
            conn.pid
            for conn in connections
            if conn.laddr
            and conn.laddr.port == port
            and conn.status == psutil.CONN_LISTEN
            and conn.pid
            and conn.pid != own_pid
        }

        for pid in pids:
            try:
                psutil.Process(pid).kill()
                killed += 1
                logger.info("Killed port listener", port=port, pid=pid)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("Not permitted to kill port listener", port=port, pid=pid)

        return killed

    async def _kill_port_listeners_fallback(self, port: int) -> None:
        if sys.platform == "win32":
            command = (
                f'for /f "tokens=5" %a in (\'netstat -aon ^| findstr :{port}\') '
                f"do taskkill /F /PID %a"
            )
        else:
            command = f"lsof -ti:{port} | xargs kill -9"

        try:
            await run_shell(command, timeout=10, check=False)
        except CommandError as e:
            logger.warning("Port listener fallback failed", port=port, error=e.message)
