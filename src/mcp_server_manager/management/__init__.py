"""Server management package for MCP server lifecycle control."""

from .exceptions import HealthCheckError, ServerError, SpawnError
from .health import HealthChecker, HealthResult, HealthStrategy
from .polling import poll_until
from .process_supervisor import AdoptedProcessHandle, ProcessHandle, ProcessSupervisor
from .runtime import (
    LocalServerKind,
    RemoteServerKind,
    ServerKind,
    ServerRuntime,
    ServerStatus,
)
from .server_manager import MCPServerManager, OperationResult

__all__ = [
    "AdoptedProcessHandle",
    "HealthCheckError",
    "HealthChecker",
    "HealthResult",
    "HealthStrategy",
    "LocalServerKind",
    "MCPServerManager",
    "OperationResult",
    "ProcessHandle",
    "ProcessSupervisor",
    "RemoteServerKind",
    "ServerError",
    "ServerKind",
    "ServerRuntime",
    "ServerStatus",
    "SpawnError",
    "poll_until",
]
