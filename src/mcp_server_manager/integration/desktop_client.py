"""Registration of installed servers with the Claude desktop client."""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from ..config.exceptions import ConfigurationError
from ..config.models import ExecutionSpec
from ..config.persistence import atomic_write_json, load_json

logger = structlog.get_logger(__name__)

CLIENT_CONFIG_NAME = "claude_desktop_config.json"


def default_client_config_path() -> Path:
    """Location of the desktop client's config file on this platform."""
    appdata = os.environ.get("APPDATA")
    if sys.platform == "win32" and appdata:
        return Path(appdata) / "Claude" / CLIENT_CONFIG_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Claude" / CLIENT_CONFIG_NAME
    return Path.home() / ".config" / "Claude" / CLIENT_CONFIG_NAME


class DesktopClientIntegration:
    """Adds and removes entries under ``mcpServers`` in the client config."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path) if config_path else default_client_config_path()

    def _read(self) -> Dict[str, Any]:
        try:
            data = load_json(self.config_path)
        except (OSError, ValueError) as e:
            raise ConfigurationError(
                f"Cannot read desktop client config {self.config_path}",
                {"error": str(e)},
            ) from e
        return data or {}

    def get_connected_servers(self) -> List[str]:
        servers = self._read().get("mcpServers") or {}
        return sorted(servers)

    def is_server_connected(self, server_name: str) -> bool:
        return server_name in (self._read().get("mcpServers") or {})

    def connect_server(self, server_name: str, execution: ExecutionSpec) -> None:
        """Register a resolved server with the client.

        Raises:
            ConfigurationError: If the client config cannot be read or written
        """
        data = self._read()
        servers = data.setdefault("mcpServers", {})

        entry: Dict[str, Any] = {"command": execution.command, "args": list(execution.args)}
        if execution.env:
            entry["env"] = dict(execution.env)
        servers[server_name] = entry

        atomic_write_json(self.config_path, data)
        logger.info("Connected server to desktop client", server=server_name, path=str(self.config_path))

    def disconnect_server(self, server_name: str) -> bool:
        """Remove a server from the client. Returns whether it was present."""
        data = self._read()
        servers = data.get("mcpServers") or {}
        if server_name not in servers:
            return False

        del servers[server_name]
        data["mcpServers"] = servers
        atomic_write_json(self.config_path, data)
        logger.info("Disconnected server from desktop client", server=server_name)
        return True
