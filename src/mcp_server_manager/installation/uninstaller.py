"""Uninstallation and cleanup of installed servers."""

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from ..config.models import MethodType, ServerDefinition, UserServerState
from .commands import run_command
from .exceptions import CommandError
from .manager import META_FILENAME, container_name
from .progress import ProgressReporter

logger = structlog.get_logger(__name__)


@dataclass
class UninstallResult:
    """Outcome of ``UninstallationManager.uninstall_server``."""

    success: bool
    server_name: str
    message: str = ""
    removed_items: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "serverName": self.server_name,
            "message": self.message,
            "removedItems": list(self.removed_items or []),
        }


class UninstallationManager:
    """Tears down docker artefacts and removes installation directories."""

    def __init__(self, progress: Optional[ProgressReporter] = None, command_timeout: float = 300.0):
        self.progress = progress or ProgressReporter()
        self.command_timeout = command_timeout

    async def uninstall_server(
        self,
        server_name: str,
        state: Optional[UserServerState],
        definition: Optional[ServerDefinition] = None,
    ) -> UninstallResult:
        """Remove an installed server.

        Args:
            server_name: Server to remove
            state: Persisted user state of the server
            definition: Catalog definition, used when the marker file is gone

        Returns:
            UninstallResult; failures are reported, not raised
        """
        removed: List[str] = []
        self._emit(server_name, "Starting uninstallation", 0)

        if state is None or not state.is_installed:
            self._emit(server_name, "Server is not installed", 100)
            return UninstallResult(False, server_name, f"Server '{server_name}' is not installed")

        install_dir = Path(state.installed_dir) if state.installed_dir else None
        meta = self._read_marker(install_dir)
        method_type = meta.get("type")
        if method_type is None and definition is not None:
            method = definition.get_method(state.installed_method)
            method_type = method.type if method else None

        try:
            if method_type == MethodType.DOCKER.value:
                self._emit(server_name, "Removing docker resources", 30)
                removed.extend(await self._remove_docker(server_name, install_dir, meta, definition, state))

            if install_dir is not None and install_dir.exists():
                self._emit(server_name, "Removing installation directory", 70)
                shutil.rmtree(install_dir)
                removed.append(str(install_dir))
        except OSError as e:
            logger.error("Uninstallation failed", server=server_name, error=str(e))
            self._emit(server_name, f"Uninstallation failed: {e}", 100)
            return UninstallResult(False, server_name, f"Failed to uninstall: {e}", removed)

        self._emit(server_name, "Uninstallation complete", 100)
        logger.info("Server uninstalled", server=server_name, removed=removed)
        return UninstallResult(True, server_name, f"Uninstalled '{server_name}'", removed)

    def _emit(self, server_name: str, status: str, percent: int) -> None:
        self.progress.emit(server_name, status, percent, operation="uninstall")

    @staticmethod
    def _read_marker(install_dir: Optional[Path]) -> Dict[str, Any]:
        if install_dir is None:
            return {}
        marker = install_dir / META_FILENAME
        if not marker.exists():
            return {}
        try:
            with open(marker, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Unreadable install marker", path=str(marker), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    async def _remove_docker(
        self,
        server_name: str,
        install_dir: Optional[Path],
        meta: Dict[str, Any],
        definition: Optional[ServerDefinition],
        state: UserServerState,
    ) -> List[str]:
        """Remove containers, volumes and compose stacks of a docker install.

        Docker errors are logged; directory removal still proceeds.
        """
        removed: List[str] = []

        compose_name = meta.get("dockerComposeFile")
        if compose_name and install_dir is not None:
            compose_path = install_dir / compose_name
            if compose_path.exists():
                try:
                    await run_command(
                        ["docker", "compose", "-f", str(compose_path), "down", "-v"],
                        cwd=str(install_dir),
                        timeout=self.command_timeout,
                    )
                    removed.append(f"compose:{compose_path}")
                except CommandError as e:
                    logger.warning("docker compose down failed", server=server_name, error=e.message)
            return removed

        image = meta.get("dockerImage")
        if image is None and definition is not None:
            method = definition.get_method(state.installed_method)
            image = method.docker_image if method else None

        filters = [f"name={container_name(server_name)}"]
        if image:
            filters.append(f"ancestor={image}")

        container_ids: List[str] = []
        for flt in filters:
            try:
                result = await run_command(
                    ["docker", "ps", "-a", "-q", "--filter", flt], timeout=60
                )
            except CommandError as e:
                logger.warning("Listing containers failed", server=server_name, error=e.message)
                continue
            for container_id in result.stdout.split():
                if container_id not in container_ids:
                    container_ids.append(container_id)

        for container_id in container_ids:
            try:
                await run_command(["docker", "stop", container_id], timeout=60, check=False)
                await run_command(["docker", "rm", "-v", container_id], timeout=60)
                removed.append(f"container:{container_id}")
            except CommandError as e:
                logger.warning(
                    "Removing container failed",
                    server=server_name,
                    container=container_id,
                    error=e.message,
                )

        return removed
