"""Toolchain probing and installation method selection."""

import os
import sys
from typing import Dict, List, Optional, Tuple

import structlog

from ..config.models import InstallationMethod, MethodType, ServerDefinition
from .commands import run_command
from .exceptions import CommandError, NoMethodAvailableError

logger = structlog.get_logger(__name__)

METHOD_PRIORITY: List[str] = [
    MethodType.DOCKER.value,
    MethodType.UVX.value,
    MethodType.NPM.value,
    MethodType.GIT.value,
    MethodType.LOCAL.value,
]

# Binary probed for each method type
PROBE_COMMANDS: Dict[str, str] = {
    MethodType.DOCKER.value: "docker",
    MethodType.UVX.value: "uvx",
    MethodType.UV.value: "uv",
    MethodType.NPM.value: "npm",
    MethodType.GIT.value: "git",
}


def docker_host() -> str:
    """Default Docker daemon endpoint for this platform."""
    if sys.platform == "win32":
        return "npipe:////./pipe/docker_engine"
    return "unix:///var/run/docker.sock"


class InstallMethodSelector:
    """Picks the installation method to use for a server definition."""

    def __init__(self, probe_timeout: float = 15.0):
        self.probe_timeout = probe_timeout

    async def is_method_available(self, method_type: str) -> bool:
        """Check whether the toolchain for a method type is usable.

        Any failure (missing binary, non-zero exit, timeout) means unavailable.
        """
        if method_type == MethodType.LOCAL.value:
            return True

        tool = PROBE_COMMANDS.get(method_type)
        if tool is None:
            logger.warning("Unknown installation method type", method_type=method_type)
            return False

        try:
            await run_command([tool, "--version"], timeout=self.probe_timeout)
            if method_type == MethodType.DOCKER.value:
                # The CLI may exist while the daemon is down
                await run_command(
                    ["docker", "info"],
                    env={"DOCKER_HOST": os.environ.get("DOCKER_HOST", docker_host())},
                    timeout=self.probe_timeout,
                )
        except CommandError as e:
            logger.debug("Toolchain unavailable", method_type=method_type, error=e.message)
            return False

        return True

    async def probe_all(self) -> Dict[str, bool]:
        """Return availability for every known method type."""
        results: Dict[str, bool] = {}
        for method_type in [m.value for m in MethodType]:
            results[method_type] = await self.is_method_available(method_type)
        return results

    async def select(
        self, definition: ServerDefinition
    ) -> Tuple[str, InstallationMethod]:
        """Select an installation method.

        Order: the default method when its toolchain is available, then the
        first available type in priority order, then the first method of the
        catalog regardless of availability.

        Raises:
            NoMethodAvailableError: If the definition has no methods
        """
        methods = definition.installation_methods
        if not methods:
            raise NoMethodAvailableError(
                f"Server '{definition.name}' has no installation methods",
                {"server": definition.name},
            )

        availability: Dict[str, bool] = {}

        async def available(method_type: str) -> bool:
            if method_type not in availability:
                availability[method_type] = await self.is_method_available(method_type)
            return availability[method_type]

        default_id = definition.default_method
        if default_id and default_id in methods:
            if await available(methods[default_id].type):
                logger.info("Selected default method", server=definition.name, method=default_id)
                return default_id, methods[default_id]

        for method_type in METHOD_PRIORITY:
            method_id = self._find_method_of_type(methods, method_type)
            if method_id is None:
                continue
            if await available(method_type):
                logger.info(
                    "Selected method by priority", server=definition.name, method=method_id
                )
                return method_id, methods[method_id]

        method_id = next(iter(methods))
        logger.warning(
            "No toolchain available, falling back to first method",
            server=definition.name,
            method=method_id,
            availability=availability,
        )
        return method_id, methods[method_id]

    @staticmethod
    def _find_method_of_type(
        methods: Dict[str, InstallationMethod], method_type: str
    ) -> Optional[str]:
        if method_type in methods and methods[method_type].type == method_type:
            return method_type
        for method_id, method in methods.items():
            if method.type == method_type:
                return method_id
        return None
