"""Toolchain bootstrapping for installation methods that need a runner."""

import sys
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import structlog

from ..config.models import MethodType
from .commands import run_command, run_shell
from .exceptions import CommandError, InstallationError

logger = structlog.get_logger(__name__)

UV_INSTALL_SCRIPT_POSIX = "curl -LsSf https://astral.sh/uv/install.sh | sh"
UV_INSTALL_SCRIPT_WINDOWS = (
    'powershell -ExecutionPolicy ByPass -c "irm https://astral.sh/uv/install.ps1 | iex"'
)


class ToolBootstrapper(ABC):
    """Makes sure the tool behind one or more method types is installed."""

    method_types: Sequence[str] = ()

    def __init__(self, timeout: float = 900.0):
        self.timeout = timeout

    @abstractmethod
    async def is_available(self, method_type: str) -> bool:
        """Whether the tool for ``method_type`` already works."""

    @abstractmethod
    async def install(self) -> None:
        """Install the tool, raising InstallationError on failure."""

    async def ensure(self, method_type: str) -> None:
        if await self.is_available(method_type):
            return
        logger.info("Bootstrapping toolchain", method_type=method_type)
        await self.install()
        if not await self.is_available(method_type):
            raise InstallationError(
                f"Toolchain for '{method_type}' is still unavailable after bootstrap",
                {"method_type": method_type},
            )


class UvBootstrapper(ToolBootstrapper):
    """Installs ``uv`` (which also provides ``uvx``).

    Tries a user-level pip install first, then the official standalone
    installer for the platform.
    """

    method_types = (MethodType.UVX.value, MethodType.UV.value)

    async def is_available(self, method_type: str) -> bool:
        tool = "uvx" if method_type == MethodType.UVX.value else "uv"
        try:
            await run_command([tool, "--version"], timeout=30)
        except CommandError:
            return False
        return True

    def _installer_script(self) -> str:
        if sys.platform == "win32":
            return UV_INSTALL_SCRIPT_WINDOWS
        return UV_INSTALL_SCRIPT_POSIX

    async def install(self) -> None:
        errors: List[str] = []

        try:
            await run_command(
                [sys.executable, "-m", "pip", "install", "--user", "uv"],
                timeout=self.timeout,
            )
            logger.info("Installed uv with pip")
            return
        except CommandError as e:
            errors.append(e.message)
            logger.warning("pip install of uv failed", error=e.message)

        try:
            await run_shell(self._installer_script(), timeout=self.timeout)
            logger.info("Installed uv with the standalone installer")
            return
        except CommandError as e:
            errors.append(e.message)
            logger.warning("Standalone uv installer failed", error=e.message)

        raise InstallationError("Failed to install uv", {"attempts": errors})


class BootstrapRegistry:
    """Maps method types to the bootstrapper responsible for them."""

    def __init__(self, bootstrappers: Optional[Sequence[ToolBootstrapper]] = None):
        self._by_type: Dict[str, ToolBootstrapper] = {}
        for bootstrapper in bootstrappers or ():
            self.register(bootstrapper)

    @classmethod
    def default(cls, timeout: float = 900.0) -> "BootstrapRegistry":
        return cls([UvBootstrapper(timeout=timeout)])

    def register(self, bootstrapper: ToolBootstrapper) -> None:
        for method_type in bootstrapper.method_types:
            self._by_type[method_type] = bootstrapper

    def get(self, method_type: str) -> Optional[ToolBootstrapper]:
        return self._by_type.get(method_type)

    async def ensure(self, method_type: str) -> None:
        """Bootstrap the tool for ``method_type``; no-op if none is registered."""
        bootstrapper = self.get(method_type)
        if bootstrapper is not None:
            await bootstrapper.ensure(method_type)
