"""Installation of MCP servers from their catalog definitions."""

import json
import shutil
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog

from ..config.exceptions import ConfigurationError
from ..config.logging import sanitize_log_data
from ..config.models import (
    ExecutionSpec,
    InstallationMethod,
    Launcher,
    MethodType,
    ServerDefinition,
)
from ..config.resolver import apply_mode_override, build_execution_spec
from .bootstrap import BootstrapRegistry
from .commands import run_command, run_shell
from .exceptions import InstallationError
from .progress import ProgressReporter
from .selector import InstallMethodSelector
from .wrapper import WRAPPER_FILENAME, write_wrapper_script

logger = structlog.get_logger(__name__)

META_FILENAME = ".mcp-meta.json"
COMPOSE_FILENAME = "docker-compose.yml"


def container_name(server_name: str) -> str:
    return f"mcp-{server_name}"


@dataclass
class InstallResult:
    """Outcome of ``InstallationManager.install_server``."""

    success: bool
    server_name: str
    message: str = ""
    method_id: Optional[str] = None
    method: Optional[InstallationMethod] = None
    install_dir: Optional[str] = None
    launcher: Optional[Launcher] = None
    execution: Optional[ExecutionSpec] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "serverName": self.server_name,
            "message": self.message,
            "methodId": self.method_id,
            "methodType": self.method.type if self.method else None,
            "installDir": self.install_dir,
        }


class InstallationManager:
    """Executes an installation method and materializes its launcher."""

    def __init__(
        self,
        servers_dir: Path,
        selector: Optional[InstallMethodSelector] = None,
        bootstrap: Optional[BootstrapRegistry] = None,
        progress: Optional[ProgressReporter] = None,
        command_timeout: float = 900.0,
    ):
        """Initialize installation manager.

        Args:
            servers_dir: Parent directory of per-server install directories
            selector: Method selector used when no method is requested
            bootstrap: Toolchain bootstrappers for runner-based methods
            progress: Progress reporter events are published to
            command_timeout: Timeout for each external install step
        """
        self.servers_dir = Path(servers_dir)
        self.selector = selector or InstallMethodSelector()
        self.bootstrap = bootstrap or BootstrapRegistry.default(command_timeout)
        self.progress = progress or ProgressReporter()
        self.command_timeout = command_timeout

    def get_install_dir(self, server_name: str, method: InstallationMethod) -> Optional[Path]:
        """Directory a method installs into, None for ``local``."""
        if method.type == MethodType.LOCAL.value:
            return None
        if method.install_dir:
            return Path(method.install_dir).expanduser()
        return self.servers_dir / server_name

    async def install_server(
        self,
        server_name: str,
        definition: ServerDefinition,
        method_id: Optional[str] = None,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> InstallResult:
        """Install a server.

        Failures are reported through the returned result and progress
        events; this method does not raise.

        Args:
            server_name: Catalog key of the server
            definition: Catalog definition
            method_id: Method to use, selected automatically when None
            mode: Mode used to preview the execution spec
            inputs: User inputs for placeholder substitution

        Returns:
            InstallResult describing the materialized installation
        """
        inputs = dict(inputs or {})
        self.progress.emit(server_name, "Selecting installation method", 0)

        try:
            if method_id is not None:
                method = definition.get_method(method_id)
                if method is None:
                    raise InstallationError(
                        f"Server '{server_name}' has no installation method '{method_id}'",
                        {"available": list(definition.installation_methods)},
                    )
            else:
                method_id, method = await self.selector.select(definition)
        except InstallationError as e:
            return self._failed(server_name, e.message, method_id)

        self.progress.emit(server_name, f"Selected method '{method_id}'", 5)

        install_dir = self.get_install_dir(server_name, method)

        try:
            launcher = self._plan_launcher(server_name, definition, method, mode, install_dir)
            execution = build_execution_spec(
                method, mode, inputs, launcher=launcher, server_name=server_name
            )
        except ConfigurationError as e:
            return self._failed(server_name, e.message, method_id, method)

        created_dir = install_dir is not None and not install_dir.exists()

        logger.info(
            "Installing server",
            server=server_name,
            method=method_id,
            type=method.type,
            install_dir=str(install_dir) if install_dir else None,
        )

        try:
            if method.type == MethodType.GIT.value:
                await self._install_git(server_name, method, install_dir)
            elif method.type == MethodType.DOCKER.value:
                await self._install_docker(server_name, definition, method, install_dir, execution)
            elif method.type == MethodType.NPM.value:
                await self._install_npm(server_name, method, install_dir)
            elif method.type in (MethodType.UVX.value, MethodType.UV.value):
                await self._install_runner(server_name, method, install_dir)
            elif method.type == MethodType.LOCAL.value:
                self.progress.emit(server_name, "Local server, nothing to install", 50)
            else:
                raise InstallationError(f"Unsupported installation method type '{method.type}'")

            if install_dir is not None:
                self._write_marker(server_name, method_id, method, install_dir)

        except Exception as e:
            if created_dir:
                self._rollback(server_name, install_dir)
            message = e.message if isinstance(e, InstallationError) else str(e)
            logger.error("Installation failed", server=server_name, method=method_id, error=message)
            return self._failed(server_name, message, method_id, method)

        self.progress.emit(server_name, "Installation complete", 100)
        logger.info("Server installed", server=server_name, method=method_id)

        return InstallResult(
            success=True,
            server_name=server_name,
            message=f"Installed '{server_name}' using '{method_id}'",
            method_id=method_id,
            method=method,
            install_dir=str(install_dir) if install_dir else None,
            launcher=launcher,
            execution=execution,
        )

    def _failed(
        self,
        server_name: str,
        message: str,
        method_id: Optional[str] = None,
        method: Optional[InstallationMethod] = None,
    ) -> InstallResult:
        self.progress.emit(server_name, f"Installation failed: {message}", 100)
        return InstallResult(
            success=False,
            server_name=server_name,
            message=message,
            method_id=method_id,
            method=method,
        )

    def _plan_launcher(
        self,
        server_name: str,
        definition: ServerDefinition,
        method: InstallationMethod,
        mode: Optional[str],
        install_dir: Optional[Path],
    ) -> Launcher:
        """Compute the command prefix an installation will produce."""
        cwd = str(install_dir) if install_dir else None

        if method.type == MethodType.GIT.value:
            return Launcher(cwd=cwd)

        if method.type == MethodType.DOCKER.value:
            if method.docker_compose_file:
                compose_path = str(install_dir / COMPOSE_FILENAME)
                return Launcher(
                    command="docker",
                    leading_args=["compose", "-f", compose_path, "up"],
                    cwd=cwd,
                )
            if not method.docker_image:
                raise ConfigurationError(
                    f"Docker method of '{server_name}' needs dockerImage or dockerComposeFile"
                )
            leading = ["run", "-i", "--rm", "--name", container_name(server_name)]
            if definition.port:
                leading.extend(["-p", f"{definition.port}:{definition.port}"])
            _, env = apply_mode_override(method, mode)
            for key in env:
                leading.extend(["-e", key])
            leading.append(method.docker_image)
            return Launcher(command="docker", leading_args=leading, cwd=cwd)

        if method.type == MethodType.NPM.value:
            if method.command:
                return Launcher(cwd=cwd)
            if not method.package_name:
                raise ConfigurationError(f"npm method of '{server_name}' needs a package")
            return Launcher(command="npx", leading_args=[method.package_name], cwd=cwd)

        if method.type in (MethodType.UVX.value, MethodType.UV.value):
            tool = method.command or method.type
            wrapper = str(install_dir / WRAPPER_FILENAME)
            return Launcher(command=sys.executable, leading_args=[wrapper, tool], cwd=cwd)

        return Launcher()

    async def _install_git(
        self, server_name: str, method: InstallationMethod, install_dir: Path
    ) -> None:
        if not method.source:
            raise InstallationError(f"Git method of '{server_name}' has no source")

        steps = 2 if method.install_command else 1

        if (install_dir / ".git").is_dir():
            self.progress.emit(server_name, "Updating repository", 10)
            await run_command(["git", "pull"], cwd=str(install_dir), timeout=self.command_timeout)
        else:
            install_dir.mkdir(parents=True, exist_ok=True)
            argv: List[str] = ["git", "clone"]
            if method.branch:
                argv.extend(["--branch", method.branch])
            argv.extend([method.source, "."])
            self.progress.emit(server_name, "Cloning repository", 10)
            await run_command(argv, cwd=str(install_dir), timeout=self.command_timeout)

        if method.install_command:
            self.progress.emit(server_name, "Running install command", 10 + 80 // steps)
            await run_shell(method.install_command, cwd=str(install_dir), timeout=self.command_timeout)

    async def _install_docker(
        self,
        server_name: str,
        definition: ServerDefinition,
        method: InstallationMethod,
        install_dir: Path,
        execution: ExecutionSpec,
    ) -> None:
        install_dir.mkdir(parents=True, exist_ok=True)

        if method.docker_compose_file:
            compose_path = install_dir / COMPOSE_FILENAME
            with open(compose_path, "w", encoding="utf-8") as f:
                f.write(method.docker_compose_file)
            self.progress.emit(server_name, "Pulling compose images", 30)
            await run_command(
                ["docker", "compose", "-f", str(compose_path), "pull"],
                cwd=str(install_dir),
                timeout=self.command_timeout,
            )
            return

        image = method.docker_image
        self.progress.emit(server_name, f"Pulling image {image}", 20)
        await run_command(["docker", "pull", image], timeout=self.command_timeout)

        self.progress.emit(server_name, "Verifying container", 60)
        argv = ["docker", "run", "-d"]
        if definition.port:
            argv.extend(["-p", f"{definition.port}:{definition.port}"])
        for key, value in execution.env.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(image)

        logger.debug(
            "Starting verification container",
            server=server_name,
            image=image,
            env=sanitize_log_data(execution.env),
        )
        result = await run_command(argv, timeout=self.command_timeout)
        container_id = result.stdout.strip()

        try:
            inspect = await run_command(
                ["docker", "inspect", "-f", "{{.State.Running}}", container_id],
                timeout=60,
            )
            if inspect.stdout.strip() != "true":
                raise InstallationError(
                    f"Container for image '{image}' is not running after start",
                    {"container": container_id},
                )
        finally:
            await run_command(["docker", "rm", "-f", container_id], timeout=60, check=False)

    async def _install_npm(
        self, server_name: str, method: InstallationMethod, install_dir: Path
    ) -> None:
        package = method.package_name
        if not package:
            raise InstallationError(f"npm method of '{server_name}' needs a package")

        install_dir.mkdir(parents=True, exist_ok=True)
        package_json = {
            "name": f"mcp-{server_name}-install".lower(),
            "version": "1.0.0",
            "private": True,
            "dependencies": {package: method.tag or "latest"},
        }
        with open(install_dir / "package.json", "w", encoding="utf-8") as f:
            json.dump(package_json, f, indent=2)

        self.progress.emit(server_name, "Installing npm dependencies", 30)
        await run_command(["npm", "install"], cwd=str(install_dir), timeout=self.command_timeout)

        if method.install_command:
            self.progress.emit(server_name, "Running post-install command", 70)
            await run_shell(method.install_command, cwd=str(install_dir), timeout=self.command_timeout)

    async def _install_runner(
        self, server_name: str, method: InstallationMethod, install_dir: Path
    ) -> None:
        self.progress.emit(server_name, f"Checking {method.type} toolchain", 20)
        await self.bootstrap.ensure(method.type)

        self.progress.emit(server_name, "Writing launcher", 70)
        write_wrapper_script(install_dir)

    def _write_marker(
        self,
        server_name: str,
        method_id: str,
        method: InstallationMethod,
        install_dir: Path,
    ) -> None:
        meta = {
            "name": server_name,
            "methodId": method_id,
            "type": method.type,
            "installedAt": datetime.now().isoformat(),
        }
        if method.docker_image:
            meta["dockerImage"] = method.docker_image
        if method.docker_compose_file:
            meta["dockerComposeFile"] = COMPOSE_FILENAME
        if method.package_name:
            meta["package"] = method.package_name

        install_dir.mkdir(parents=True, exist_ok=True)
        with open(install_dir / META_FILENAME, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)

    def _rollback(self, server_name: str, install_dir: Path) -> None:
        if not install_dir.exists():
            return
        try:
            shutil.rmtree(install_dir)
            logger.info("Removed partial installation", server=server_name, path=str(install_dir))
        except OSError as e:
            logger.warning(
                "Could not remove partial installation",
                server=server_name,
                path=str(install_dir),
                error=str(e),
            )
