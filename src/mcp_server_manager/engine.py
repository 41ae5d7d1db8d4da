"""Engine wiring configuration, installation and runtime management together."""

import asyncio
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from .config.exceptions import ConfigurationError
from .config.models import ExecutionSpec
from .config.resolver import ConfigResolver
from .config.settings import Settings
from .installation.bootstrap import BootstrapRegistry
from .installation.manager import InstallationManager
from .installation.progress import ProgressReporter
from .installation.selector import InstallMethodSelector
from .installation.uninstaller import UninstallationManager
from .management.runtime import ServerStatus
from .management.server_manager import MCPServerManager, OperationResult

logger = structlog.get_logger(__name__)

StatusCallback = Callable[[List[Dict[str, Any]]], Any]


class Engine:
    """Orchestrates install, uninstall, configure and lifecycle operations."""

    def __init__(
        self,
        settings: Settings,
        resolver: ConfigResolver,
        selector: InstallMethodSelector,
        installer: InstallationManager,
        uninstaller: UninstallationManager,
        manager: MCPServerManager,
        progress: ProgressReporter,
    ):
        self.settings = settings
        self.resolver = resolver
        self.selector = selector
        self.installer = installer
        self.uninstaller = uninstaller
        self.manager = manager
        self.progress = progress

    def list_catalog(self) -> List[Dict[str, Any]]:
        return self.resolver.get_summaries()

    def is_installed(self, server_name: str) -> bool:
        return self.resolver.is_installed(server_name)

    def get_resolved_config(self, server_name: str) -> ExecutionSpec:
        """Resolved execution spec of a server, for client hand-off.

        Raises:
            ConfigurationError: If the server is unknown or unresolved
        """
        return self.resolver.get_resolved_config(server_name)

    def get_status(self) -> List[Dict[str, Any]]:
        return self.manager.get_status()

    async def update_statuses(self) -> List[Dict[str, Any]]:
        return await self.manager.update_statuses()

    async def start_server(self, server_name: str) -> OperationResult:
        return await self.manager.start_server(server_name)

    async def stop_server(self, server_name: str) -> OperationResult:
        return await self.manager.stop_server(server_name)

    async def install_server(
        self,
        server_name: str,
        method_id: Optional[str] = None,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        """Install a catalog server and register its runtime.

        Args:
            server_name: Catalog key
            method_id: Installation method, selected automatically when None
            mode: Initial mode
            inputs: User inputs for placeholders

        Returns:
            OperationResult with method and directory details
        """
        definition = self.resolver.get_base_definition(server_name)
        if definition is None:
            return OperationResult(False, f"Server '{server_name}' is not in the catalog")

        async with self.manager.exclusive(server_name):
            if self.resolver.is_installed(server_name):
                return OperationResult(
                    False,
                    f"Server '{server_name}' is already installed",
                    {"suggestion": "Uninstall it first to reinstall"},
                )

            result = await self.installer.install_server(
                server_name, definition, method_id=method_id, mode=mode, inputs=inputs
            )
            if not result.success:
                return OperationResult(False, result.message, result.to_dict())

            try:
                self.resolver.record_install(
                    server_name,
                    result.method_id,
                    result.execution,
                    launcher=result.launcher,
                    install_dir=result.install_dir,
                    mode=mode,
                    inputs=inputs,
                )
                runtime_config = self.resolver.get_runtime_config(server_name)
            except ConfigurationError as e:
                return OperationResult(
                    False, f"Installed but could not save configuration: {e.message}", result.to_dict()
                )

            self.manager.update_execution_details(server_name, runtime_config)

        return OperationResult(True, result.message, result.to_dict())

    async def uninstall_server(self, server_name: str) -> OperationResult:
        """Stop, tear down and forget an installed server."""
        remove_runtime = False
        async with self.manager.exclusive(server_name):
            state = self.resolver.get_user_state(server_name)
            if state is None or not state.is_installed:
                return OperationResult(False, f"Server '{server_name}' is not installed")

            await self.manager.stop_server_unlocked(server_name)

            result = await self.uninstaller.uninstall_server(
                server_name, state, self.resolver.get_base_definition(server_name)
            )
            if not result.success:
                return OperationResult(False, result.message, result.to_dict())

            try:
                self.resolver.record_uninstall(server_name)
            except ConfigurationError as e:
                return OperationResult(
                    False, f"Uninstalled but could not save configuration: {e.message}"
                )

            try:
                self.manager.update_execution_details(
                    server_name, self.resolver.get_runtime_config(server_name)
                )
            except ConfigurationError:
                remove_runtime = True

        if remove_runtime:
            self.manager.remove_server(server_name)

        return OperationResult(True, result.message, result.to_dict())

    async def configure_server(
        self,
        server_name: str,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> OperationResult:
        """Change the mode and/or inputs of an installed server."""
        async with self.manager.exclusive(server_name):
            try:
                execution = self.resolver.update_configuration(server_name, mode=mode, inputs=inputs)
                runtime_config = self.resolver.get_runtime_config(server_name)
            except ConfigurationError as e:
                return OperationResult(False, e.message, e.details)

            runtime = self.manager.update_execution_details(server_name, runtime_config)

        message = f"Server '{server_name}' reconfigured"
        if runtime.status == ServerStatus.RUNNING:
            message += "; restart it to apply the changes"
        return OperationResult(True, message, {"execution": execution.to_dict()})

    async def monitor_statuses(
        self,
        interval: Optional[float] = None,
        on_update: Optional[StatusCallback] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """Periodically reconcile statuses until cancelled.

        Args:
            interval: Seconds between updates (settings default when None)
            on_update: Called with each status snapshot
            iterations: Stop after this many updates; run forever when None
        """
        interval = self.settings.health.status_interval if interval is None else interval
        count = 0
        while iterations is None or count < iterations:
            snapshot = await self.update_statuses()
            count += 1
            if on_update is not None:
                on_update(snapshot)
            if iterations is not None and count >= iterations:
                break
            await asyncio.sleep(interval)

    async def shutdown(self) -> None:
        await self.manager.shutdown()


def create_engine(settings: Optional[Settings] = None) -> Engine:
    """Build an engine from settings.

    Raises:
        CatalogLoadError: If the base catalog cannot be loaded
    """
    settings = settings or Settings()

    resolver = ConfigResolver(settings.get_catalog_dir(), settings.get_user_config_path())
    progress = ProgressReporter()
    selector = InstallMethodSelector(probe_timeout=settings.installer.probe_timeout)
    installer = InstallationManager(
        settings.get_servers_dir(),
        selector=selector,
        bootstrap=BootstrapRegistry.default(settings.installer.command_timeout),
        progress=progress,
        command_timeout=settings.installer.command_timeout,
    )
    uninstaller = UninstallationManager(progress=progress)

    def persist_status(server_name: str, status: ServerStatus) -> None:
        runtime = manager.get_runtime(server_name)
        process = runtime.process if runtime is not None else None
        resolver.update_running_status(
            server_name,
            status == ServerStatus.RUNNING,
            pid=process.pid if process is not None else None,
        )

    running = {name: state for name, state in resolver.user.items() if state.is_running}
    manager = MCPServerManager(status_listener=persist_status, health_config=settings.health)
    manager.load(
        resolver.load_runtime_configs(),
        running=running,
        pids={name: state.pid for name, state in running.items() if state.pid},
    )

    logger.info(
        "Engine created",
        data_dir=str(settings.get_data_dir()),
        catalog_dir=str(settings.get_catalog_dir()),
    )
    return Engine(settings, resolver, selector, installer, uninstaller, manager, progress)
