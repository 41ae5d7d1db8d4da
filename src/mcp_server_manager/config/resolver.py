"""Merge of the base server catalog with the user overlay."""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import structlog
import yaml

from .exceptions import (
    CatalogLoadError,
    ConfigurationError,
    UnresolvedPlaceholderError,
)
from .models import (
    ExecutionSpec,
    InstallationMethod,
    Launcher,
    RuntimeConfig,
    ServerDefinition,
    UserServerState,
)
from .persistence import atomic_write_json, load_json
from .placeholders import find_unresolved_placeholders, resolve_placeholders

logger = structlog.get_logger(__name__)

DEFAULT_MODE = "default"
DEFAULT_SCHEMA_VERSION = "1.0"
CATALOG_SUFFIXES = (".json", ".yaml", ".yml")


def apply_mode_override(
    method: InstallationMethod, mode: Optional[str]
) -> Tuple[List[str], Dict[str, str]]:
    """Apply a mode override to a method's args and env.

    Override args replace the base args entirely; override env is merged on
    top of the base env.

    Args:
        method: Installation method from the catalog
        mode: Mode name, None for the base values

    Returns:
        Tuple of (args, env)
    """
    args = list(method.args)
    env = dict(method.env)

    override = method.overrides.get(mode) if mode else None
    if override is not None:
        if override.args is not None:
            args = list(override.args)
        if override.env is not None:
            env.update(override.env)

    return args, env


def build_execution_spec(
    method: InstallationMethod,
    mode: Optional[str],
    inputs: Mapping[str, Any],
    launcher: Optional[Launcher] = None,
    server_name: str = "",
) -> ExecutionSpec:
    """Build a placeholder-free execution spec for a method.

    Args:
        method: Installation method from the catalog
        mode: Mode to apply
        inputs: User inputs used for placeholder substitution
        launcher: Command prefix materialized by an installer, if any
        server_name: Used in error messages

    Returns:
        Fully resolved ExecutionSpec

    Raises:
        ConfigurationError: If no command can be determined
        UnresolvedPlaceholderError: If inputs are missing
    """
    args, env = apply_mode_override(method, mode)
    command = method.command
    cwd = None

    if launcher is not None:
        if launcher.command:
            command = launcher.command
        args = list(launcher.leading_args) + args
        cwd = launcher.cwd

    if not command:
        raise ConfigurationError(
            f"Server '{server_name}' has no command to run",
            {"server": server_name, "method": method.type},
        )

    resolved = resolve_placeholders(
        {"command": command, "args": args, "env": env}, inputs
    )
    missing = find_unresolved_placeholders(resolved)
    if missing:
        raise UnresolvedPlaceholderError(server_name, missing)

    return ExecutionSpec(
        command=resolved["command"],
        args=resolved["args"],
        env=resolved["env"],
        cwd=cwd,
    )


def default_method_id(definition: ServerDefinition) -> Optional[str]:
    """Return the declared default method, else the first catalog method."""
    if definition.default_method in definition.installation_methods:
        return definition.default_method
    return next(iter(definition.installation_methods), None)


class ConfigResolver:
    """Owns the base catalog and the persisted user overlay."""

    def __init__(
        self,
        catalog_dir: Union[str, Path],
        user_config_path: Union[str, Path],
    ):
        """Load the catalog and the user overlay.

        Args:
            catalog_dir: Directory holding base server definition files
            user_config_path: Path of the persisted user overlay

        Raises:
            CatalogLoadError: If no server definition could be loaded
        """
        self.catalog_dir = Path(catalog_dir)
        self.user_config_path = Path(user_config_path)
        self.schema_version = DEFAULT_SCHEMA_VERSION

        self.base: Dict[str, ServerDefinition] = {}
        self.user: Dict[str, UserServerState] = {}

        self._load_catalog()
        self._load_overlay()

    def _load_catalog(self) -> None:
        if not self.catalog_dir.is_dir():
            raise CatalogLoadError(
                f"Catalog directory not found: {self.catalog_dir}",
                {"catalog_dir": str(self.catalog_dir)},
            )

        schema_version: Optional[str] = None
        files = sorted(
            p for p in self.catalog_dir.iterdir()
            if p.is_file() and p.suffix.lower() in CATALOG_SUFFIXES
        )

        for path in files:
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    if path.suffix.lower() == ".json":
                        data = json.load(handle)
                    else:
                        data = yaml.safe_load(handle)
                if not isinstance(data, dict):
                    raise ValueError("catalog file must contain an object")

                servers = data.get("mcpServers") or {}
                if not isinstance(servers, dict):
                    raise ValueError("mcpServers must be an object")

                parsed = {
                    key: ServerDefinition.from_dict(key, value or {})
                    for key, value in servers.items()
                }
            except (OSError, ValueError, TypeError, AttributeError, yaml.YAMLError) as e:
                logger.warning(
                    "Skipping unreadable catalog file", path=str(path), error=str(e)
                )
                continue

            if not schema_version and data.get("schema_version"):
                schema_version = str(data["schema_version"])
            self.base.update(parsed)
            logger.debug("Loaded catalog file", path=str(path), servers=len(parsed))

        if not self.base:
            raise CatalogLoadError(
                "No server definitions found in catalog",
                {"catalog_dir": str(self.catalog_dir)},
            )

        self.schema_version = schema_version or DEFAULT_SCHEMA_VERSION
        logger.info(
            "Catalog loaded",
            servers=len(self.base),
            schema_version=self.schema_version,
        )

    def _load_overlay(self) -> None:
        try:
            data = load_json(self.user_config_path)
        except (OSError, ValueError) as e:
            logger.error(
                "Failed to parse user configuration, starting empty",
                path=str(self.user_config_path),
                error=str(e),
            )
            return

        if not data:
            return

        for key, value in (data.get("mcpServers") or {}).items():
            try:
                self.user[key] = UserServerState.from_dict(key, value)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid user entry", server=key, error=str(e))

        logger.info("User configuration loaded", servers=len(self.user))

    def _save(self) -> None:
        payload = {
            "schema_version": self.schema_version,
            "mcpServers": {name: state.to_dict() for name, state in self.user.items()},
        }
        try:
            atomic_write_json(self.user_config_path, payload)
        except ConfigurationError as e:
            logger.error(
                "Failed to persist user configuration",
                path=str(self.user_config_path),
                error=str(e),
            )
            raise

    # Queries

    def server_names(self) -> List[str]:
        names = list(self.base)
        names.extend(name for name in self.user if name not in self.base)
        return names

    def get_base_definition(self, server_name: str) -> Optional[ServerDefinition]:
        return self.base.get(server_name)

    def get_user_state(self, server_name: str) -> Optional[UserServerState]:
        return self.user.get(server_name)

    def is_installed(self, server_name: str) -> bool:
        state = self.user.get(server_name)
        return bool(state and state.is_installed)

    def get_summaries(self) -> List[Dict[str, Any]]:
        """Return a short description of every catalog server."""
        return [
            {
                "id": key,
                "name": definition.name,
                "description": definition.description,
                "category": definition.category,
                "version": definition.version,
                "installed": self.is_installed(key),
            }
            for key, definition in sorted(self.base.items())
        ]

    def get_server_config(self, server_name: str) -> Dict[str, Any]:
        """Return the merged view of a server: catalog entry plus user state.

        Raises:
            ConfigurationError: If the server is unknown
        """
        definition = self.base.get(server_name)
        state = self.user.get(server_name)
        if definition is None and state is None:
            raise ConfigurationError(f"Unknown server '{server_name}'")

        merged: Dict[str, Any] = {"name": server_name}
        if definition is not None:
            merged.update(
                {
                    "name": definition.name,
                    "description": definition.description,
                    "category": definition.category,
                    "version": definition.version,
                    "host": definition.host,
                    "port": definition.port,
                    "defaultMethod": definition.default_method,
                    "installationMethods": {
                        key: method.to_dict()
                        for key, method in definition.installation_methods.items()
                    },
                    "isInstalled": False,
                    "isRunning": False,
                }
            )
        if state is not None:
            merged.update(state.to_dict())
        return merged

    def resolve(
        self,
        server_name: str,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionSpec:
        """Resolve the execution spec for a server.

        An installed server queried without mode or inputs replays its saved
        execution; otherwise the execution spec is rebuilt from the catalog method.

        Raises:
            ConfigurationError: Unknown server or missing method
            UnresolvedPlaceholderError: Required inputs are missing
        """
        definition = self.base.get(server_name)
        state = self.user.get(server_name)

        if definition is None and state is None:
            raise ConfigurationError(f"Unknown server '{server_name}'")

        if state is not None and state.is_installed and mode is None and inputs is None:
            resolved = resolve_placeholders(state.execution.to_dict(), state.user_inputs)
            missing = find_unresolved_placeholders(resolved)
            if missing:
                raise UnresolvedPlaceholderError(server_name, missing)
            return ExecutionSpec.from_dict(resolved)

        if definition is None:
            raise ConfigurationError(
                f"Server '{server_name}' is not in the catalog",
                {"server": server_name},
            )

        method_id = state.installed_method if state else default_method_id(definition)
        method = definition.get_method(method_id)
        if method is None:
            raise ConfigurationError(
                f"Server '{server_name}' has no installation method '{method_id}'",
                {"server": server_name, "method": method_id},
            )

        effective_mode = mode or (state.current_mode if state else None) or DEFAULT_MODE
        if inputs is None:
            inputs = state.user_inputs if state else {}

        return build_execution_spec(
            method,
            effective_mode,
            inputs,
            launcher=state.launcher if state else None,
            server_name=server_name,
        )

    def get_resolved_config(self, server_name: str) -> ExecutionSpec:
        """Resolved execution spec handed to external clients."""
        return self.resolve(server_name)

    def get_runtime_config(self, server_name: str) -> RuntimeConfig:
        execution = self.resolve(server_name)
        state = self.user.get(server_name)
        definition = self.base.get(server_name)
        source: Any = state if state is not None else definition
        return RuntimeConfig(execution=execution, host=source.host, port=source.port)

    def load_runtime_configs(self) -> Dict[str, RuntimeConfig]:
        """Build runtime configs for every known server.

        Servers that cannot be resolved are skipped with a warning.
        """
        configs: Dict[str, RuntimeConfig] = {}
        for name in self.server_names():
            try:
                configs[name] = self.get_runtime_config(name)
            except ConfigurationError as e:
                logger.warning("Skipping server", server=name, reason=e.message)
        return configs

    # Mutations

    def record_install(
        self,
        server_name: str,
        method_id: str,
        execution: ExecutionSpec,
        launcher: Optional[Launcher] = None,
        install_dir: Optional[str] = None,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> UserServerState:
        """Persist a successful installation."""
        definition = self.base.get(server_name)
        if definition is None:
            raise ConfigurationError(f"Unknown server '{server_name}'")

        state = UserServerState(
            name=definition.name,
            execution=execution,
            description=definition.description,
            category=definition.category,
            version=definition.version,
            host=definition.host,
            port=definition.port,
            is_installed=True,
            is_running=False,
            installed_method=method_id,
            installed_dir=install_dir,
            current_mode=mode or DEFAULT_MODE,
            user_inputs=dict(inputs or {}),
            launcher=launcher or Launcher(),
        )
        self.user[server_name] = state
        self._save()
        logger.info("Recorded installation", server=server_name, method=method_id)
        return state

    def record_uninstall(self, server_name: str) -> bool:
        """Drop the overlay entry of a server. Returns whether one existed."""
        if self.user.pop(server_name, None) is None:
            return False
        self._save()
        logger.info("Recorded uninstallation", server=server_name)
        return True

    def update_running_status(
        self, server_name: str, is_running: bool, pid: Optional[int] = None
    ) -> bool:
        """Persist ``isRunning`` and the owned process id for an installed server.

        The pid is only kept while the server is running. Servers without an
        overlay entry are not written.
        """
        state = self.user.get(server_name)
        if not is_running:
            pid = None
        if state is None or (state.is_running == is_running and state.pid == pid):
            return False
        state.is_running = is_running
        state.pid = pid
        self._save()
        return True

    def update_configuration(
        self,
        server_name: str,
        mode: Optional[str] = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionSpec:
        """Change the mode and/or inputs of an installed server.

        New inputs are merged over the saved ones. Nothing is changed if the
        result would still contain placeholders.
        """
        state = self.user.get(server_name)
        if state is None or not state.is_installed:
            raise ConfigurationError(
                f"Server '{server_name}' is not installed",
                {"server": server_name},
            )

        definition = self.base.get(server_name)
        method = definition.get_method(state.installed_method) if definition else None
        if method is None:
            raise ConfigurationError(
                f"Installation method of '{server_name}' is no longer in the catalog",
                {"server": server_name, "method": state.installed_method},
            )

        new_mode = mode or state.current_mode
        new_inputs = dict(state.user_inputs)
        new_inputs.update(inputs or {})

        execution = build_execution_spec(
            method, new_mode, new_inputs, launcher=state.launcher, server_name=server_name
        )

        state.current_mode = new_mode
        state.user_inputs = new_inputs
        state.execution = execution
        self._save()
        logger.info("Updated server configuration", server=server_name, mode=new_mode)
        return execution
