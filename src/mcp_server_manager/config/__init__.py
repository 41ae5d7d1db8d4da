"""Configuration package: settings, catalog models and resolution."""

from .exceptions import (
    CatalogLoadError,
    ConfigurationError,
    PersistenceError,
    UnresolvedPlaceholderError,
)
from .models import (
    ExecutionSpec,
    InstallationMethod,
    Launcher,
    MethodType,
    ModeOverride,
    RuntimeConfig,
    ServerDefinition,
    UserServerState,
)
from .resolver import ConfigResolver, apply_mode_override, build_execution_spec
from .settings import Settings

__all__ = [
    "CatalogLoadError",
    "ConfigResolver",
    "ConfigurationError",
    "ExecutionSpec",
    "InstallationMethod",
    "Launcher",
    "MethodType",
    "ModeOverride",
    "PersistenceError",
    "RuntimeConfig",
    "ServerDefinition",
    "Settings",
    "UnresolvedPlaceholderError",
    "UserServerState",
    "apply_mode_override",
    "build_execution_spec",
]
