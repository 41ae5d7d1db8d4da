"""Installation and removal of MCP servers."""

from .bootstrap import BootstrapRegistry, ToolBootstrapper, UvBootstrapper
from .commands import CommandResult, run_command, run_shell
from .exceptions import CommandError, InstallationError, NoMethodAvailableError
from .manager import InstallationManager, InstallResult
from .progress import ProgressEvent, ProgressReporter, Subscription
from .selector import InstallMethodSelector
from .uninstaller import UninstallationManager, UninstallResult

__all__ = [
    "BootstrapRegistry",
    "CommandError",
    "CommandResult",
    "InstallMethodSelector",
    "InstallResult",
    "InstallationError",
    "InstallationManager",
    "NoMethodAvailableError",
    "ProgressEvent",
    "ProgressReporter",
    "Subscription",
    "ToolBootstrapper",
    "UninstallResult",
    "UninstallationManager",
    "UvBootstrapper",
    "run_command",
    "run_shell",
]
