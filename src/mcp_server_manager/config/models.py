"""Data model for server definitions, installation methods and user state."""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}


class MethodType(str, Enum):
    """Supported installation method types."""

    GIT = "git"
    DOCKER = "docker"
    NPM = "npm"
    LOCAL = "local"
    UVX = "uvx"
    UV = "uv"


@dataclass(frozen=True)
class ModeOverride:
    """Per-mode replacement args and additional env."""

    args: Optional[List[str]] = None
    env: Optional[Dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModeOverride":
        args = data.get("args")
        env = data.get("env")
        return cls(
            args=list(args) if args is not None else None,
            env=dict(env) if env is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.args is not None:
            result["args"] = list(self.args)
        if self.env is not None:
            result["env"] = dict(self.env)
        return result


@dataclass(frozen=True)
class InstallationMethod:
    """One way of materializing a runnable server from a catalog entry."""

    type: str
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    package: Optional[str] = None
    docker_image: Optional[str] = None
    docker_compose_file: Optional[str] = None
    install_command: Optional[str] = None
    install_dir: Optional[str] = None
    overrides: Dict[str, ModeOverride] = field(default_factory=dict)

    @property
    def package_name(self) -> Optional[str]:
        """Package to install for npm/uvx methods."""
        return self.package or self.source

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallationMethod":
        overrides = {
            mode: ModeOverride.from_dict(value or {})
            for mode, value in (data.get("overrides") or {}).items()
        }
        return cls(
            type=str(data.get("type", MethodType.LOCAL.value)),
            command=data.get("command"),
            args=list(data.get("args") or []),
            env=dict(data.get("env") or {}),
            source=data.get("source"),
            branch=data.get("branch"),
            tag=data.get("tag"),
            package=data.get("package"),
            docker_image=data.get("dockerImage"),
            docker_compose_file=data.get("dockerComposeFile"),
            install_command=data.get("installCommand"),
            install_dir=data.get("installDir"),
            overrides=overrides,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type,
            "args": list(self.args),
            "env": dict(self.env),
        }
        optional = {
            "command": self.command,
            "source": self.source,
            "branch": self.branch,
            "tag": self.tag,
            "package": self.package,
            "dockerImage": self.docker_image,
            "dockerComposeFile": self.docker_compose_file,
            "installCommand": self.install_command,
            "installDir": self.install_dir,
        }
        result.update({key: value for key, value in optional.items() if value is not None})
        if self.overrides:
            result["overrides"] = {
                mode: override.to_dict() for mode, override in self.overrides.items()
            }
        return result


@dataclass(frozen=True)
class ServerDefinition:
    """Immutable catalog entry for one MCP server."""

    name: str
    description: str = ""
    category: Optional[str] = None
    version: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    installation_methods: Dict[str, InstallationMethod] = field(default_factory=dict)
    default_method: Optional[str] = None

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "ServerDefinition":
        methods = {
            method_id: InstallationMethod.from_dict(value or {})
            for method_id, value in (data.get("installationMethods") or {}).items()
        }
        port = data.get("port")
        return cls(
            name=data.get("name") or key,
            description=data.get("description", ""),
            category=data.get("category"),
            version=data.get("version"),
            host=data.get("host"),
            port=int(port) if port is not None else None,
            installation_methods=methods,
            default_method=data.get("defaultMethod"),
        )

    def get_method(self, method_id: Optional[str]) -> Optional[InstallationMethod]:
        if method_id is None:
            return None
        return self.installation_methods.get(method_id)


@dataclass
class ExecutionSpec:
    """Fully resolved command line passed to the OS when spawning."""

    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionSpec":
        return cls(
            command=data["command"],
            args=[str(arg) for arg in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
        }
        if self.cwd:
            result["cwd"] = self.cwd
        return result

    def find_sse_endpoint(self) -> Optional[str]:
        """Return the URL following a ``--sse`` argument, if any."""
        for index, arg in enumerate(self.args[:-1]):
            if arg == "--sse":
                return self.args[index + 1]
        return None


@dataclass
class Launcher:
    """Command prefix materialized by an installer.

    The final args of an installed server are ``leading_args`` followed by
    the mode-resolved method args.
    """

    command: Optional[str] = None
    leading_args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Launcher":
        data = data or {}
        return cls(
            command=data.get("command"),
            leading_args=list(data.get("leadingArgs") or []),
            cwd=data.get("cwd"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"leadingArgs": list(self.leading_args)}
        if self.command:
            result["command"] = self.command
        if self.cwd:
            result["cwd"] = self.cwd
        return result


@dataclass
class UserServerState:
    """Persisted overlay entry for one installed server."""

    name: str
    execution: ExecutionSpec
    description: str = ""
    category: Optional[str] = None
    version: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    is_installed: bool = True
    is_running: bool = False
    pid: Optional[int] = None
    installed_method: Optional[str] = None
    installed_dir: Optional[str] = None
    current_mode: str = "default"
    user_inputs: Dict[str, Any] = field(default_factory=dict)
    launcher: Launcher = field(default_factory=Launcher)

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "UserServerState":
        port = data.get("port")
        pid = data.get("pid")
        return cls(
            name=data.get("name") or key,
            execution=ExecutionSpec.from_dict(data["execution"]),
            description=data.get("description", ""),
            category=data.get("category"),
            version=data.get("version"),
            host=data.get("host"),
            port=int(port) if port is not None else None,
            is_installed=bool(data.get("isInstalled", True)),
            is_running=bool(data.get("isRunning", False)),
            pid=int(pid) if pid is not None else None,
            installed_method=data.get("installedMethod"),
            installed_dir=data.get("installedDir"),
            current_mode=data.get("currentMode") or "default",
            user_inputs=dict(data.get("userInputs") or {}),
            launcher=Launcher.from_dict(data.get("launcher")),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "isInstalled": self.is_installed,
            "isRunning": self.is_running,
            "installedMethod": self.installed_method,
            "installedDir": self.installed_dir,
            "currentMode": self.current_mode,
            "execution": self.execution.to_dict(),
            "launcher": self.launcher.to_dict(),
            "userInputs": copy.deepcopy(self.user_inputs),
        }
        optional = {
            "category": self.category,
            "version": self.version,
            "host": self.host,
            "port": self.port,
            "pid": self.pid,
        }
        result.update({key: value for key, value in optional.items() if value is not None})
        return result


@dataclass
class RuntimeConfig:
    """What a runtime needs to run and probe a server."""

    execution: ExecutionSpec
    host: Optional[str] = None
    port: Optional[int] = None

    @property
    def is_remote(self) -> bool:
        return bool(self.host) and self.host not in LOCAL_HOSTS

    @property
    def probe_host(self) -> str:
        return self.host or "localhost"
