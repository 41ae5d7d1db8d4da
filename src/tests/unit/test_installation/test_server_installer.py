"""Tests for the installation manager."""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mcp_server_manager.config.models import InstallationMethod, ServerDefinition
from mcp_server_manager.installation.commands import CommandResult
from mcp_server_manager.installation.exceptions import CommandError
from mcp_server_manager.installation.manager import META_FILENAME, InstallationManager
from mcp_server_manager.installation.progress import ProgressReporter
from mcp_server_manager.installation.wrapper import WRAPPER_FILENAME

MANAGER = "mcp_server_manager.installation.manager"


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(argv=[], returncode=0, stdout=stdout, stderr="")


def single_method_definition(method: InstallationMethod, port=None) -> ServerDefinition:
    return ServerDefinition(
        name="srv",
        port=port,
        installation_methods={method.type: method},
        default_method=method.type,
    )


class TestInstallationManager:
    """Test the InstallationManager class."""

    @pytest.fixture(autouse=True)
    def _manager(self, tmp_path: Path):
        self.servers_dir = tmp_path / "servers"
        self.progress = ProgressReporter()
        self.events = []
        self.progress.subscribe(self.events.append)
        self.bootstrap = MagicMock()
        self.bootstrap.ensure = AsyncMock()
        self.manager = InstallationManager(
            self.servers_dir,
            bootstrap=self.bootstrap,
            progress=self.progress,
            command_timeout=5,
        )

    @pytest.mark.asyncio
    async def test_local_install(self):
        method = InstallationMethod(type="local", command="echo", args=["hi"])
        result = await self.manager.install_server("srv", single_method_definition(method), method_id="local")

        assert result.success
        assert result.install_dir is None
        assert result.execution.command == "echo"
        assert result.execution.args == ["hi"]
        assert not self.servers_dir.exists()
        assert self.events[-1].percent == 100

    @pytest.mark.asyncio
    async def test_git_clone_with_branch(self):
        method = InstallationMethod(
            type="git",
            source="https://example.com/repo.git",
            branch="main",
            command="node",
            args=["dist/index.js"],
            install_command="npm ci",
        )
        mock_run = AsyncMock(return_value=ok())
        mock_shell = AsyncMock(return_value=ok())
        with patch(f"{MANAGER}.run_command", mock_run), patch(f"{MANAGER}.run_shell", mock_shell):
            result = await self.manager.install_server("srv", single_method_definition(method))

        install_dir = self.servers_dir / "srv"
        assert result.success
        assert mock_run.call_args.args[0] == [
            "git", "clone", "--branch", "main", "https://example.com/repo.git", ".",
        ]
        assert mock_shell.call_args.args[0] == "npm ci"
        assert result.execution.cwd == str(install_dir)
        assert result.execution.command == "node"
        meta = json.loads((install_dir / META_FILENAME).read_text())
        assert meta["type"] == "git"

    @pytest.mark.asyncio
    async def test_git_pull_for_existing_checkout(self):
        install_dir = self.servers_dir / "srv"
        (install_dir / ".git").mkdir(parents=True)
        method = InstallationMethod(type="git", source="https://example.com/repo.git", command="node")
        mock_run = AsyncMock(return_value=ok())
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server("srv", single_method_definition(method))

        assert result.success
        assert mock_run.call_args.args[0] == ["git", "pull"]

    @pytest.mark.asyncio
    async def test_failure_removes_partial_directory(self):
        method = InstallationMethod(type="git", source="https://example.com/repo.git", command="node")
        error = CommandError(["git", "clone"], 128, "fatal: repository not found")
        with patch(f"{MANAGER}.run_command", AsyncMock(side_effect=error)):
            result = await self.manager.install_server("srv", single_method_definition(method))

        assert not result.success
        assert "repository not found" in result.message
        assert not (self.servers_dir / "srv").exists()
        assert self.events[-1].status.startswith("Installation failed")

    @pytest.mark.asyncio
    async def test_failure_keeps_existing_checkout(self):
        install_dir = self.servers_dir / "srv"
        (install_dir / ".git").mkdir(parents=True)
        method = InstallationMethod(type="git", source="https://example.com/repo.git", command="node")
        error = CommandError(["git", "pull"], 1, "conflict")
        with patch(f"{MANAGER}.run_command", AsyncMock(side_effect=error)):
            result = await self.manager.install_server("srv", single_method_definition(method))

        assert not result.success
        assert install_dir.exists()

    @pytest.mark.asyncio
    async def test_unresolved_inputs_fail_before_any_step(self):
        method = InstallationMethod(
            type="git", source="https://example.com/repo.git", command="node",
            env={"TOKEN": "${input:token}"},
        )
        mock_run = AsyncMock(return_value=ok())
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server("srv", single_method_definition(method))

        assert not result.success
        assert "token" in result.message
        mock_run.assert_not_called()
        assert not (self.servers_dir / "srv").exists()

    @pytest.mark.asyncio
    async def test_docker_image_install(self):
        method = InstallationMethod(
            type="docker", docker_image="acme/mcp:1", env={"API_KEY": "${input:key}"}
        )
        mock_run = AsyncMock(side_effect=[ok(), ok("abc123\n"), ok("true\n"), ok()])
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server(
                "srv", single_method_definition(method, port=9000), inputs={"key": "secret"}
            )

        assert result.success
        calls = [call.args[0] for call in mock_run.call_args_list]
        assert calls[0] == ["docker", "pull", "acme/mcp:1"]
        assert calls[1] == ["docker", "run", "-d", "-p", "9000:9000", "-e", "API_KEY=secret", "acme/mcp:1"]
        assert calls[3] == ["docker", "rm", "-f", "abc123"]
        assert result.execution.command == "docker"
        assert result.execution.args == [
            "run", "-i", "--rm", "--name", "mcp-srv", "-p", "9000:9000", "-e", "API_KEY", "acme/mcp:1",
        ]
        assert result.execution.env == {"API_KEY": "secret"}

    @pytest.mark.asyncio
    async def test_docker_container_not_running_fails(self):
        method = InstallationMethod(type="docker", docker_image="acme/mcp:1")
        mock_run = AsyncMock(side_effect=[ok(), ok("abc123"), ok("false"), ok()])
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server("srv", single_method_definition(method))

        assert not result.success
        assert mock_run.call_args_list[-1].args[0] == ["docker", "rm", "-f", "abc123"]
        assert not (self.servers_dir / "srv").exists()

    @pytest.mark.asyncio
    async def test_docker_compose_install(self):
        method = InstallationMethod(type="docker", docker_compose_file="services: {}\n")
        mock_run = AsyncMock(return_value=ok())
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server("srv", single_method_definition(method))

        compose_path = self.servers_dir / "srv" / "docker-compose.yml"
        assert result.success
        assert compose_path.read_text() == "services: {}\n"
        assert mock_run.call_args.args[0] == ["docker", "compose", "-f", str(compose_path), "pull"]
        assert result.execution.args == ["compose", "-f", str(compose_path), "up"]

    @pytest.mark.asyncio
    async def test_npm_install(self):
        method = InstallationMethod(type="npm", package="@acme/mcp-server", tag="2.1.0", args=["--stdio"])
        mock_run = AsyncMock(return_value=ok())
        with patch(f"{MANAGER}.run_command", mock_run):
            result = await self.manager.install_server("srv", single_method_definition(method))

        install_dir = self.servers_dir / "srv"
        package_json = json.loads((install_dir / "package.json").read_text())
        assert package_json["dependencies"] == {"@acme/mcp-server": "2.1.0"}
        assert mock_run.call_args.args[0] == ["npm", "install"]
        assert result.execution.command == "npx"
        assert result.execution.args == ["@acme/mcp-server", "--stdio"]
        assert result.execution.cwd == str(install_dir)

    @pytest.mark.asyncio
    async def test_uvx_install_writes_wrapper(self):
        method = InstallationMethod(type="uvx", args=["mcp-server-fetch"])
        result = await self.manager.install_server("srv", single_method_definition(method))

        wrapper = self.servers_dir / "srv" / WRAPPER_FILENAME
        assert result.success
        self.bootstrap.ensure.assert_awaited_once_with("uvx")
        assert wrapper.exists()
        assert result.execution.command == sys.executable
        assert result.execution.args == [str(wrapper), "uvx", "mcp-server-fetch"]

    @pytest.mark.asyncio
    async def test_unknown_method_id(self):
        method = InstallationMethod(type="local", command="x")
        result = await self.manager.install_server("srv", single_method_definition(method), method_id="nope")
        assert not result.success
        assert "nope" in result.message

    @pytest.mark.asyncio
    async def test_automatic_selection_uses_selector(self):
        method = InstallationMethod(type="local", command="x")
        defn = single_method_definition(method)
        self.manager.selector.select = AsyncMock(return_value=("local", method))

        result = await self.manager.install_server("srv", defn)

        assert result.success
        assert result.method_id == "local"
        self.manager.selector.select.assert_awaited_once_with(defn)
