"""Tests for the main CLI module."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from mcp_server_manager.main import CLIContext, cli, parse_inputs
from mcp_server_manager.management.health import HealthResult, HealthStrategy

OFFLINE_PORT = HealthResult(strategy=HealthStrategy.PORT, online=False, message="unreachable")


class TestCLI:
    """Test the main CLI functionality."""

    @pytest.fixture(autouse=True)
    def _runner(self, tmp_path: Path, catalog_dir: Path):
        self.runner = CliRunner()
        self.tmp_path = tmp_path
        self.base_args = ["--data-dir", str(tmp_path / "data"), "--catalog-dir", str(catalog_dir)]

    def invoke(self, *args: str):
        return self.runner.invoke(cli, [*self.base_args, *args])

    def test_cli_help(self):
        result = self.runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("catalog", "install", "uninstall", "start", "stop", "status", "configure"):
            assert command in result.output

    def test_cli_version(self):
        result = self.runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "mcp-server-manager" in result.output
        assert "0.3.0" in result.output

    def test_cli_verbose_quiet_conflict(self):
        result = self.invoke("--verbose", "--quiet", "catalog")
        assert result.exit_code != 0
        assert "Cannot use both --verbose and --quiet" in result.output

    def test_catalog_table(self):
        result = self.invoke("catalog")
        assert result.exit_code == 0
        assert "○ github v1.2.0: GitHub repository tools" in result.output
        assert "○ echo" in result.output

    def test_catalog_json(self):
        result = self.runner.invoke(cli, ["--quiet", *self.base_args, "catalog", "--format", "json"])
        assert result.exit_code == 0
        assert '"id": "remote-api"' in result.output

    def test_missing_catalog(self):
        result = self.runner.invoke(
            cli,
            ["--data-dir", str(self.tmp_path / "data"), "--catalog-dir", str(self.tmp_path / "none"), "catalog"],
        )
        assert result.exit_code == 1
        assert "Cannot load server catalog" in result.output
        assert "--catalog-dir" in result.output

    def test_install_local_server(self):
        result = self.invoke("install", "echo", "--method", "local")
        assert result.exit_code == 0, result.output
        assert "Installed 'echo'" in result.output
        assert "[100%] Installation complete" in result.output

        listing = self.invoke("catalog")
        assert "● echo" in listing.output

    def test_install_missing_input(self):
        result = self.invoke("install", "github", "--method", "local")
        assert result.exit_code == 1
        assert "token" in result.output

    def test_install_malformed_input(self):
        result = self.invoke("install", "github", "--input", "token")
        assert result.exit_code == 1
        assert "Expected KEY=VALUE" in result.output

    def test_install_twice_suggests_uninstall(self):
        self.invoke("install", "echo", "--method", "local")
        result = self.invoke("install", "echo", "--method", "local")
        assert result.exit_code == 1
        assert "already installed" in result.output
        assert "Suggestion: Uninstall it first" in result.output

    def test_configure_requires_changes(self):
        result = self.invoke("configure", "github")
        assert result.exit_code == 1
        assert "Nothing to configure" in result.output

    def test_configure_mode(self):
        self.invoke("install", "github", "--method", "local", "--input", "token=abc")
        result = self.invoke("configure", "github", "--mode", "sse")
        assert result.exit_code == 0, result.output
        assert "reconfigured" in result.output

        shown = self.runner.invoke(cli, ["--quiet", *self.base_args, "show", "github"])
        assert '"--sse"' in shown.output
        assert '"currentMode": "sse"' in shown.output

    def test_show_unresolved_server(self):
        result = self.runner.invoke(cli, ["--quiet", *self.base_args, "show", "github"])
        assert result.exit_code == 0
        assert '"resolveError"' in result.output
        assert "token" in result.output

    def test_show_unknown_server(self):
        result = self.invoke("show", "nope")
        assert result.exit_code == 1

    def test_status_table(self):
        with patch(
            "mcp_server_manager.management.health.HealthChecker.check_port",
            AsyncMock(return_value=OFFLINE_PORT),
        ):
            result = self.invoke("status")
        assert result.exit_code == 0, result.output
        assert "NAME" in result.output
        assert "echo" in result.output
        assert "remote-api" in result.output

    def test_stop_already_stopped(self):
        result = self.invoke("stop", "echo")
        assert result.exit_code == 0
        assert "already stopped" in result.output

    def test_start_unknown_server(self):
        result = self.invoke("start", "nope")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_uninstall(self):
        self.invoke("install", "echo", "--method", "local")
        result = self.invoke("uninstall", "echo")
        assert result.exit_code == 0, result.output
        assert "Uninstalled 'echo'" in result.output

    def test_uninstall_not_installed(self):
        result = self.invoke("uninstall", "echo")
        assert result.exit_code == 1
        assert "not installed" in result.output

    def test_connect_and_disconnect(self):
        client_config = self.tmp_path / "client.json"
        self.invoke("install", "echo", "--method", "local")

        result = self.invoke("connect", "echo", "--client-config", str(client_config))
        assert result.exit_code == 0, result.output
        data = json.loads(client_config.read_text())
        assert data["mcpServers"]["echo"] == {"command": "echo", "args": ["hi"]}

        result = self.invoke("disconnect", "echo", "--client-config", str(client_config))
        assert result.exit_code == 0
        assert json.loads(client_config.read_text())["mcpServers"] == {}

    def test_connect_requires_install(self):
        result = self.invoke("connect", "echo", "--client-config", str(self.tmp_path / "c.json"))
        assert result.exit_code == 1
        assert "not installed" in result.output

    def test_toolchains(self):
        with patch(
            "mcp_server_manager.installation.selector.InstallMethodSelector.probe_all",
            AsyncMock(return_value={"docker": False, "local": True}),
        ):
            result = self.invoke("toolchains")
        assert result.exit_code == 0
        assert "❌ docker" in result.output
        assert "✅ local" in result.output


class TestHelpers:
    """Test CLI helper functions."""

    def test_parse_inputs(self):
        assert parse_inputs(()) is None
        assert parse_inputs(("a=1", "url=http://x?y=z")) == {"a": "1", "url": "http://x?y=z"}

    def test_cli_context_log_level(self, tmp_path: Path):
        assert CLIContext(verbose=True, data_dir=str(tmp_path)).log_level == "DEBUG"
        assert CLIContext(quiet=True, data_dir=str(tmp_path)).log_level == "ERROR"
