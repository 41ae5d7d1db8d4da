"""Pytest configuration and shared fixtures."""

import json
import socket
from pathlib import Path
from typing import Any, Dict

import pytest

from mcp_server_manager.config.settings import Settings


def free_port() -> int:
    """Return a TCP port that nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def unused_port() -> int:
    return free_port()


@pytest.fixture
def sample_catalog() -> Dict[str, Any]:
    """Provide a small server catalog covering the supported features."""
    return {
        "schema_version": "1.0",
        "mcpServers": {
            "github": {
                "name": "github",
                "description": "GitHub repository tools",
                "category": "development",
                "version": "1.2.0",
                "defaultMethod": "local",
                "installationMethods": {
                    "local": {
                        "type": "local",
                        "command": "github-mcp",
                        "args": ["--stdio"],
                        "env": {"GITHUB_TOKEN": "${input:token}", "LOG_LEVEL": "info"},
                        "overrides": {
                            "sse": {
                                "args": ["--sse", "http://localhost:8931/sse"],
                                "env": {"LOG_LEVEL": "debug"},
                            }
                        },
                    },
                    "docker": {
                        "type": "docker",
                        "dockerImage": "ghcr.io/github/github-mcp-server",
                        "env": {"GITHUB_TOKEN": "${input:token}"},
                    },
                },
            },
            "echo": {
                "name": "echo",
                "description": "Echo test server",
                "defaultMethod": "local",
                "installationMethods": {
                    "local": {"type": "local", "command": "echo", "args": ["hi"]}
                },
            },
            "remote-api": {
                "name": "remote-api",
                "description": "Hosted server",
                "host": "mcp.example.com",
                "port": 443,
                "installationMethods": {
                    "local": {"type": "local", "command": "remote-proxy"}
                },
            },
        },
    }


@pytest.fixture
def catalog_dir(tmp_path: Path, sample_catalog: Dict[str, Any]) -> Path:
    """Write the sample catalog to a temporary catalog directory."""
    directory = tmp_path / "catalog"
    directory.mkdir()
    with open(directory / "servers.json", "w", encoding="utf-8") as f:
        json.dump(sample_catalog, f)
    return directory


@pytest.fixture
def user_config_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "userServers.json"


@pytest.fixture
def settings(tmp_path: Path, catalog_dir: Path) -> Settings:
    """Settings isolated to a temporary data directory."""
    return Settings(
        data_dir=str(tmp_path / "data"),
        catalog_dir=str(catalog_dir),
    )
