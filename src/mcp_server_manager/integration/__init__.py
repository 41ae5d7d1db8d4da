"""Integrations with MCP client applications."""

from .desktop_client import DesktopClientIntegration, default_client_config_path

__all__ = ["DesktopClientIntegration", "default_client_config_path"]
