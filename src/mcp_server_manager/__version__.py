"""Version information for mcp-server-manager."""

__version__ = "0.3.0"
