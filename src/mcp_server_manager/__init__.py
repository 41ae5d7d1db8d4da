"""MCP Server Manager: install, run and monitor MCP servers."""

from .__version__ import __version__

__all__ = ["__version__"]
