"""Server management exceptions."""

from typing import Any, Dict, Optional


class ServerError(Exception):
    """Server management error with user-friendly messages."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}
        super().__init__(message)


class SpawnError(ServerError):
    """The operating system refused to start a server process."""


class HealthCheckError(ServerError):
    """A health probe could not be carried out."""
