"""Configuration-related exceptions."""

from typing import Any, Dict, List, Optional


class ConfigurationError(Exception):
    """Configuration-related error with user-friendly messages."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize configuration error with message and optional details."""
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error message with details if available."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class CatalogLoadError(ConfigurationError):
    """The base server catalog could not be loaded at all."""


class UnresolvedPlaceholderError(ConfigurationError):
    """Required user inputs are missing for a server's execution spec."""

    def __init__(self, server_name: str, missing: List[str]):
        self.server_name = server_name
        self.missing = missing
        super().__init__(
            f"Server '{server_name}' has unresolved inputs: {', '.join(missing)}",
            {"server": server_name, "missing_inputs": missing},
        )


class PersistenceError(ConfigurationError):
    """Writing the user overlay file failed."""
