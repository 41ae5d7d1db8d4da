"""Installation-related exceptions."""

from typing import Any, Dict, Optional, Sequence


class InstallationError(Exception):
    """Installation-related error with context information."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NoMethodAvailableError(InstallationError):
    """A server definition has no installation method to choose from."""


class CommandError(InstallationError):
    """An external command failed, timed out or could not be started."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: Optional[int],
        stderr: str = "",
        message: Optional[str] = None,
    ):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        summary = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        if message is None:
            message = f"Command '{' '.join(self.argv)}' failed with exit code {returncode}"
            if summary:
                message = f"{message}: {summary}"
        super().__init__(
            message,
            {"argv": self.argv, "returncode": returncode, "stderr": stderr},
        )
