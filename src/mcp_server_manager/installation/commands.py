"""Running external commands with timeouts."""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

import structlog

from ..config.logging import log_command
from .exceptions import CommandError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 900.0


@dataclass
class CommandResult:
    """Outcome of a finished external command."""

    argv: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    argv: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    check: bool = True,
) -> CommandResult:
    """Run a command without a shell and capture its output.

    Args:
        argv: Program and arguments
        cwd: Working directory
        env: Extra environment variables merged over os.environ
        timeout: Seconds before the process is killed
        check: Raise CommandError on a non-zero exit code

    Returns:
        CommandResult with decoded output

    Raises:
        CommandError: If the command cannot start, times out, or fails with check
    """
    process_env = None
    if env:
        process_env = dict(os.environ)
        process_env.update(env)

    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=process_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        log_command(logger, argv, None, (time.monotonic() - started) * 1000, error=str(e))
        raise CommandError(argv, None, str(e), f"Could not run '{argv[0]}': {e}") from e

    return await _communicate(process, argv, timeout, check, started)


async def run_shell(
    command: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    check: bool = True,
) -> CommandResult:
    """Run a catalog-provided shell command line such as an install command."""
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError([command], None, str(e), f"Could not run '{command}': {e}") from e

    return await _communicate(process, [command], timeout, check, started)


async def _communicate(
    process: asyncio.subprocess.Process,
    argv: Sequence[str],
    timeout: float,
    check: bool,
    started: float,
) -> CommandResult:
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        log_command(logger, argv, None, (time.monotonic() - started) * 1000, timeout=True)
        raise CommandError(
            argv, None, "", f"Command '{' '.join(argv)}' timed out after {timeout}s"
        )

    returncode = process.returncode if process.returncode is not None else -1
    result = CommandResult(
        argv=list(argv),
        returncode=returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    log_command(logger, argv, returncode, (time.monotonic() - started) * 1000)

    if check and not result.ok:
        raise CommandError(argv, returncode, result.stderr)
    return result
