"""Ownership of server OS processes: spawn, exit observation and kill."""

import asyncio
import inspect
import os
import signal
import subprocess
import sys
from typing import Any, Callable, Dict, Optional, Union

import psutil
import structlog

from ..config.logging import sanitize_log_data
from ..config.models import ExecutionSpec
from .exceptions import SpawnError

logger = structlog.get_logger(__name__)

ADOPTED_POLL_INTERVAL = 0.05

ExitCallback = Callable[["ProcessHandle", int], Any]
Handle = Union["ProcessHandle", "AdoptedProcessHandle"]


class ProcessHandle:
    """A spawned server process owned by exactly one runtime."""

    def __init__(self, process: asyncio.subprocess.Process, name: str = ""):
        self.process = process
        self.name = name
        self.released = False
        self._tasks = []

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def has_exited(self) -> bool:
        return self.process.returncode is not None

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit; returns None if still running after ``timeout``."""
        try:
            return await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def __repr__(self) -> str:
        return f"ProcessHandle(name={self.name!r}, pid={self.pid}, returncode={self.returncode})"


class AdoptedProcessHandle:
    """A server process started by an earlier invocation, tracked through psutil.

    The exit code of an adopted process is not observable, so ``returncode``
    stays None and ``wait`` only reports whether it is gone.
    """

    returncode = None

    def __init__(self, process: psutil.Process, name: str = ""):
        self.process = process
        self.name = name
        self.released = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def has_exited(self) -> bool:
        try:
            return (
                not self.process.is_running()
                or self.process.status() == psutil.STATUS_ZOMBIE
            )
        except psutil.NoSuchProcess:
            return True

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Poll until the process is gone; returns None either way."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.has_exited:
            if deadline is not None and loop.time() >= deadline:
                break
            await asyncio.sleep(ADOPTED_POLL_INTERVAL)
        return None

    def __repr__(self) -> str:
        return f"AdoptedProcessHandle(name={self.name!r}, pid={self.pid})"


class ProcessSupervisor:
    """Spawns server processes and observes their exit."""

    async def spawn(
        self,
        execution: ExecutionSpec,
        on_exit: Optional[ExitCallback] = None,
        name: str = "",
    ) -> ProcessHandle:
        """Start a server process.

        The process gets its own session (process group on Windows) and
        piped stdio. The exit observer is attached before this returns.

        Args:
            execution: Resolved command line
            on_exit: Called with (handle, returncode) when the process exits
            name: Server name for logging

        Returns:
            ProcessHandle for the new process

        Raises:
            SpawnError: If the OS could not start the process
        """
        env: Dict[str, str] = dict(os.environ)
        env.update(execution.env)

        kwargs: Dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        logger.info(
            "Spawning server process",
            server=name,
            command=execution.command,
            args=execution.args,
            env=sanitize_log_data(execution.env),
            cwd=execution.cwd,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                execution.command,
                *execution.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=execution.cwd,
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(
                f"Failed to start '{execution.command}': {e}",
                "Check that the server is installed and its command is on PATH",
                {"server": name, "command": execution.command},
            ) from e

        handle = ProcessHandle(process, name)
        handle._tasks = [
            asyncio.create_task(self._drain(handle, process.stdout, "stdout")),
            asyncio.create_task(self._drain(handle, process.stderr, "stderr")),
        ]
        handle._tasks.append(asyncio.create_task(self._watch(handle, on_exit)))

        logger.info("Server process started", server=name, pid=process.pid)
        return handle

    def adopt(
        self, pid: int, execution: ExecutionSpec, name: str = ""
    ) -> Optional[AdoptedProcessHandle]:
        """Take back ownership of a server process from an earlier invocation.

        The process must still be alive and its command line must mention
        the server command, so a recycled pid is not adopted.

        Returns:
            AdoptedProcessHandle, or None if the process is gone or foreign
        """
        try:
            process = psutil.Process(pid)
            if not process.is_running() or process.status() == psutil.STATUS_ZOMBIE:
                return None
            cmdline = process.cmdline()
        except psutil.NoSuchProcess:
            logger.info("Persisted server process is gone", server=name, pid=pid)
            return None
        except psutil.AccessDenied:
            cmdline = None

        command = os.path.basename(execution.command)
        if cmdline is not None and not any(os.path.basename(part) == command for part in cmdline):
            logger.warning(
                "Persisted pid belongs to another process", server=name, pid=pid, cmdline=cmdline
            )
            return None

        logger.info("Adopted server process", server=name, pid=pid)
        return AdoptedProcessHandle(process, name)

    async def _drain(self, handle: ProcessHandle, stream, label: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            logger.debug(
                "Server output",
                server=handle.name,
                stream=label,
                line=line.decode("utf-8", errors="replace").rstrip(),
            )

    async def _watch(self, handle: ProcessHandle, on_exit: Optional[ExitCallback]) -> None:
        returncode = await handle.process.wait()
        logger.info("Server process exited", server=handle.name, pid=handle.pid, returncode=returncode)

        if on_exit is None:
            return
        try:
            result = on_exit(handle, returncode)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Exit callback failed", server=handle.name, error=str(e))

    def kill(self, handle: Handle) -> bool:
        """Send SIGKILL to the process (and its group on POSIX).

        Does not wait for the exit.

        Returns:
            bool: Whether the signal was delivered
        """
        if handle.has_exited:
            return False

        try:
            if sys.platform != "win32":
                try:
                    os.killpg(handle.pid, signal.SIGKILL)
                    return True
                except (ProcessLookupError, PermissionError):
                    pass
            handle.process.kill()
            return True
        except (ProcessLookupError, psutil.NoSuchProcess):
            return False
        except (OSError, psutil.Error) as e:
            logger.warning("Failed to kill process", server=handle.name, pid=handle.pid, error=str(e))
            return False
