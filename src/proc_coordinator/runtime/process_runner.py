"""Process runner with subprocess isolation and reliable termination.

proc-coordinator runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Exit/error notification through once-only callbacks
- Idempotent kill that tolerates already-exited processes

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination signals the process group, not just the shell
- stdin is DEVNULL; stdout/stderr are inherited from the parent
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import DEFAULT_KILL_TIMEOUT, DEFAULT_TERM_TIMEOUT

__all__ = [
    "ExitCallback",
    "ErrorCallback",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

ExitCallback = Callable[[int], None]
ErrorCallback = Callable[[BaseException], None]


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        command: Command line, interpreted by the shell
        cwd: Working directory for the process (None = inherit parent)
        env: Environment variables (None = inherit parent)
        shell: Shell executable (None = platform default)
    """

    command: str
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    shell: str | None = None


class ProcessHandle:
    """A live child process with once-only exit/error notification.

    The handle watches the process in a background task. Exactly one of
    the two events fires: ``exit`` with the return code, or ``error`` if
    waiting on the process fails. Subscribers registered after the event
    fired are called on the next loop iteration.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self._process = process
        self._term_timeout = term_timeout
        self._kill_timeout = kill_timeout
        self._exit_callbacks: list[ExitCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._exited = False
        self._error: BaseException | None = None
        self._watcher = asyncio.create_task(
            self._watch(), name=f"process-watch-{process.pid}"
        )

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None and self._error is None

    def on_exit(self, callback: ExitCallback) -> None:
        """Subscribe to process exit. Called with the return code."""
        if self._exited:
            asyncio.get_running_loop().call_soon(
                self._invoke, callback, self._process.returncode
            )
            return
        self._exit_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Subscribe to runtime errors while waiting on the process."""
        if self._error is not None:
            asyncio.get_running_loop().call_soon(self._invoke, callback, self._error)
            return
        self._error_callbacks.append(callback)

    def remove_all_listeners(self) -> None:
        self._exit_callbacks.clear()
        self._error_callbacks.clear()

    async def wait(self) -> int:
        """Wait for the process to exit and return its return code."""
        return await self._process.wait()

    async def _watch(self) -> None:
        try:
            returncode = await self._process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Error waiting on subprocess pid={self.pid}: {e}")
            self._error = e
            callbacks = list(self._error_callbacks)
            self._error_callbacks.clear()
            for callback in callbacks:
                self._invoke(callback, e)
            return

        logger.debug(f"Subprocess exited pid={self.pid} returncode={returncode}")
        self._exited = True
        callbacks = list(self._exit_callbacks)
        self._exit_callbacks.clear()
        for callback in callbacks:
            self._invoke(callback, returncode)

    @staticmethod
    def _invoke(callback: Callable[[Any], None], value: Any) -> None:
        try:
            callback(value)
        except Exception as e:
            logger.warning(f"Error in process event callback: {e}")

    def kill(self) -> None:
        """Force kill the process group. No-op once the process has exited."""
        if self._process.returncode is not None:
            return
        try:
            if IS_WINDOWS:
                self._process.kill()
            else:
                _signal_group(self._process, signal.SIGKILL)
            logger.debug(f"Killed subprocess pid={self.pid}")
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={self.pid}")

    async def terminate(self) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        process = self._process
        if process.returncode is not None:
            return

        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            # Step 1: Graceful termination
            if IS_WINDOWS:
                _windows_terminate(process)
            else:
                _posix_terminate(process)

            # Step 2: Wait for graceful exit
            try:
                await asyncio.wait_for(process.wait(), timeout=self._term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            # Step 3: Force kill
            logger.debug(f"Force killing subprocess pid={pid}")
            self.kill()

            # Step 4: Wait for forced exit
            try:
                await asyncio.wait_for(process.wait(), timeout=self._kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    def __repr__(self) -> str:
        status = "running" if self.running else f"exited({self.returncode})"
        return f"ProcessHandle(pid={self.pid}, status={status})"


def _signal_group(process: asyncio.subprocess.Process, signum: signal.Signals) -> None:
    """Signal the process group, falling back to the process itself."""
    try:
        # Process group ID equals pid due to start_new_session
        pgid = os.getpgid(process.pid)
        os.killpg(pgid, signum)
        logger.debug(f"Sent {signum.name} to process group pgid={pgid}")
    except ProcessLookupError:
        raise
    except OSError as e:
        logger.debug(f"killpg failed, signalling process directly: {e}")
        process.send_signal(signum)


def _posix_terminate(process: asyncio.subprocess.Process) -> None:
    try:
        _signal_group(process, signal.SIGTERM)
    except ProcessLookupError:
        pass


def _windows_terminate(process: asyncio.subprocess.Process) -> None:
    try:
        # Works because of CREATE_NEW_PROCESS_GROUP
        os.kill(process.pid, signal.CTRL_BREAK_EVENT)
        logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
        process.terminate()


@dataclass
class ProcessRunner:
    """Cross-platform process spawner with isolation and reliable termination.

    Example:
        runner = ProcessRunner()
        handle = await runner.spawn(ProcessSpec(command="sleep 1"))
        handle.on_exit(lambda code: print("exited", code))
        await handle.wait()
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> ProcessHandle:
        """Start the command in an isolated process group/session.

        Raises:
            OSError: If the process cannot be started
            ValueError: If the command or environment contains a NUL byte
        """
        kwargs = self._build_subprocess_kwargs(spec)

        # stdin=None would inherit the parent's stdin; children never read it.
        process = await asyncio.create_subprocess_shell(
            spec.command,
            stdin=asyncio.subprocess.DEVNULL,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"command={spec.command!r} cwd={spec.cwd}"
        )

        return ProcessHandle(
            process,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)
        if spec.shell is not None:
            kwargs["executable"] = spec.shell

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs
