"""ProcessRunner unit tests.

Test coverage:
- Spawning shell commands (cwd, env, shell)
- Exit/error notification (once-only, late subscribers)
- Kill and graceful termination of the process group
- Spawn failures
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path

import pytest

from proc_coordinator.runtime import ProcessHandle, ProcessRunner, ProcessSpec
from proc_coordinator.runtime.process_runner import IS_WINDOWS

from conftest import BrokenProcess

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell commands")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def process_runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


async def _exit_code(handle: ProcessHandle) -> int:
    loop = asyncio.get_running_loop()
    future: asyncio.Future[int] = loop.create_future()
    handle.on_exit(future.set_result)
    return await asyncio.wait_for(future, timeout=5.0)


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test spawning and exit notification."""

    @pytest.mark.asyncio
    async def test_exit_zero(self, process_runner: ProcessRunner):
        """Exit callback receives 0 for a successful command."""
        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        assert await _exit_code(handle) == 0
        assert handle.running is False

    @pytest.mark.asyncio
    async def test_exit_nonzero(self, process_runner: ProcessRunner):
        """Exit callback receives the command's exit code."""
        handle = await process_runner.spawn(ProcessSpec(command="exit 3"))
        assert await _exit_code(handle) == 3

    @pytest.mark.asyncio
    async def test_unknown_command_exits_127(self, process_runner: ProcessRunner):
        """The shell reports unknown commands through exit code 127."""
        handle = await process_runner.spawn(
            ProcessSpec(command="nonexistent_command_xyz_123 2>/dev/null")
        )
        assert await _exit_code(handle) == 127

    @pytest.mark.asyncio
    async def test_working_directory(
        self, temp_workspace: Path, process_runner: ProcessRunner
    ):
        """Working directory is applied to the child."""
        handle = await process_runner.spawn(
            ProcessSpec(command="pwd > pwd.txt", cwd=temp_workspace)
        )
        assert await handle.wait() == 0

        result = (temp_workspace / "pwd.txt").read_text().strip()
        assert Path(result).resolve() == temp_workspace.resolve()

    @pytest.mark.asyncio
    async def test_custom_environment(
        self, temp_workspace: Path, process_runner: ProcessRunner
    ):
        """Custom environment variables reach the child."""
        custom_env = os.environ.copy()
        custom_env["TEST_VAR"] = "test_value_123"

        handle = await process_runner.spawn(
            ProcessSpec(
                command='echo "$TEST_VAR" > env.txt',
                cwd=temp_workspace,
                env=custom_env,
            )
        )
        assert await handle.wait() == 0
        assert (temp_workspace / "env.txt").read_text().strip() == "test_value_123"

    @pytest.mark.asyncio
    async def test_custom_shell(
        self, temp_workspace: Path, process_runner: ProcessRunner
    ):
        """The configured shell interprets the command."""
        handle = await process_runner.spawn(
            ProcessSpec(command="echo ok > shell.txt", cwd=temp_workspace, shell="/bin/sh")
        )
        assert await handle.wait() == 0
        assert (temp_workspace / "shell.txt").read_text().strip() == "ok"

    @pytest.mark.asyncio
    async def test_new_process_group(self, process_runner: ProcessRunner):
        """Child is the leader of its own process group."""
        handle = await process_runner.spawn(ProcessSpec(command="sleep 5"))
        try:
            assert os.getpgid(handle.pid) == handle.pid
            assert os.getpgid(handle.pid) != os.getpgid(os.getpid())
        finally:
            handle.kill()
            await handle.wait()


# =============================================================================
# Event Notification Tests
# =============================================================================


class TestEvents:
    """Test exit/error subscribers."""

    @pytest.mark.asyncio
    async def test_exit_fires_once_for_each_subscriber(
        self, process_runner: ProcessRunner
    ):
        """Every subscriber is called exactly once."""
        calls: list[tuple[str, int]] = []
        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        handle.on_exit(lambda code: calls.append(("first", code)))
        handle.on_exit(lambda code: calls.append(("second", code)))

        await handle.wait()
        await asyncio.sleep(0.05)

        assert calls == [("first", 0), ("second", 0)]

    @pytest.mark.asyncio
    async def test_late_subscriber_is_called(self, process_runner: ProcessRunner):
        """Subscribing after the exit still delivers the exit code."""
        handle = await process_runner.spawn(ProcessSpec(command="exit 2"))
        await handle.wait()
        await asyncio.sleep(0.05)

        assert await _exit_code(handle) == 2

    @pytest.mark.asyncio
    async def test_callback_error_does_not_block_others(
        self, process_runner: ProcessRunner
    ):
        """A failing subscriber is logged and the next one still runs."""
        received: list[int] = []

        def broken(code: int) -> None:
            raise RuntimeError("boom")

        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        handle.on_exit(broken)
        handle.on_exit(received.append)

        await handle.wait()
        await asyncio.sleep(0.05)

        assert received == [0]

    @pytest.mark.asyncio
    async def test_remove_all_listeners(self, process_runner: ProcessRunner):
        """Detached subscribers are not called."""
        received: list[int] = []
        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        handle.on_exit(received.append)
        handle.remove_all_listeners()

        await handle.wait()
        await asyncio.sleep(0.05)

        assert received == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_wait_failure_fires_error_once(self):
        """A failing wait() fires error, never exit, and replays to late subscribers."""
        handle = ProcessHandle(BrokenProcess(), term_timeout=0.2, kill_timeout=0.2)  # type: ignore[arg-type]
        errors: list[BaseException] = []
        exits: list[int] = []
        handle.on_error(errors.append)
        handle.on_exit(exits.append)

        await asyncio.sleep(0.2)

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert exits == []
        assert handle.running is False

        late: list[BaseException] = []
        handle.on_error(late.append)
        await asyncio.sleep(0.05)

        assert late == errors
        assert len(errors) == 1


# =============================================================================
# Termination Tests
# =============================================================================


class TestTermination:
    """Test kill and terminate."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_kill_running_process(self, process_runner: ProcessRunner):
        """kill() sends SIGKILL to the process group."""
        handle = await process_runner.spawn(ProcessSpec(command="sleep 100"))
        handle.kill()

        returncode = await asyncio.wait_for(handle.wait(), timeout=5.0)
        assert returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_kill_is_idempotent(self, process_runner: ProcessRunner):
        """kill() on an exited process is a no-op."""
        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        await handle.wait()

        handle.kill()
        handle.kill()

        assert handle.returncode == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_terminate_long_running_process(self, process_runner: ProcessRunner):
        """terminate() stops a long-running process."""
        handle = await process_runner.spawn(ProcessSpec(command="sleep 100"))
        await asyncio.sleep(0.1)

        await handle.terminate()

        assert handle.returncode is not None
        assert handle.running is False

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_terminate_escalates_to_kill(self, process_runner: ProcessRunner):
        """A child ignoring SIGTERM is killed after term_timeout."""
        handle = await process_runner.spawn(
            ProcessSpec(command="trap '' TERM; while true; do sleep 0.05; done")
        )
        await asyncio.sleep(0.2)

        await handle.terminate()

        assert handle.returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_terminate_after_exit(self, process_runner: ProcessRunner):
        """terminate() on an exited process returns immediately."""
        handle = await process_runner.spawn(ProcessSpec(command="exit 0"))
        await handle.wait()

        await handle.terminate()

        assert handle.returncode == 0


# =============================================================================
# ProcessSpec / Edge Cases
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_frozen(self):
        """ProcessSpec is immutable."""
        spec = ProcessSpec(command="echo test")

        with pytest.raises(AttributeError):
            spec.command = "other"  # type: ignore

    def test_default_values(self):
        spec = ProcessSpec(command="echo")

        assert spec.cwd is None
        assert spec.env is None
        assert spec.shell is None


class TestEdgeCases:
    """Test spawn failures."""

    @pytest.mark.asyncio
    async def test_missing_working_directory(
        self, tmp_path: Path, process_runner: ProcessRunner
    ):
        """A missing cwd fails at spawn time."""
        with pytest.raises(OSError):
            await process_runner.spawn(
                ProcessSpec(command="exit 0", cwd=tmp_path / "missing")
            )

    @pytest.mark.asyncio
    async def test_missing_shell(self, process_runner: ProcessRunner):
        """A missing shell executable fails at spawn time."""
        with pytest.raises(OSError):
            await process_runner.spawn(
                ProcessSpec(command="exit 0", shell="/nonexistent/shell")
            )
