"""Run coordination: memoized, cancellable execution of one command.

A RunCoordinator owns a command and a cache of run outcomes. Each run
request is keyed by the coordinator id and the identity of the
cancellation signal passed to it:

- A request whose key is already cached joins the in-flight run or returns
  immediately when that run completed successfully.
- Otherwise a process is spawned and its exit, a process error and the
  cancellation signal race; the first event wins.
- Failed and aborted runs are removed from the cache so they can be
  retried.

Thread safety: the cache is only touched from the event loop, with no
suspension point between lookup and insert, so two requests for the same
key always share one record.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import subprocess
from collections.abc import Hashable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import anyio

from .cancellation import SupportsCancellation
from .config import get_config
from .errors import AbortedBeforeStart, AbortedDuringExecution, ProcessError, RunError
from .runtime import ProcessHandle, ProcessRunner, ProcessSpec

__all__ = [
    "CacheKey",
    "KeyKind",
    "OutcomeRecord",
    "RecordState",
    "RunCoordinator",
]

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0


class KeyKind(Enum):
    """Whether a cache key belongs to a signal or to the signal-less slot."""

    NO_SIGNAL = "no_signal"
    SIGNAL = "signal"


@dataclass(frozen=True)
class CacheKey:
    """Memoization key of one run request.

    Attributes:
        coordinator_id: Identity of the owning coordinator
        kind: Signal-less slot or per-signal slot
        signal_identity: ``id()`` of the signal object, None for NO_SIGNAL
    """

    coordinator_id: Hashable
    kind: KeyKind
    signal_identity: int | None = None

    @classmethod
    def for_signal(
        cls,
        coordinator_id: Hashable,
        signal: SupportsCancellation | None,
    ) -> "CacheKey":
        if signal is None:
            return cls(coordinator_id, KeyKind.NO_SIGNAL)
        return cls(coordinator_id, KeyKind.SIGNAL, id(signal))


class RecordState(Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"


@dataclass
class OutcomeRecord:
    """Cache entry for a run that is in flight or completed successfully.

    The record holds the signal so its ``id()`` cannot be reused by another
    object while the entry exists.
    """

    key: CacheKey
    signal: SupportsCancellation | None
    state: RecordState = RecordState.IN_FLIGHT
    error: RunError | None = None
    settled: anyio.Event = field(default_factory=anyio.Event)

    def mark_completed(self) -> None:
        self.state = RecordState.COMPLETED
        self.settled.set()

    def mark_failed(self, error: RunError) -> None:
        self.error = error
        self.settled.set()

    async def join(self) -> None:
        """Wait for the run behind this record and share its outcome."""
        if self.state is RecordState.COMPLETED:
            return
        await self.settled.wait()
        if self.error is not None:
            raise self.error


class _RunRace:
    """Terminal events of one run attempt. The first one wins."""

    def __init__(self) -> None:
        self._settled = anyio.Event()
        self.winner: str | None = None
        self.error: RunError | None = None

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def settle(self, winner: str, error: RunError | None = None) -> bool:
        if self._settled.is_set():
            logger.debug(f"Ignoring late {winner} event, {self.winner} already won")
            return False
        self.winner = winner
        self.error = error
        self._settled.set()
        return True

    async def wait(self) -> None:
        await self._settled.wait()


class RunCoordinator:
    """Runs one command as a managed child process.

    Example:
        coordinator = RunCoordinator(1, "sleep 5; echo done")
        signal = CancellationSignal()

        task = asyncio.create_task(coordinator.run(signal))
        signal.trigger()  # task raises AbortedDuringExecution

    Args:
        coordinator_id: Opaque identity, part of every cache key
        command: Command line interpreted by the shell
        runner: Process runner (default built from config)
        cwd: Working directory of the child
        env: Environment of the child (None = inherit)
        shell: Shell executable (default from config)
        listener_window: Seconds after which the abort subscription is
            dropped even if the process is still running (default from
            config, None keeps it until the run ends)
    """

    def __init__(
        self,
        coordinator_id: Hashable,
        command: str,
        *,
        runner: ProcessRunner | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        shell: str | None = None,
        listener_window: float | None = None,
    ) -> None:
        config = get_config()
        self._id = coordinator_id
        self._command = command
        self._runner = runner or ProcessRunner(
            term_timeout=config.term_timeout,
            kill_timeout=config.kill_timeout,
        )
        self._spec = ProcessSpec(
            command=command,
            cwd=cwd,
            env=env,
            shell=shell if shell is not None else config.shell,
        )
        self._listener_window = (
            listener_window if listener_window is not None else config.listener_window
        )
        self._cache: dict[CacheKey, OutcomeRecord] = {}
        self._memoized = False
        self._memoized_variant: RunCoordinator | None = None

    @property
    def id(self) -> Hashable:
        return self._id

    @property
    def command(self) -> str:
        return self._command

    @property
    def is_memoized(self) -> bool:
        return self._memoized

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def in_flight_count(self) -> int:
        return sum(
            1 for record in self._cache.values()
            if record.state is RecordState.IN_FLIGHT
        )

    def state_for(self, signal: SupportsCancellation | None = None) -> RecordState | None:
        """Cached state for the request keyed by ``signal``, None if uncached."""
        record = self._cache.get(CacheKey.for_signal(self._id, signal))
        return record.state if record is not None else None

    def memoize(self) -> "RunCoordinator":
        """Return the variant whose signal-less runs are memoized.

        The variant shares this coordinator's identity and cache. Calling
        memoize() again, on either object, returns the same variant.
        """
        if self._memoized:
            return self
        if self._memoized_variant is None:
            # Shallow copy: the variant shares this coordinator's cache.
            variant = copy.copy(self)
            variant._memoized = True
            variant._memoized_variant = variant
            self._memoized_variant = variant
        return self._memoized_variant

    async def run(self, signal: SupportsCancellation | None = None) -> None:
        """Run the command, or join the cached run for the same request.

        Args:
            signal: Optional cancellation signal; also keys the request

        Raises:
            AbortedBeforeStart: The signal was already triggered
            AbortedDuringExecution: The signal triggered while running
            ProcessError: The process failed to start, errored or exited
                with a non-zero code
        """
        if signal is not None and signal.is_triggered:
            logger.debug(f"Run rejected, signal already triggered (id={self._id})")
            raise AbortedBeforeStart(self._id, signal.reason)

        if signal is None and not self._memoized:
            await self._execute(None)
            return

        key = CacheKey.for_signal(self._id, signal)
        record = self._cache.get(key)
        if record is not None:
            logger.debug(f"Joining cached run: key={key} state={record.state.value}")
            await record.join()
            return

        # No suspension point between the lookup above and this insert.
        record = OutcomeRecord(key=key, signal=signal)
        self._cache[key] = record

        try:
            await self._execute(signal)
        except RunError as e:
            self._discard(record)
            record.mark_failed(e)
            raise
        except asyncio.CancelledError:
            self._discard(record)
            record.mark_failed(AbortedDuringExecution(self._id, "run cancelled"))
            raise
        except Exception as e:
            self._discard(record)
            record.mark_failed(ProcessError(self._id, e))
            raise

        record.mark_completed()
        logger.debug(f"Run completed and cached: key={key}")

    async def _execute(self, signal: SupportsCancellation | None) -> None:
        """Spawn the process and wait for the first terminal event."""
        race = _RunRace()
        handle: ProcessHandle | None = None
        window_timer: asyncio.TimerHandle | None = None

        def on_abort(reason: Any) -> None:
            race.settle("abort", AbortedDuringExecution(self._id, reason))

        def on_exit(returncode: int) -> None:
            if returncode == EXIT_SUCCESS:
                race.settle("exit")
                return
            cause = subprocess.CalledProcessError(returncode, self._command)
            race.settle("exit", ProcessError(self._id, cause))

        def on_error(exc: BaseException) -> None:
            race.settle("error", ProcessError(self._id, exc))

        # Subscribe before spawning so a trigger during startup is observed.
        if signal is not None:
            signal.on_trigger(on_abort)
            window_timer = self._arm_listener_window(signal, on_abort)

        try:
            try:
                handle = await self._runner.spawn(self._spec)
            except Exception as e:
                # OSError for a missing shell or cwd, ValueError for NUL bytes.
                logger.debug(f"Spawn failed (id={self._id}): {e!r}")
                race.settle("error", ProcessError(self._id, e))
            else:
                handle.on_exit(on_exit)
                handle.on_error(on_error)

            await race.wait()
        finally:
            if window_timer is not None:
                window_timer.cancel()
            if signal is not None:
                signal.remove_on_trigger(on_abort)
            if handle is not None:
                handle.remove_all_listeners()
                await self._release(handle)

        logger.debug(f"Run settled (id={self._id}): winner={race.winner}")
        if race.error is not None:
            raise race.error

    def _arm_listener_window(
        self,
        signal: SupportsCancellation,
        on_abort: Any,
    ) -> asyncio.TimerHandle | None:
        if self._listener_window is None:
            return None

        def expire() -> None:
            if signal.remove_on_trigger(on_abort):
                logger.debug(
                    f"Abort listener dropped after {self._listener_window}s (id={self._id})"
                )

        return asyncio.get_running_loop().call_later(self._listener_window, expire)

    async def _release(self, handle: ProcessHandle) -> None:
        """Terminate the process, shielded from cancellation of the caller."""
        try:
            await asyncio.shield(handle.terminate())
        except asyncio.CancelledError:
            # Caller cancelled again while terminating; force it.
            handle.kill()
            raise

    def _discard(self, record: OutcomeRecord) -> None:
        if self._cache.get(record.key) is record:
            del self._cache[record.key]
            logger.debug(f"Removed failed run from cache: key={record.key}")

    def __repr__(self) -> str:
        return (
            f"RunCoordinator(id={self._id!r}, "
            f"command={self._command!r}, "
            f"memoized={self._memoized}, "
            f"cached={len(self._cache)})"
        )
