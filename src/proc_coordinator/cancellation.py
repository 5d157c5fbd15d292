"""Cancellation signals for run requests.

A signal is a one-shot flag with subscribers. Callers hand the same signal
object to several runs to mark them as one request; distinct objects are
distinct requests, so signals compare and hash by identity.

Any object matching SupportsCancellation can be passed to
RunCoordinator.run; CancellationSignal is the implementation shipped here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol, runtime_checkable

import anyio

__all__ = [
    "CancellationSignal",
    "SupportsCancellation",
    "TriggerCallback",
]

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[Any], None]


@runtime_checkable
class SupportsCancellation(Protocol):
    """Interface a caller-supplied cancellation signal must provide."""

    @property
    def is_triggered(self) -> bool: ...

    @property
    def reason(self) -> Any: ...

    def on_trigger(self, callback: TriggerCallback) -> None: ...

    def remove_on_trigger(self, callback: TriggerCallback) -> bool: ...


class CancellationSignal:
    """One-shot cancellation signal.

    Example:
        signal = CancellationSignal()
        task = asyncio.create_task(coordinator.run(signal))
        ...
        signal.trigger("user pressed stop")
    """

    def __init__(self) -> None:
        self._triggered = False
        self._reason: Any = None
        self._callbacks: list[TriggerCallback] = []
        self._waiters: list[anyio.Event] = []

    @classmethod
    def timeout(cls, delay: float) -> "CancellationSignal":
        """Create a signal that triggers itself after ``delay`` seconds.

        Must be called from a running event loop.
        """
        signal = cls()
        signal.cancel_after(delay)
        return signal

    @property
    def is_triggered(self) -> bool:
        return self._triggered

    @property
    def reason(self) -> Any:
        return self._reason

    @property
    def listener_count(self) -> int:
        return len(self._callbacks)

    def on_trigger(self, callback: TriggerCallback) -> None:
        """Subscribe to the trigger event. Subscribing twice is a no-op."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def remove_on_trigger(self, callback: TriggerCallback) -> bool:
        """Unsubscribe. Returns whether the callback was subscribed."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)
            return True
        return False

    def trigger(self, reason: Any = None) -> bool:
        """Trigger the signal and notify subscribers in subscription order.

        Args:
            reason: Value handed to every subscriber and kept as ``reason``

        Returns:
            False if the signal had already been triggered
        """
        if self._triggered:
            return False

        self._triggered = True
        self._reason = reason
        logger.debug(f"Cancellation signal triggered: reason={reason!r}")

        callbacks = list(self._callbacks)
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback(reason)
            except Exception as e:
                logger.warning(f"Error in cancellation callback: {e}")

        for waiter in self._waiters:
            waiter.set()
        self._waiters.clear()
        return True

    def cancel_after(self, delay: float) -> asyncio.TimerHandle:
        """Schedule ``trigger`` on the running loop after ``delay`` seconds."""
        loop = asyncio.get_running_loop()
        return loop.call_later(
            delay,
            self.trigger,
            TimeoutError(f"Cancelled after {delay}s"),
        )

    async def wait(self) -> None:
        """Wait until the signal is triggered."""
        if self._triggered:
            return
        waiter = anyio.Event()
        self._waiters.append(waiter)
        await waiter.wait()

    def __repr__(self) -> str:
        status = "triggered" if self._triggered else "pending"
        return (
            f"CancellationSignal(status={status}, "
            f"listeners={len(self._callbacks)})"
        )
