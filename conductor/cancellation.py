"""
Cooperative cancellation for foreground turns.

WHAT THIS FILE DOES:
-------------------
One AbortSignal is created per foreground turn and handed to everything
started under that turn: the LLM call, each tool invocation, foreground
shell commands. When the user aborts, the signal flips once and every
listener finds out.

HOW CANCELLATION PROPAGATES:
---------------------------
1. Polling: code checks `signal.aborted` at safe points
2. Callbacks: `signal.on_abort(runner.abort)` kills a child process
3. Racing: `await run_abortable(coro, signal)` returns the coroutine's
   result, or cancels it and raises AbortedError if the signal wins

The engine only guarantees that no NEW work is issued after an abort.
Underlying I/O (a process being reaped, a socket being closed) finishes
on its own schedule.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import AbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AbortSignal:
    """
    Single-shot cancellation token for asyncio code.

    Example:
        signal = AbortSignal()
        signal.on_abort(lambda: print("stopping"))

        # Somewhere else
        signal.abort("user pressed Esc")
        signal.aborted  # True
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: Optional[str] = None) -> None:
        """
        Fire the signal.

        Idempotent: only the first call records a reason and runs the
        registered callbacks.
        """
        if self._event.is_set():
            return
        self._reason = reason or "aborted"
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)

    def on_abort(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback to run when the signal fires.

        If the signal already fired, the callback runs immediately.

        Returns:
            A function that unregisters the callback
        """
        if self._event.is_set():
            self._invoke(callback)
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise AbortedError(self._reason or "aborted")

    async def wait(self) -> None:
        """Block until the signal fires."""
        await self._event.wait()

    def _invoke(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Abort callback %r failed", callback)


async def run_abortable(awaitable: Awaitable[T], signal: AbortSignal) -> T:
    """
    Await `awaitable` unless `signal` fires first.

    Args:
        awaitable: Coroutine or future to run
        signal: AbortSignal governing the operation

    Returns:
        Whatever the awaitable returns

    Raises:
        AbortedError: If the signal fired before the awaitable finished.
            The awaitable is cancelled before this is raised.
    """
    task = asyncio.ensure_future(awaitable)
    if signal.aborted:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortedError(signal.reason or "aborted")

    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task.done():
        waiter.cancel()
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise AbortedError(signal.reason or "aborted")
