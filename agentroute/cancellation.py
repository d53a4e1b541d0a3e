"""
Cancellation tokens for in-flight backend calls.

Each race candidate gets its own token so one loser can be stopped
without touching the winner, and so the invoker can still report the
cost billed before it stopped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class CancelledException(Exception):
    """Raised when an operation is cancelled through its token."""

    pass


class CancellationToken:
    """
    Token for checking and requesting cancellation.

    Async-safe; `cancel()` may be called from any coroutine on the loop.
    """

    def __init__(self) -> None:
        """Initialize cancellation token."""
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation."""
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        for callback in self._callbacks:
            callback()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._cancelled

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run `callback` when cancelled (immediately if already cancelled)."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def check(self) -> None:
        """
        Check if cancelled and raise if so.

        Raises:
            CancelledException: If cancellation was requested
        """
        if self._cancelled:
            raise CancelledException("Operation was cancelled")

    async def wait_for_cancellation(self, timeout: float | None = None) -> bool:
        """
        Wait for cancellation.

        Args:
            timeout: Maximum time to wait in seconds

        Returns:
            True if cancelled, False if timeout
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the token fires first.

        The wrapped work runs in its own task and is cancelled as soon as
        the token is; the caller then gets CancelledException.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CancelledException("Operation was cancelled")
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise CancelledException("Operation was cancelled")


__all__ = ["CancellationToken", "CancelledException"]
