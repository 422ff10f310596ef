"""
Cancellation token for cooperative turn cancellation.

One token is shared by every participant turn of a send operation. It is
checked between participants and between tool-call rounds, and raced against
in-flight streaming requests so a stop takes effect mid-stream.
"""

from __future__ import annotations

import asyncio

from collections.abc import Awaitable
from typing import TypeVar

from parley.core.exceptions import OperationCancelledError
from parley.utils.logger import logger

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token.

    Usage:
        token = CancellationToken()

        # In the controller:
        await token.cancel("user stop")

        # Between steps of a worker:
        token.check()  # Raises OperationCancelledError if cancelled

        # Around a long await that must be torn down on cancel:
        result = await token.run(stream_reply())
    """

    __slots__ = ("_cancel_reason", "_cancelled", "_lock")

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()
        self._cancel_reason: str | None = None
        self._lock = asyncio.Lock()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancelled.is_set()

    @property
    def cancel_reason(self) -> str | None:
        """Get the reason for cancellation, if any."""
        return self._cancel_reason

    async def cancel(self, reason: str | None = None) -> None:
        """Request cancellation. Idempotent; the first reason is kept.

        Args:
            reason: Optional reason for cancellation (for logging/debugging)
        """
        async with self._lock:
            if self._cancelled.is_set():
                return
            self._cancel_reason = reason
            self._cancelled.set()

    async def wait_for_cancellation(self, timeout: float | None = None) -> bool:
        """Wait for cancellation to be requested.

        Args:
            timeout: Maximum time to wait (None = wait forever)

        Returns:
            True if cancelled, False if timeout expired
        """
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def check(self) -> None:
        """Raise if cancellation has been requested.

        Raises:
            OperationCancelledError: If token is cancelled
        """
        if self.is_cancelled:
            raise OperationCancelledError(self._cancel_reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` in its own task, tearing it down on cancellation.

        The guarded work runs as a child task so the caller's task is never
        cancelled itself; it only observes OperationCancelledError. When the
        work and the cancellation finish together, the work's outcome wins.

        Raises:
            OperationCancelledError: If the token fires before the work completes
        """
        self.check()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Cancelled operation raised during teardown: {e}")
        raise OperationCancelledError(self._cancel_reason)


__all__ = ["CancellationToken"]
