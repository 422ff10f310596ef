"""
Keyed single-flight coordination.

At most one operation runs per key at a time. A caller that arrives while an
operation for its key is in flight awaits that same operation and receives its
result (or its exception) instead of starting a duplicate.
"""

from __future__ import annotations

import asyncio
import functools

from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class KeyedSingleFlight(Generic[K, T]):
    """Explicit in-flight table keyed by resource id.

    Usage:
        flights: KeyedSingleFlight[str, Client] = KeyedSingleFlight()
        client = await flights.run(server_id, lambda: connect(server_id))
    """

    def __init__(self) -> None:
        self._in_flight: dict[K, asyncio.Task[T]] = {}

    def is_in_flight(self, key: K) -> bool:
        """Check whether an operation for ``key`` is currently running."""
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    async def run(self, key: K, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` for ``key``, or join the one already in flight.

        The shared task is shielded so one waiter being cancelled does not
        abort the attempt for the others.
        """
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(operation())
            self._in_flight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        return await asyncio.shield(task)

    def cancel(self, key: K) -> None:
        """Abort the in-flight operation for ``key`` if there is one."""
        task = self._in_flight.pop(key, None)
        if task is not None and not task.done():
            task.cancel()

    def cancel_all(self) -> None:
        for key in list(self._in_flight):
            self.cancel(key)

    def _forget(self, key: K, task: asyncio.Task[T]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the outcome retrieved even when every waiter went away
        if not task.cancelled():
            task.exception()
