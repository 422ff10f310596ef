"""
Write-coalescing batch writer.

During streaming, partial updates to the same record arrive far faster than
storage should be written. Patches are merged in memory per record id
(shallow merge, last write per field wins) and flushed on a fixed cadence.

Guarantees:
- At-least-once: a patch leaves the pending map only when a flush takes it,
  and a failed flush merges it back for the next cycle.
- One flush at a time: later flushers wait for the one in flight.
- cancel(id) returns only after any in-flight flush finished, so the caller
  can follow with a direct write that nothing queued will overwrite.
"""

from __future__ import annotations

import asyncio
import contextlib

from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from parley.core.constants import get_settings
from parley.utils.logger import logger

Patch = dict[str, Any]
PersistFn = Callable[[str, Patch], Awaitable[Any]]


class BatchWriter:
    """Coalesces high-frequency record patches into periodic writes."""

    def __init__(
        self,
        persist: PersistFn,
        interval: float | None = None,
        max_backoff: float | None = None,
    ) -> None:
        """Initialize the batch writer.

        Args:
            persist: Coroutine applying one merged patch to one record
            interval: Flush cadence in seconds (default: batch_flush_interval setting)
            max_backoff: Ceiling of the retry delay while the store keeps failing
        """
        settings = get_settings()
        self._persist = persist
        self.interval = interval if interval is not None else settings.batch_flush_interval
        self.max_backoff = max_backoff if max_backoff is not None else settings.batch_writer_max_backoff

        self._pending: dict[str, Patch] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._flush_lock = asyncio.Lock()
        self._in_flight: asyncio.Task[None] | None = None
        self._consecutive_failures = 0

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def pending_patch(self, record_id: str) -> Patch | None:
        patch = self._pending.get(record_id)
        return dict(patch) if patch is not None else None

    @property
    def retry_delay(self) -> float:
        """Delay before the next scheduled flush, growing while flushes fail."""
        if self._consecutive_failures == 0:
            return self.interval
        return min(self.interval * 2**self._consecutive_failures, self.max_backoff)

    def queue_patch(self, record_id: str, patch: Patch) -> None:
        """Merge a partial update for one record and make sure a flush is scheduled."""
        self._pending[record_id] = {**self._pending.get(record_id, {}), **patch}
        self._schedule()

    async def flush_now(self, ids: Iterable[str] | None = None) -> None:
        """Flush pending patches for ``ids`` (or all) immediately.

        Waits for a flush already in progress before starting.
        """
        self._cancel_timer()
        await self._execute_flush(list(ids) if ids is not None else None)

    async def cancel(self, record_id: str) -> None:
        """Drop queued patches for one record and wait out any in-flight flush."""
        self._pending.pop(record_id, None)
        if not self._pending:
            self._cancel_timer()

        await self._wait_for_current_flush()

        # A failed in-flight flush may have merged the record back
        self._pending.pop(record_id, None)
        if not self._pending:
            self._cancel_timer()

    async def close(self) -> None:
        """Flush everything that is pending and stop the timer."""
        await self.flush_now()
        self._cancel_timer()
        if self._timer_task is not None and not self._timer_task.done():
            await self._timer_task

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.retry_delay, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_task = asyncio.create_task(self._execute_flush(None))

    async def _wait_for_current_flush(self) -> None:
        in_flight = self._in_flight
        if in_flight is not None and not in_flight.done():
            with contextlib.suppress(Exception):
                await asyncio.shield(in_flight)

    async def _execute_flush(self, ids: list[str] | None) -> None:
        async with self._flush_lock:
            task = asyncio.ensure_future(self._flush_pending(ids))
            self._in_flight = task
            try:
                # Shielded so an abandoned caller cannot drop a snapshot mid-write
                await asyncio.shield(task)
            finally:
                if self._in_flight is task:
                    self._in_flight = None

        if self._pending:
            self._schedule()

    async def _flush_pending(self, ids: list[str] | None) -> None:
        target_ids = list(self._pending) if ids is None else ids
        updates = [(record_id, self._pending.pop(record_id)) for record_id in target_ids if record_id in self._pending]
        if not updates:
            return

        for index, (record_id, patch) in enumerate(updates):
            try:
                await self._persist(record_id, patch)
            except Exception as e:
                # Re-queue everything not yet written; newer pending fields win
                for failed_id, failed_patch in updates[index:]:
                    self._pending[failed_id] = {**failed_patch, **self._pending.get(failed_id, {})}
                self._consecutive_failures += 1
                logger.error(
                    f"Batch writer failed to persist {len(updates) - index} update(s), "
                    f"retrying in {self.retry_delay:.2f}s: {e}"
                )
                return

        self._consecutive_failures = 0
