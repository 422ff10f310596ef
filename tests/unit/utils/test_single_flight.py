"""Tests for KeyedSingleFlight."""

from __future__ import annotations

import asyncio

import pytest

from parley.utils.single_flight import KeyedSingleFlight


class TestKeyedSingleFlight:
    """Tests for in-flight deduplication by key."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_operation(self) -> None:
        """Test that callers for one key run the operation once."""
        flights: KeyedSingleFlight[str, int] = KeyedSingleFlight()
        calls = 0

        async def operation() -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        results = await asyncio.gather(*(flights.run("a", operation) for _ in range(4)))

        assert results == [1, 1, 1, 1]
        assert calls == 1
        assert not flights.is_in_flight("a")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self) -> None:
        """Test that different keys run separately."""
        flights: KeyedSingleFlight[str, str] = KeyedSingleFlight()

        async def make(value: str) -> str:
            await asyncio.sleep(0)
            return value

        results = await asyncio.gather(flights.run("a", lambda: make("a")), flights.run("b", lambda: make("b")))

        assert results == ["a", "b"]

    @pytest.mark.asyncio
    async def test_failure_shared_then_retried(self) -> None:
        """Test that all waiters see the failure and the next call starts fresh."""
        flights: KeyedSingleFlight[str, int] = KeyedSingleFlight()
        attempts = 0

        async def operation() -> int:
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0.01)
            if attempts == 1:
                raise ConnectionError("refused")
            return attempts

        results = await asyncio.gather(flights.run("k", operation), flights.run("k", operation), return_exceptions=True)

        assert all(isinstance(r, ConnectionError) for r in results)
        assert await flights.run("k", operation) == 2

    @pytest.mark.asyncio
    async def test_waiter_cancellation_does_not_abort_others(self) -> None:
        """Test that one cancelled waiter leaves the shared attempt running."""
        flights: KeyedSingleFlight[str, str] = KeyedSingleFlight()

        async def operation() -> str:
            await asyncio.sleep(0.02)
            return "done"

        first = asyncio.create_task(flights.run("k", operation))
        second = asyncio.create_task(flights.run("k", operation))
        await asyncio.sleep(0)
        first.cancel()

        assert await second == "done"
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_cancel_key(self) -> None:
        """Test that cancel() aborts the in-flight operation."""
        flights: KeyedSingleFlight[str, str] = KeyedSingleFlight()

        async def operation() -> str:
            await asyncio.sleep(10)
            return "never"

        waiter = asyncio.create_task(flights.run("k", operation))
        await asyncio.sleep(0)
        assert flights.is_in_flight("k")

        flights.cancel("k")

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert not flights.is_in_flight("k")
