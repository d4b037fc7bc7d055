"""
Tests for the poll_until primitive.
"""

from __future__ import annotations

import asyncio

import pytest

from runner_updater.errors import UpdateCancelledError
from runner_updater.polling import poll_until


class FakeClock:
    """Monotonic clock advanced by the predicate under test."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestPollUntil:
    """Tests for poll_until."""

    @pytest.mark.asyncio
    async def test_returns_immediately_when_true(self) -> None:
        """Test the predicate is evaluated before any wait."""
        calls = []

        def predicate() -> bool:
            calls.append(1)
            return True

        assert await poll_until(predicate, interval=10, timeout=10) is True
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_predicate(self) -> None:
        """Test async predicates are awaited."""

        async def predicate() -> bool:
            return True

        assert await poll_until(predicate, interval=1, timeout=1) is True

    @pytest.mark.asyncio
    async def test_becomes_true_after_polls(self) -> None:
        """Test polling continues until the predicate holds."""
        results = iter([False, False, True])

        assert await poll_until(lambda: next(results), interval=0.01, timeout=5) is True

    @pytest.mark.asyncio
    async def test_times_out(self) -> None:
        """Test False is returned when the deadline passes."""
        clock = FakeClock()

        def predicate() -> bool:
            clock.now += 1.0
            return False

        result = await poll_until(predicate, interval=0.001, timeout=3, clock=clock)

        assert result is False
        assert clock.now >= 3

    @pytest.mark.asyncio
    async def test_zero_timeout_evaluates_once(self) -> None:
        """Test a zero timeout checks exactly once."""
        calls = []

        def predicate() -> bool:
            calls.append(1)
            return False

        assert await poll_until(predicate, interval=1, timeout=0) is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_predicate_exception_propagates(self) -> None:
        """Test predicate errors are not swallowed."""

        def predicate() -> bool:
            raise RuntimeError("probe failed")

        with pytest.raises(RuntimeError, match="probe failed"):
            await poll_until(predicate, interval=1, timeout=1)

    @pytest.mark.asyncio
    async def test_cancel_event_already_set(self) -> None:
        """Test a set event cancels before evaluating."""
        event = asyncio.Event()
        event.set()

        with pytest.raises(UpdateCancelledError):
            await poll_until(lambda: True, interval=1, timeout=1, cancel_event=event)

    @pytest.mark.asyncio
    async def test_cancel_event_wakes_waiter(self) -> None:
        """Test setting the event interrupts a long wait."""
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, event.set)

        with pytest.raises(UpdateCancelledError):
            await poll_until(
                lambda: False, interval=60, timeout=120, cancel_event=event
            )

    @pytest.mark.asyncio
    async def test_invalid_arguments(self) -> None:
        """Test interval and timeout validation."""
        with pytest.raises(ValueError, match="interval"):
            await poll_until(lambda: True, interval=0, timeout=1)
        with pytest.raises(ValueError, match="timeout"):
            await poll_until(lambda: True, interval=1, timeout=-1)
