"""
Polling primitive shared by the drain controller and service controllers.

`poll_until` evaluates a predicate immediately and then once per interval
until it holds or the timeout elapses. Between polls it waits on an optional
cancellation event, so an operator interrupt wakes the poller at once instead
of after a full interval.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable

from runner_updater.errors import UpdateCancelledError

Predicate = Callable[[], bool | Awaitable[bool]]


async def _evaluate(predicate: Predicate) -> bool:
    result = predicate()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


async def poll_until(
    predicate: Predicate,
    *,
    interval: float,
    timeout: float,
    cancel_event: asyncio.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll a predicate until it returns True or the timeout elapses.

    Args:
        predicate: Sync or async callable returning a truthy value when the
            awaited condition holds. Exceptions propagate to the caller.
        interval: Seconds between evaluations.
        timeout: Maximum seconds to wait. A timeout of 0 evaluates once.
        cancel_event: Optional event that aborts the wait when set.
        clock: Monotonic clock, injectable for tests.

    Returns:
        True if the predicate held within the timeout, False otherwise.

    Raises:
        UpdateCancelledError: If cancel_event is set while waiting.
        ValueError: If interval is not positive or timeout is negative.
    """
    if interval <= 0:
        raise ValueError(f"Poll interval must be positive, got {interval}")
    if timeout < 0:
        raise ValueError(f"Poll timeout must not be negative, got {timeout}")

    deadline = clock() + timeout

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise UpdateCancelledError("Polling cancelled")

        if await _evaluate(predicate):
            return True

        remaining = deadline - clock()
        if remaining <= 0:
            return False

        delay = min(interval, remaining)
        if cancel_event is None:
            await asyncio.sleep(delay)
            continue

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except TimeoutError:
            continue
        raise UpdateCancelledError("Polling cancelled")
