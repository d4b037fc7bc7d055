"""
Drain controller: wait for the runner to finish its in-flight job.

Draining is purely observational. It never terminates work; whether to
proceed after a timeout is the orchestrator's decision.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from enum import Enum

from runner_updater.agent import AgentProbe
from runner_updater.logging import get_logger
from runner_updater.polling import poll_until

logger = get_logger(__name__)


class DrainOutcome(str, Enum):
    """Result of a drain."""

    IDLE = "idle"
    TIMED_OUT = "timed_out"


class DrainController:
    """
    Polls the agent probe until no job is executing.

    Attributes:
        probe: Agent probe answering "is a job running".
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        probe: AgentProbe,
        poll_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self.poll_interval = poll_interval
        self._clock = clock

    async def _is_idle(self) -> bool:
        try:
            busy = await self.probe.is_busy()
        except Exception as e:
            logger.warning(
                "Activity query failed, treating agent as busy",
                extra={"error": str(e)},
            )
            return False
        if busy:
            logger.info("Agent busy, waiting for job to finish")
        return not busy

    async def drain(
        self,
        max_wait: float,
        cancel_event: asyncio.Event | None = None,
    ) -> DrainOutcome:
        """
        Wait until the agent is idle or max_wait elapses.

        Args:
            max_wait: Maximum seconds to wait.
            cancel_event: Optional event; setting it aborts the wait.

        Returns:
            DrainOutcome.IDLE or DrainOutcome.TIMED_OUT.

        Raises:
            UpdateCancelledError: If cancel_event is set while waiting.
        """
        started = self._clock()
        logger.info(
            "Draining agent",
            extra={"max_wait_seconds": max_wait, "poll_interval": self.poll_interval},
        )

        idle = await poll_until(
            self._is_idle,
            interval=self.poll_interval,
            timeout=max_wait,
            cancel_event=cancel_event,
            clock=self._clock,
        )

        outcome = DrainOutcome.IDLE if idle else DrainOutcome.TIMED_OUT
        logger.info(
            "Drain finished",
            extra={
                "outcome": outcome.value,
                "elapsed_seconds": round(self._clock() - started, 3),
            },
        )
        return outcome
