"""Deadline-bounded polling of a progress counter.

Both orchestrators wait the same way: poll a count once per interval until it
reaches the expected value (converged) or stays at zero for too long
(stalled). The whole loop runs under ``asyncio.timeout()``, so an expired
deadline cancels whatever request is in flight, including one the API client
is still retrying.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import ConvergenceTimeoutError
from ..observability.logging import get_logger
from ..observability.metrics import CONVERGENCE_POLLS_TOTAL
from .state_machine import PollState, is_converged, is_stalled, observe

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ConvergencePolicy:
    """Timing knobs shared by both orchestrators (seconds)."""

    poll_interval: float = 1.0
    stall_threshold: int = 60
    convergence_timeout: float = 600.0
    locate_timeout: float = 60.0


DEFAULT_POLICY = ConvergencePolicy()


def coerce_count(value: Any) -> int:
    """Read a progress counter; anything unusable counts as no progress."""
    if isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


class ConvergencePoller:
    """Polls ``fetch_count`` until convergence, stall, or deadline.

    ``run()`` returns the final PollState on convergence or stall and raises
    ConvergenceTimeoutError when ``policy.convergence_timeout`` elapses first.
    ``state`` always holds the latest observation.
    """

    def __init__(
        self,
        fetch_count: Callable[[], Awaitable[int]],
        *,
        resource: str,
        orchestrator: str,
        expected: int,
        policy: ConvergencePolicy = DEFAULT_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._fetch_count = fetch_count
        self._resource = resource
        self._orchestrator = orchestrator
        self._expected = expected
        self._policy = policy
        self._sleep = sleep
        self.state = PollState()

    async def run(self) -> PollState:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with asyncio.timeout(self._policy.convergence_timeout):
                return await self._poll()
        except TimeoutError:
            elapsed = loop.time() - started
            raise ConvergenceTimeoutError(
                self._resource,
                elapsed_seconds=elapsed,
                observed_count=self.state.observed_count,
                expected_count=self._expected,
            ) from None

    async def _poll(self) -> PollState:
        while True:
            count = await self._fetch_count()
            self.state = observe(self.state, count)
            CONVERGENCE_POLLS_TOTAL.labels(orchestrator=self._orchestrator).inc()
            logger.info(
                "poll_progress",
                resource=self._resource,
                observed=count,
                expected=self._expected,
                zero_streak=self.state.zero_streak,
            )
            if is_converged(self.state, self._expected):
                return self.state
            if is_stalled(self.state, self._policy.stall_threshold):
                return self.state
            await self._sleep(self._policy.poll_interval)

    def converged(self) -> bool:
        return is_converged(self.state, self._expected)
