"""Bounded retry with linear backoff, and a pacing primitive."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import RetryExhausted

logger = logging.getLogger("forumharvest.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryPolicy:
    """Run an async operation up to ``max_attempts`` times.

    After failed attempt *n* the policy waits ``base_delay * n`` before the
    next one.  Each attempt is raced against ``attempt_timeout`` so a hung
    call counts as a failure instead of stalling the loop.  When every
    attempt has failed :class:`RetryExhausted` is raised.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        attempt_timeout: float | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * attempt

    @property
    def worst_case_wait(self) -> float:
        return sum(self.delay_for(n) for n in range(1, self.max_attempts))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        timeout: float | None = None,
    ) -> T:
        timeout = timeout if timeout is not None else self.attempt_timeout
        last_error: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if timeout is None:
                    return await operation()
                return await asyncio.wait_for(operation(), timeout)
            except Exception as exc:
                last_error = exc
                logger.debug(
                    "Attempt %d/%d failed for %s: %s",
                    attempt, self.max_attempts, description, str(exc) or type(exc).__name__,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.delay_for(attempt))
        raise RetryExhausted(description, self.max_attempts, last_error)


class Pacer:
    """Keep at least ``interval`` seconds between consecutive ``wait()`` returns."""

    def __init__(
        self,
        interval: float,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None

    def remaining(self) -> float:
        if self._last is None:
            return 0.0
        return max(0.0, self.interval - (self._clock() - self._last))

    async def wait(self) -> None:
        pause = self.remaining()
        if pause > 0:
            await self._sleep(pause)
        self._last = self._clock()
