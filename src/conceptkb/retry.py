"""Bounded retry with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class Backoff:
    """Attempt counter with a computed delay.

    ``delay_for(n)`` is ``base_delay * multiplier ** n`` for the n-th retry
    (0-based), capped at ``max_delay``. ``exhausted`` turns true once
    ``max_attempts`` attempts have been recorded.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    attempts: int = field(default=0, init=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def record(self) -> int:
        self.attempts += 1
        return self.attempts

    def next_delay(self) -> float:
        """Delay before the next attempt, given attempts recorded so far."""
        return self.delay_for(max(self.attempts - 1, 0))


@dataclass
class RetryOutcome:
    ok: bool
    attempts: int
    error: BaseException | None = None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    backoff: Backoff,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> tuple[RetryOutcome, T | None]:
    """Run ``operation`` until it succeeds or the backoff is exhausted.

    Errors outside ``retry_on`` propagate immediately.
    """
    last: BaseException | None = None
    while not backoff.exhausted:
        attempt = backoff.record()
        try:
            result = await operation()
        except retry_on as exc:
            last = exc
            logger.warning("%s failed (attempt %d/%d): %s",
                           name, attempt, backoff.max_attempts, exc)
            if not backoff.exhausted:
                await sleep(backoff.next_delay())
            continue
        if attempt > 1:
            logger.info("%s succeeded after %d attempts", name, attempt)
        return RetryOutcome(ok=True, attempts=attempt), result
    return RetryOutcome(ok=False, attempts=backoff.attempts, error=last), None
