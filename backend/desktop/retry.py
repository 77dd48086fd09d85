"""Bounded retry with a backoff schedule, shared by port allocation and startup."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

_log = logging.getLogger(__name__)

T = TypeVar("T")


def _always(exc: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Run an async operation up to ``max_attempts`` times.

    ``backoff[i]`` is the delay after the (i+1)-th failure; the last entry is
    reused if the schedule is shorter than the attempt count.  Errors for
    which ``retryable`` returns False propagate immediately.  When attempts
    run out the last error is re-raised unchanged so callers can wrap it.
    """

    max_attempts: int
    backoff: tuple[float, ...] = ()
    retryable: Callable[[BaseException], bool] = _always
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)
    name: str = "operation"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_after(self, attempt: int) -> float:
        if not self.backoff:
            return 0.0
        return self.backoff[min(attempt - 1, len(self.backoff) - 1)]

    async def run(self, operation: Callable[[int], Awaitable[T]]) -> T:
        """Call ``operation(attempt)`` with attempt numbers starting at 1."""
        attempt = 1
        while True:
            try:
                return await operation(attempt)
            except Exception as exc:
                if not self.retryable(exc) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_after(attempt)
                _log.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    self.name, attempt, self.max_attempts, exc, delay,
                )
                if delay > 0:
                    await self.sleep(delay)
                attempt += 1
