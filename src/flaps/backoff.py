"""Exponential backoff retry loop with transient/permanent error classification."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


@dataclass(frozen=True)
class BackoffPolicy:
    """Delays grow from `initial_interval` by `multiplier`, capped at `max_interval`.

    Retrying stops once the next delay would take the total elapsed time past
    `max_elapsed` (seconds). `None` retries forever.
    """

    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 5.0
    max_elapsed: float | None = 15 * 60.0

    def intervals(self) -> Iterator[float]:
        interval = self.initial_interval
        while True:
            yield interval
            interval = min(interval * self.multiplier, self.max_interval)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    is_transient: Callable[[Exception], bool],
    *,
    sleep: Sleep = asyncio.sleep,
    clock: Clock = time.monotonic,
    description: str = "operation",
) -> T:
    """Run `operation` until it succeeds, a permanent error occurs, or the budget runs out.

    Errors for which `is_transient` is false are raised immediately. When the
    elapsed-time budget is exhausted the last transient error is raised.
    """
    start = clock()
    intervals = policy.intervals()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not is_transient(exc):
                raise

            delay = next(intervals)
            elapsed = clock() - start
            if policy.max_elapsed is not None and elapsed + delay > policy.max_elapsed:
                logger.warning(
                    "%s still failing after %d attempts (%.1fs), giving up: %s",
                    description,
                    attempt,
                    elapsed,
                    exc,
                )
                raise

            logger.info(
                "%s failed (attempt %d), retrying in %.2fs: %s",
                description,
                attempt,
                delay,
                exc,
            )
            await sleep(delay)
