"""Exponential backoff for transient network failures."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """All attempts failed with transient errors."""

    def __init__(self, what: str, attempts: int, last_error: BaseException):
        self.what = what
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{what} failed after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """Total attempts and the delay curve between them."""

    attempts: int = 4
    base_delay_s: float = 0.5
    backoff_factor: float = 2.0
    max_delay_s: float = 30.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (0-based)."""
        delay = min(self.base_delay_s * (self.backoff_factor ** attempt), self.max_delay_s)
        if self.jitter:
            delay *= 0.5 + random.random()  # noqa: S311
        return delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[BaseException], bool],
    what: str = "operation",
) -> T:
    """Run ``fn`` until it succeeds, a non-transient error occurs, or attempts run out.

    Raises:
        RetryExhausted: every attempt failed transiently.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt + 1 >= attempts:
                raise RetryExhausted(what, attempt + 1, exc) from exc
            delay = policy.delay(attempt)
            logger.warning(
                "%s: transient failure (attempt %d/%d): %s; retrying in %.1fs",
                what, attempt + 1, attempts, exc, delay,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
