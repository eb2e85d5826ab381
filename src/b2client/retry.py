"""Bounded retry policy for transient B2 failures."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from b2client.config import RetryConfig
from b2client.errors import ApiError, AuthTokenExpired

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    Delays grow exponentially from ``base_delay`` and never exceed
    ``max_delay``, including server-supplied Retry-After hints.
    """

    attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            attempts=config.attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        if isinstance(error, ApiError) and error.retry_after is not None:
            return min(float(error.retry_after), self.max_delay)
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


def is_retryable(error: BaseException, *, upload: bool = False) -> bool:
    """Whether ``error`` may be retried.

    Upload endpoints reject expired upload tokens with an auth-token error;
    those are retryable there because the retry runs with a fresh lease.
    """
    if upload and isinstance(error, AuthTokenExpired):
        return True
    return isinstance(error, ApiError) and error.retryable


async def call_with_retry(
    policy: RetryPolicy,
    func: Callable[[], Awaitable[T]],
    *,
    description: str = "call",
) -> T:
    """Await ``func()`` until it succeeds or the budget is spent.

    Only retryable API errors are retried; anything else propagates on the
    first occurrence. The last error propagates once attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except ApiError as exc:
            if not is_retryable(exc) or attempt >= policy.attempts:
                raise
            delay = policy.delay_for(attempt, exc)
            logger.warning(
                "%s failed (%r), attempt %d of %d; retrying in %.1fs",
                description,
                exc,
                attempt,
                policy.attempts,
                delay,
                extra={"attempt": attempt},
            )
            await asyncio.sleep(delay)
            attempt += 1
