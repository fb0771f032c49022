"""Retry with exponential backoff, shared by every I/O boundary."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from ..config import Settings, get_settings
from ..exceptions import PermanentProviderError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: BaseException) -> bool:
    """Provider and network failures are retryable unless classified permanent."""
    if isinstance(error, PermanentProviderError):
        return False
    return isinstance(error, (ProviderError, httpx.TransportError, asyncio.TimeoutError))


@dataclass(frozen=True)
class BackoffPolicy:
    """How often and how patiently to retry a failing call.

    Delay before retry ``i`` (0-based) is ``base_delay * 2**i`` with
    ``jitter`` applied as a random fraction either way, capped at
    ``max_delay``. A ``retry_after`` hint on the error wins over the
    computed delay (still capped).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: float = 0.1
    retryable: Callable[[BaseException], bool] = is_transient

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> BackoffPolicy:
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter,
        )

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return max(0.0, min(float(retry_after), self.max_delay))

        delay = self.base_delay * (2**attempt)
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, min(delay, self.max_delay))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    Args:
        operation: Factory returning a fresh awaitable for each attempt.
        policy: Attempts, delays and the retryable predicate.
        description: Used in log messages.
        sleep: Awaitable sleep, replaceable in tests.

    Returns:
        Result of the first successful attempt.

    Raises:
        Exception: The last error once attempts are exhausted, or the first
            error the policy does not consider retryable.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if not policy.retryable(e) or attempt + 1 >= attempts:
                raise
            delay = policy.delay_for(attempt, e)
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.2fs",
                description,
                attempt + 1,
                attempts,
                e,
                delay,
            )
            await sleep(delay)

    raise AssertionError("unreachable")
