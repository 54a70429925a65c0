"""Bounded retry with jittered backoff for provider calls.

Only ``ProviderError`` subclasses flagged ``retryable`` (rate limits and
transient server/network failures) are retried. Auth, quota and protocol
errors surface on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from agent_runtime.config import AgentSettings
from agent_runtime.errors import ProviderError, wrap_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


def fixed_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Fixed delay (no escalation), capped at *max_delay*."""
    return min(base_delay, max_delay)


@dataclass
class RetryPolicy:
    """Reusable retry configuration.

    Attributes:
        max_retries: How many times to retry a retryable failure.
        base_delay: Starting delay for backoff (seconds).
        max_delay: Cap on backoff delay (seconds).
        on_retry: ``(attempt, error, delay)`` callback fired before each sleep.
        backoff: ``(attempt, base_delay, max_delay) -> delay``. Defaults to
            :func:`exponential_backoff`.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    on_retry: Callable[[int, Exception, float], None] | None = None
    backoff: Callable[[int, float, float], float] | None = None

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.provider_max_retries,
            base_delay=settings.provider_base_delay,
            max_delay=settings.provider_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        return (self.backoff or exponential_backoff)(attempt, self.base_delay, self.max_delay)


async def call_with_retry(fn: Callable[[], Awaitable[T]], policy: RetryPolicy, *, label: str = "provider") -> T:
    """Await ``fn()``, retrying retryable provider errors per *policy*.

    Any non-``ProviderError`` exception is classified with ``wrap_error``
    first, so callers only ever see the typed hierarchy.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            error: ProviderError = wrap_error(exc)
            if not error.retryable or attempt >= policy.max_retries:
                if error is exc:
                    raise
                raise error from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s call failed (attempt %d/%d, %s): %s; retrying in %.1fs",
                label,
                attempt + 1,
                policy.max_retries + 1,
                type(error).__name__,
                error,
                delay,
            )
            if policy.on_retry is not None:
                policy.on_retry(attempt, error, delay)
            attempt += 1
            await asyncio.sleep(delay)
