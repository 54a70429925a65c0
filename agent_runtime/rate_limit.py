"""Per-provider concurrency limiting for provider calls.

One ``ProviderRateLimiter`` is owned by the runtime and shared by the parent
loop and every sub-agent loop, so nested agents draw from the same slots.
Limits can be overridden with ``AGENT_RUNTIME_RATE_LIMITS`` (JSON object of
provider name to max concurrent requests).

Usage::

    limiter = ProviderRateLimiter()
    async with limiter.aacquire(ProviderKind.GEMINI):
        turn = await adapter.send(conversation, tools, settings)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping

from agent_runtime.config import ENV_PREFIX, ProviderKind

logger = logging.getLogger(__name__)

RATE_LIMITS_ENV = f"{ENV_PREFIX}RATE_LIMITS"

_DEFAULT_LIMITS: dict[str, int] = {
    ProviderKind.OPENAI.value: 50,
    ProviderKind.GEMINI.value: 30,
    ProviderKind.ANTHROPIC.value: 20,
    "default": 30,
}


def _load_env_limits() -> dict[str, int]:
    raw = os.environ.get(RATE_LIMITS_ENV)
    if not raw:
        return {}
    try:
        overrides = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Invalid %s env var: %s", RATE_LIMITS_ENV, raw)
        return {}
    if not isinstance(overrides, dict):
        logger.warning("Invalid %s env var (expected an object): %s", RATE_LIMITS_ENV, raw)
        return {}
    out: dict[str, int] = {}
    for key, value in overrides.items():
        try:
            out[str(key)] = max(1, int(value))
        except (TypeError, ValueError):
            logger.warning("Ignoring non-integer rate limit %s=%r", key, value)
    return out


class ProviderRateLimiter:
    """asyncio.Semaphore per provider kind."""

    def __init__(self, limits: Mapping[str, int] | None = None, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self._limits: dict[str, int] = dict(_DEFAULT_LIMITS)
        self._limits.update(_load_env_limits())
        if limits:
            self._limits.update(limits)
        self._sems: dict[str, asyncio.Semaphore] = {}

    def limit_for(self, provider: ProviderKind | str) -> int:
        key = provider.value if isinstance(provider, ProviderKind) else str(provider)
        return self._limits.get(key, self._limits.get("default", 30))

    def _sem(self, provider: ProviderKind | str) -> asyncio.Semaphore:
        key = provider.value if isinstance(provider, ProviderKind) else str(provider)
        sem = self._sems.get(key)
        if sem is None:
            sem = asyncio.Semaphore(self.limit_for(key))
            self._sems[key] = sem
        return sem

    @asynccontextmanager
    async def aacquire(self, provider: ProviderKind | str) -> AsyncIterator[None]:
        """Acquire a slot for *provider* for the duration of the block."""
        if not self.enabled:
            yield
            return
        sem = self._sem(provider)
        await sem.acquire()
        try:
            yield
        finally:
            sem.release()
