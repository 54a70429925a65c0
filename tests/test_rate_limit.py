"""Tests for agent_runtime.rate_limit: per-provider concurrency limiting."""

from __future__ import annotations

import asyncio

import pytest

from agent_runtime.config import ProviderKind
from agent_runtime.rate_limit import RATE_LIMITS_ENV, ProviderRateLimiter


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class TestLimits:
    def test_defaults(self):
        limiter = ProviderRateLimiter()
        assert limiter.limit_for(ProviderKind.OPENAI) == 50
        assert limiter.limit_for("gemini") == 30
        assert limiter.limit_for(ProviderKind.ANTHROPIC) == 20
        assert limiter.limit_for("unknown") == 30

    def test_explicit_overrides(self):
        limiter = ProviderRateLimiter({"anthropic": 2})
        assert limiter.limit_for(ProviderKind.ANTHROPIC) == 2

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv(RATE_LIMITS_ENV, '{"openai": 3, "gemini": "x", "default": 0}')
        limiter = ProviderRateLimiter()
        assert limiter.limit_for("openai") == 3
        assert limiter.limit_for("gemini") == 30
        assert limiter.limit_for("other") == 1

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_invalid_env_ignored(self, monkeypatch, raw):
        monkeypatch.setenv(RATE_LIMITS_ENV, raw)
        assert ProviderRateLimiter().limit_for("openai") == 50


# ---------------------------------------------------------------------------
# aacquire
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestAcquire:
    async def _peak(self, limiter: ProviderRateLimiter, provider, workers: int) -> int:
        running = 0
        peak = 0

        async def work() -> None:
            nonlocal running, peak
            async with limiter.aacquire(provider):
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

        await asyncio.gather(*(work() for _ in range(workers)))
        return peak

    async def test_limits_concurrency(self):
        limiter = ProviderRateLimiter({"gemini": 2})
        assert await self._peak(limiter, ProviderKind.GEMINI, 6) == 2

    async def test_disabled(self):
        limiter = ProviderRateLimiter({"gemini": 1}, enabled=False)
        assert await self._peak(limiter, ProviderKind.GEMINI, 4) == 4

    async def test_providers_independent(self):
        limiter = ProviderRateLimiter({"openai": 1, "anthropic": 1})
        async with limiter.aacquire(ProviderKind.OPENAI):
            await asyncio.wait_for(self._peak(limiter, ProviderKind.ANTHROPIC, 1), timeout=1)

    async def test_slot_released_on_error(self):
        limiter = ProviderRateLimiter({"openai": 1})
        with pytest.raises(RuntimeError):
            async with limiter.aacquire("openai"):
                raise RuntimeError("boom")
        await asyncio.wait_for(self._peak(limiter, "openai", 1), timeout=1)
