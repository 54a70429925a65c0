"""Default transports: litellm for the OpenAI format, httpx for the rest.

Transports only move JSON. Raised exceptions are classified by the adapter
(``wrap_error``) into the ProviderError hierarchy.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agent_runtime.config import AgentSettings
from agent_runtime.errors import ProviderAuthError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 120.0
ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def _response_to_dict(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response
    dump = getattr(response, "model_dump", None)
    if callable(dump):
        return dump()
    return dict(response)


class LiteLLMTransport:
    """Chat-completions payload through ``litellm.acompletion``.

    litellm's own retries are disabled; the agent loop owns retry policy.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self.timeout = timeout

    async def __call__(self, payload: dict[str, Any], settings: AgentSettings) -> dict[str, Any]:
        import litellm

        kwargs: dict[str, Any] = dict(payload)
        api_key = settings.resolved_api_key()
        if api_key:
            kwargs["api_key"] = api_key
        if settings.api_base:
            kwargs["api_base"] = settings.api_base
        kwargs.setdefault("timeout", self.timeout)
        kwargs["num_retries"] = 0
        response = await litellm.acompletion(**kwargs)
        return _response_to_dict(response)


class _HttpTransport:
    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        self._client = client
        self.timeout = timeout

    async def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        logger.debug("POST %s", url)
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _require_key(settings: AgentSettings) -> str:
        api_key = settings.resolved_api_key()
        if not api_key:
            raise ProviderAuthError(f"No API key configured for provider {settings.provider.value}")
        return api_key


class AnthropicHttpTransport(_HttpTransport):
    async def __call__(self, payload: dict[str, Any], settings: AgentSettings) -> dict[str, Any]:
        base = (settings.api_base or ANTHROPIC_BASE_URL).rstrip("/")
        headers = {
            "x-api-key": self._require_key(settings),
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        return await self._post(f"{base}/v1/messages", payload, headers)


class GeminiHttpTransport(_HttpTransport):
    async def __call__(self, payload: dict[str, Any], settings: AgentSettings) -> dict[str, Any]:
        base = (settings.api_base or GEMINI_BASE_URL).rstrip("/")
        model = settings.resolved_model.removeprefix("gemini/")
        headers = {"x-goog-api-key": self._require_key(settings), "content-type": "application/json"}
        return await self._post(f"{base}/models/{model}:generateContent", payload, headers)
