"""Tests for the default provider transports and the interface reference implementations."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agent_runtime.config import AgentSettings
from agent_runtime.errors import ProviderAuthError
from agent_runtime.interfaces import (
    EnvSettingsProvider,
    InMemoryConversationStore,
    SettingsProvider,
    StaticSettingsProvider,
)
from agent_runtime.models import Message
from agent_runtime.providers.transport import (
    AnthropicHttpTransport,
    GeminiHttpTransport,
    LiteLLMTransport,
)


def _recording_client(seen: list[httpx.Request], body: dict | None = None, status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json=body or {"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# httpx transports
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestHttpTransports:
    async def test_anthropic_request(self):
        seen: list[httpx.Request] = []
        async with _recording_client(seen, {"content": []}) as client:
            transport = AnthropicHttpTransport(client)
            settings = AgentSettings(provider="anthropic", api_key="sk-ant")
            data = await transport({"model": "claude-sonnet-4-5", "messages": []}, settings)
        assert data == {"content": []}
        request = seen[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert json.loads(request.content)["model"] == "claude-sonnet-4-5"

    async def test_gemini_request_with_custom_base(self):
        seen: list[httpx.Request] = []
        async with _recording_client(seen) as client:
            transport = GeminiHttpTransport(client)
            settings = AgentSettings(
                provider="gemini", model="gemini/gemini-2.5-pro", api_key="g", api_base="http://proxy.test/v1/"
            )
            await transport({"contents": []}, settings)
        assert str(seen[0].url) == "http://proxy.test/v1/models/gemini-2.5-pro:generateContent"
        assert seen[0].headers["x-goog-api-key"] == "g"

    async def test_http_error_raised(self):
        seen: list[httpx.Request] = []
        async with _recording_client(seen, {"error": "overloaded"}, status=529) as client:
            transport = AnthropicHttpTransport(client)
            with pytest.raises(httpx.HTTPStatusError):
                await transport({}, AgentSettings(provider="anthropic", api_key="k"))

    async def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        with pytest.raises(ProviderAuthError, match="No API key"):
            await GeminiHttpTransport()({}, AgentSettings(provider="gemini"))


# ---------------------------------------------------------------------------
# litellm transport
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestLiteLLMTransport:
    async def test_passes_key_and_disables_retries(self):
        response = SimpleNamespace(model_dump=lambda: {"choices": []})
        with patch("litellm.acompletion", new=AsyncMock(return_value=response)) as mock_call:
            data = await LiteLLMTransport(timeout=5)(
                {"model": "gpt-4o", "messages": []},
                AgentSettings(api_key="sk", api_base="http://local.test"),
            )
        assert data == {"choices": []}
        kwargs = mock_call.call_args.kwargs
        assert kwargs["api_key"] == "sk"
        assert kwargs["api_base"] == "http://local.test"
        assert kwargs["num_retries"] == 0
        assert kwargs["timeout"] == 5

    async def test_dict_response_passthrough(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with patch("litellm.acompletion", new=AsyncMock(return_value={"choices": [1]})) as mock_call:
            data = await LiteLLMTransport()({"model": "gpt-4o", "messages": []}, AgentSettings())
        assert data == {"choices": [1]}
        assert "api_key" not in mock_call.call_args.kwargs


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class TestSettingsProviders:
    def test_static(self):
        settings = AgentSettings(model="m")
        provider = StaticSettingsProvider(settings)
        assert isinstance(provider, SettingsProvider)
        assert provider.current() is settings

    def test_env_rereads(self, monkeypatch):
        provider = EnvSettingsProvider(AgentSettings(max_loop_iterations=3))
        assert provider.current().max_loop_iterations == 3
        monkeypatch.setenv("AGENT_RUNTIME_MAX_ITERATIONS", "9")
        assert provider.current().max_loop_iterations == 9


@pytest.mark.asyncio
class TestInMemoryConversationStore:
    async def test_create_append_load(self):
        store = InMemoryConversationStore()
        cid = await store.create("chat")
        await store.append(cid, Message.user("hi"))
        conversation = await store.load(cid)
        assert conversation.id == cid
        assert [m.content for m in conversation] == ["hi"]

    async def test_unknown_id(self):
        store = InMemoryConversationStore()
        with pytest.raises(KeyError):
            await store.load("nope")
        with pytest.raises(KeyError):
            await store.append("nope", Message.user("x"))
