"""Provider adapters, selected by ``AgentSettings.provider``."""

from __future__ import annotations

from agent_runtime.config import ProviderKind
from agent_runtime.providers.anthropic import AnthropicAdapter
from agent_runtime.providers.base import ProviderAdapter, Transport
from agent_runtime.providers.gemini import GeminiAdapter
from agent_runtime.providers.openai import OpenAIAdapter

ADAPTERS: dict[ProviderKind, type[ProviderAdapter]] = {
    ProviderKind.ANTHROPIC: AnthropicAdapter,
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.GEMINI: GeminiAdapter,
}


def adapter_for(kind: ProviderKind | str, transport: Transport | None = None) -> ProviderAdapter:
    """Adapter instance for *kind*, by table lookup."""
    return ADAPTERS[ProviderKind(kind)](transport)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "Transport",
    "adapter_for",
]
