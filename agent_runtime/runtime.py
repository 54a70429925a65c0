"""Wiring: settings in, a ready-to-run loop out.

``build_runtime`` is the only place the dispatcher/spawner cycle is closed:

1. the spawner is created holding an empty ``LazyRef``
2. the tool context gets the spawner
3. the dispatcher is built over the frozen registry and that context
4. the ``LazyRef`` is filled with the dispatcher

Usage:
    async with open_runtime(AgentSettings.from_env()) as runtime:
        result = await runtime.run("summarise README.md")
"""

from __future__ import annotations

import dataclasses
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

from agent_runtime.agent_loop import AgentLoop, AgentRunResult, EventCallback
from agent_runtime.config import AgentSettings
from agent_runtime.dispatcher import ToolDispatcher
from agent_runtime.interfaces import FileIndex, MemoryStore, ReminderScheduler
from agent_runtime.mcp_bridge import McpBridge, SessionFactory
from agent_runtime.models import Conversation, Message, ToolDescriptor
from agent_runtime.providers import adapter_for
from agent_runtime.providers.base import ProviderAdapter, Transport
from agent_runtime.rate_limit import ProviderRateLimiter
from agent_runtime.registry import LazyRef, ToolRegistry
from agent_runtime.subagent import DEFAULT_STAGGER_S, SubagentSpawner, subagent_tools
from agent_runtime.tools import ToolContext, builtin_tools
from agent_runtime.tools.context import ConfirmCallback, TodoList

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: AgentSettings
    adapter: ProviderAdapter
    registry: ToolRegistry
    dispatcher: ToolDispatcher
    spawner: SubagentSpawner
    limiter: ProviderRateLimiter
    bridge: McpBridge | None = None

    def loop(self, on_event: EventCallback | None = None) -> AgentLoop:
        """A fresh AgentLoop over the shared frozen registry.

        Each loop gets its own todo list; the rest of the tool context is shared.
        """
        context = dataclasses.replace(self.dispatcher.context, todos=TodoList())
        dispatcher = self.dispatcher.with_registry(self.registry, context)
        return AgentLoop(self.adapter, dispatcher, limiter=self.limiter, on_event=on_event)

    def new_conversation(self, prompt: str) -> Conversation:
        messages = [Message.system(self.settings.system_prompt)] if self.settings.system_prompt else []
        messages.append(Message.user(prompt))
        return Conversation(messages)

    async def run(self, prompt: str | Conversation, on_event: EventCallback | None = None) -> AgentRunResult:
        conversation = self.new_conversation(prompt) if isinstance(prompt, str) else prompt
        return await self.loop(on_event).run(conversation, self.settings)


def build_runtime(
    settings: AgentSettings,
    *,
    transport: Transport | None = None,
    adapter: ProviderAdapter | None = None,
    extra_tools: Iterable[ToolDescriptor] = (),
    mcp_descriptors: Iterable[ToolDescriptor] = (),
    reminders: ReminderScheduler | None = None,
    file_index: FileIndex | None = None,
    memory: MemoryStore | None = None,
    confirm: ConfirmCallback | None = None,
    limiter: ProviderRateLimiter | None = None,
    include_subagents: bool = True,
    stagger_s: float = DEFAULT_STAGGER_S,
) -> Runtime:
    """Assemble adapter, registry, dispatcher and spawner for *settings*.

    Local tools are registered first, so MCP tools with the same name are
    shadowed. *confirm* is asked before destructive tool operations; without
    it those operations are refused.
    """
    limiter = limiter or ProviderRateLimiter()
    adapter = adapter or adapter_for(settings.provider, transport)

    dispatcher_ref: LazyRef[ToolDispatcher] = LazyRef("dispatcher")
    spawner = SubagentSpawner(adapter, dispatcher_ref, limiter=limiter, stagger_s=stagger_s)
    context = ToolContext.from_settings(
        settings,
        reminders=reminders,
        file_index=file_index,
        memory=memory,
        spawner=spawner,
        confirm=confirm,
    )

    registry = ToolRegistry(builtin_tools())
    if include_subagents:
        for descriptor in subagent_tools():
            registry.register(descriptor)
    for descriptor in extra_tools:
        registry.register(descriptor)
    registry.merge_remote(mcp_descriptors)
    registry.freeze()

    dispatcher = ToolDispatcher(registry, context)
    dispatcher_ref.set(dispatcher)

    logger.info(
        "Runtime ready: provider=%s model=%s tools=%d (shadowed %d)",
        settings.provider.value,
        settings.resolved_model,
        len(registry),
        len(registry.shadowed),
    )
    return Runtime(
        settings=settings,
        adapter=adapter,
        registry=registry,
        dispatcher=dispatcher,
        spawner=spawner,
        limiter=limiter,
    )


@asynccontextmanager
async def open_runtime(
    settings: AgentSettings,
    *,
    session_factory: SessionFactory | None = None,
    **kwargs,
) -> AsyncIterator[Runtime]:
    """``build_runtime`` with the configured MCP servers connected for the block."""
    async with McpBridge(settings.mcp_servers, session_factory=session_factory) as bridge:
        runtime = build_runtime(settings, mcp_descriptors=bridge.descriptors(), **kwargs)
        runtime.bridge = bridge
        yield runtime
