"""Agentic tool-execution runtime.

Drives a conversation with an LLM provider, executes the tools the model
asks for behind a path/command guard, feeds the results back and repeats
until a final answer.

Usage:
    from agent_runtime import AgentSettings, open_runtime

    settings = AgentSettings.from_env().with_overrides(allowed_roots=("~/project",))
    async with open_runtime(settings) as runtime:
        result = await runtime.run("What does main.py do?")
        print(result.final_text)
"""

from agent_runtime.agent_loop import AgentEvent, AgentLoop, AgentRunResult, EventKind, LoopState
from agent_runtime.config import AgentSettings, McpServerConfig, ProviderKind
from agent_runtime.dispatcher import ToolDispatcher
from agent_runtime.errors import (
    AgentLoopError,
    AgentRuntimeError,
    ConversationProtocolError,
    FailureKind,
    IterationLimitExceeded,
    ProviderAuthError,
    ProviderError,
    ProviderProtocolError,
    ProviderQuotaExhaustedError,
    ProviderRateLimitError,
    ProviderTransientError,
    ProviderTransportError,
    RecursionLimitExceeded,
    RunCancelled,
    ToolDenied,
    ToolErrorKind,
    UnknownToolError,
)
from agent_runtime.mcp_bridge import ConnectionState, McpBridge, McpServerHandle
from agent_runtime.models import (
    Capability,
    Conversation,
    FinalAnswer,
    Message,
    Role,
    ToolCall,
    ToolCallRecord,
    ToolDescriptor,
    ToolRequests,
    ToolResult,
    Usage,
)
from agent_runtime.path_guard import Allowed, Denied, PathGuard, RequiresConfirmation, RiskLevel
from agent_runtime.providers import AnthropicAdapter, GeminiAdapter, OpenAIAdapter, ProviderAdapter, adapter_for
from agent_runtime.registry import LazyRef, ToolRegistry
from agent_runtime.runtime import Runtime, build_runtime, open_runtime
from agent_runtime.subagent import SubagentOutcome, SubagentSpawner
from agent_runtime.tools.context import ConfirmationRequest

__version__ = "0.1.0"

__all__ = [
    "AgentEvent",
    "AgentLoop",
    "AgentLoopError",
    "AgentRunResult",
    "AgentRuntimeError",
    "AgentSettings",
    "Allowed",
    "AnthropicAdapter",
    "Capability",
    "ConnectionState",
    "ConfirmationRequest",
    "Conversation",
    "ConversationProtocolError",
    "Denied",
    "EventKind",
    "FailureKind",
    "FinalAnswer",
    "GeminiAdapter",
    "IterationLimitExceeded",
    "LazyRef",
    "LoopState",
    "McpBridge",
    "McpServerConfig",
    "McpServerHandle",
    "Message",
    "OpenAIAdapter",
    "PathGuard",
    "ProviderAdapter",
    "ProviderAuthError",
    "ProviderError",
    "ProviderKind",
    "ProviderProtocolError",
    "ProviderQuotaExhaustedError",
    "ProviderRateLimitError",
    "ProviderTransientError",
    "ProviderTransportError",
    "RecursionLimitExceeded",
    "RequiresConfirmation",
    "RiskLevel",
    "Role",
    "RunCancelled",
    "Runtime",
    "SubagentOutcome",
    "SubagentSpawner",
    "ToolCall",
    "ToolCallRecord",
    "ToolDenied",
    "ToolDescriptor",
    "ToolDispatcher",
    "ToolErrorKind",
    "ToolRegistry",
    "ToolRequests",
    "ToolResult",
    "UnknownToolError",
    "Usage",
    "adapter_for",
    "build_runtime",
    "open_runtime",
]
