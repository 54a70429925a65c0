"""Sub-agents: nested AgentLoops with a restricted tool set.

The spawner needs the dispatcher to build nested registries, and the
dispatcher's registry contains ``invoke_subagents`` whose handler needs the
spawner. The cycle is broken with a ``LazyRef`` filled in by
``runtime.build_runtime`` once both sides exist.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from agent_runtime.agent_loop import AgentLoop, AgentRunResult, EventCallback
from agent_runtime.config import AgentSettings
from agent_runtime.dispatcher import ToolDispatcher
from agent_runtime.errors import AgentLoopError, RecursionLimitExceeded, ToolArgumentError, ToolErrorKind
from agent_runtime.models import Capability, Conversation, Message, ToolDescriptor, ToolResult
from agent_runtime.providers.base import ProviderAdapter
from agent_runtime.rate_limit import ProviderRateLimiter
from agent_runtime.registry import LazyRef
from agent_runtime.tools.base import make_tool
from agent_runtime.tools.context import ToolContext

logger = logging.getLogger(__name__)

INVOKE_SUBAGENTS = "invoke_subagents"
MAX_SUBAGENTS = 4
DEFAULT_STAGGER_S = 2.0
"""Delay between consecutive sub-agent starts, to spread provider load."""

SUBAGENT_SYSTEM_PROMPT = (
    "You are a subagent: a focused assistant with a single task to complete.\n"
    "You have access to a restricted set of tools.\n"
    "Complete your task thoroughly and return a clear, structured summary of what you found or did.\n"
    "You cannot spawn further subagents."
)


@dataclass
class SubagentOutcome:
    """FinalAnswer text or the failure of one sub-agent run."""

    task: str
    text: str | None = None
    failure: AgentLoopError | None = None
    result: AgentRunResult | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def summary(self) -> str:
        if self.failure is not None:
            return f"[ERROR] {self.failure.kind.value}: {self.failure}"
        return (self.text or "").strip() or "No output."


class SubagentSpawner:
    """Runs delegated tasks on the parent's provider with a restricted registry."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        dispatcher_ref: LazyRef[ToolDispatcher],
        *,
        limiter: ProviderRateLimiter | None = None,
        stagger_s: float = DEFAULT_STAGGER_S,
        on_event: EventCallback | None = None,
    ) -> None:
        self.adapter = adapter
        self.dispatcher_ref = dispatcher_ref
        self.limiter = limiter or ProviderRateLimiter()
        self.stagger_s = stagger_s
        self.on_event = on_event

    async def run(
        self,
        task: str,
        restricted_tool_names: Sequence[str] | None,
        parent_settings: AgentSettings,
        depth: int,
        *,
        parent_context: ToolContext | None = None,
    ) -> SubagentOutcome:
        """Run *task* in a fresh conversation one level below *depth*.

        ``restricted_tool_names=None`` means every parent tool except
        ``invoke_subagents``.
        """
        if depth >= parent_settings.max_recursion_depth:
            logger.warning(
                "Sub-agent refused at depth %d (max_recursion_depth=%d)", depth, parent_settings.max_recursion_depth
            )
            return SubagentOutcome(
                task=task,
                failure=RecursionLimitExceeded(
                    f"Sub-agent depth {depth + 1} exceeds max_recursion_depth={parent_settings.max_recursion_depth}"
                ),
            )

        parent = self.dispatcher_ref.get()
        names = parent.registry.names() if restricted_tool_names is None else list(restricted_tool_names)
        registry = parent.registry.subset(names, exclude=(INVOKE_SUBAGENTS,))
        context = (parent_context or parent.context).child(parent_settings, depth=depth + 1)
        loop = AgentLoop(
            self.adapter,
            parent.with_registry(registry, context),
            limiter=self.limiter,
            on_event=self.on_event,
        )
        conversation = Conversation([Message.system(SUBAGENT_SYSTEM_PROMPT), Message.user(task)])
        logger.info("Sub-agent starting at depth %d with %d tool(s)", depth + 1, len(registry))

        result = await loop.run(conversation, parent_settings)
        if result.failure is not None:
            return SubagentOutcome(task=task, failure=result.failure, result=result)
        return SubagentOutcome(task=task, text=result.final_text, result=result)

    async def run_many(
        self,
        tasks: Sequence[tuple[str, str, Sequence[str] | None]],
        context: ToolContext,
    ) -> list[tuple[str, SubagentOutcome]]:
        """Run ``(task_name, task, tools)`` entries concurrently with staggered starts.

        Outcomes come back in input order.
        """

        async def _one(index: int, task_name: str, task: str, tools: Sequence[str] | None):
            if index and self.stagger_s > 0:
                await asyncio.sleep(index * self.stagger_s)
            outcome = await self.run(task, tools, context.settings, context.depth, parent_context=context)
            return task_name, outcome

        # Each sub-run gets its own task so its cancellation handling stays local
        return list(
            await asyncio.gather(*(_one(i, name, task, tools) for i, (name, task, tools) in enumerate(tasks)))
        )


def format_report(outcomes: Sequence[tuple[str, SubagentOutcome]]) -> str:
    lines = [f"=== SUBAGENT RESULTS ({len(outcomes)} agents ran in parallel) ===", ""]
    for task_name, outcome in outcomes:
        lines.append(f"--- [{task_name}] ---")
        lines.append(outcome.summary)
        lines.append("")
    lines.append("=== END OF SUBAGENT RESULTS ===")
    return "\n".join(lines)


async def invoke_subagents(ctx: ToolContext, subagents: list[dict[str, Any]]) -> str | ToolResult:
    """Spawn independent subagents that run in parallel with staggered starts.

    Each subagent receives only its own task description (no conversation
    history) and the listed tools, or all tools except this one. At most 4
    subagents per call. Returns a combined report; a failed subagent shows up
    as an [ERROR] section.
    """
    if ctx.spawner is None:
        raise RuntimeError("Sub-agents are not available in this runtime")
    if not subagents:
        raise ToolArgumentError("Subagents list is empty.")
    if len(subagents) > MAX_SUBAGENTS:
        logger.warning("invoke_subagents got %d tasks; running the first %d", len(subagents), MAX_SUBAGENTS)
    entries: list[tuple[str, str, Sequence[str] | None]] = []
    for index, raw in enumerate(subagents[:MAX_SUBAGENTS]):
        task = str(raw.get("task") or "").strip()
        if not task:
            raise ToolArgumentError(f"Subagent at index {index} is missing the 'task' field.")
        name = str(raw.get("task_name") or f"Subagent {index + 1}")
        tools = raw.get("tools")
        entries.append((name, task, list(tools) if tools is not None else None))

    outcomes = await ctx.spawner.run_many(entries, ctx)
    failed = sum(1 for _name, o in outcomes if not o.ok)
    if failed:
        logger.warning("invoke_subagents: %d/%d subagent(s) failed", failed, len(outcomes))
    report = format_report(outcomes)
    if all(isinstance(o.failure, RecursionLimitExceeded) for _name, o in outcomes):
        return ToolResult.failure("", ToolErrorKind.EXECUTION_FAILED, report)
    return report


def subagent_tools() -> list[ToolDescriptor]:
    return [
        make_tool(
            invoke_subagents,
            Capability.DELEGATION,
            {
                "subagents": {
                    "type": "array",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "properties": {
                            "task_name": {"type": "string", "description": "Short label for the report"},
                            "task": {"type": "string", "description": "Complete, self-contained instructions"},
                            "tools": {
                                "type": "array",
                                "items": {"type": "string"},
                                "description": "Tool names the subagent may use (default: all but invoke_subagents)",
                            },
                        },
                        "required": ["task"],
                    },
                }
            },
            ["subagents"],
        )
    ]
