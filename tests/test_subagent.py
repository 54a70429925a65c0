"""Tests for agent_runtime.subagent: nested loops, restriction and depth limits."""

from __future__ import annotations

import asyncio
import copy
from pathlib import Path
from typing import Any

import pytest

from agent_runtime.errors import FailureKind, ProviderAuthError, RecursionLimitExceeded, ToolArgumentError, ToolErrorKind
from agent_runtime.models import Role
from agent_runtime.runtime import build_runtime
from agent_runtime.subagent import (
    INVOKE_SUBAGENTS,
    SUBAGENT_SYSTEM_PROMPT,
    SubagentOutcome,
    format_report,
    invoke_subagents,
)
from stubs import ScriptedTransport, make_settings, openai_text, openai_tools


class RoutingTransport:
    """Parent turns come from a script; sub-agent turns are answered per task."""

    def __init__(self, parent: list[Any], subagent=None) -> None:
        self.parent = list(parent)
        self.subagent = subagent or (lambda task: openai_text(f"done: {task}"))
        self.parent_payloads: list[dict[str, Any]] = []
        self.subagent_payloads: list[dict[str, Any]] = []

    async def __call__(self, payload: dict[str, Any], settings) -> dict[str, Any]:
        messages = payload["messages"]
        if messages[0].get("content") == SUBAGENT_SYSTEM_PROMPT:
            self.subagent_payloads.append(copy.deepcopy(payload))
            item = self.subagent(messages[1]["content"])
            if asyncio.iscoroutine(item):
                item = await item
        else:
            self.parent_payloads.append(copy.deepcopy(payload))
            item = self.parent.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _tool_names(payload: dict[str, Any]) -> list[str]:
    return [t["function"]["name"] for t in payload.get("tools", [])]


def _runtime(workspace: Path, transport, **overrides):
    return build_runtime(make_settings(workspace, **overrides), transport=transport, stagger_s=0)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def test_build_runtime_fills_dispatcher_ref(workspace) -> None:
    runtime = _runtime(workspace, ScriptedTransport([]))
    assert runtime.spawner.dispatcher_ref.is_set
    assert runtime.spawner.dispatcher_ref.get() is runtime.dispatcher
    assert runtime.dispatcher.context.spawner is runtime.spawner
    assert INVOKE_SUBAGENTS in runtime.registry


def test_build_runtime_without_subagents(workspace) -> None:
    runtime = build_runtime(make_settings(workspace), transport=ScriptedTransport([]), include_subagents=False)
    assert INVOKE_SUBAGENTS not in runtime.registry


# ---------------------------------------------------------------------------
# SubagentSpawner.run
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestSpawnerRun:
    async def test_recursion_limit_without_provider_call(self, workspace) -> None:
        transport = ScriptedTransport([])
        runtime = _runtime(workspace, transport)
        outcome = await runtime.spawner.run("anything", None, runtime.settings, depth=1)
        assert not outcome.ok
        assert isinstance(outcome.failure, RecursionLimitExceeded)
        assert outcome.summary.startswith("[ERROR] RecursionLimitExceeded:")
        assert transport.calls == 0

    async def test_zero_max_depth_refuses_top_level(self, workspace) -> None:
        transport = ScriptedTransport([])
        runtime = _runtime(workspace, transport, max_recursion_depth=0)
        outcome = await runtime.spawner.run("anything", None, runtime.settings, depth=0)
        assert isinstance(outcome.failure, RecursionLimitExceeded)
        assert transport.calls == 0

    async def test_restricted_tools_and_fresh_conversation(self, workspace) -> None:
        transport = RoutingTransport([])
        runtime = _runtime(workspace, transport)
        outcome = await runtime.spawner.run(
            "check the readme", ["read_file", INVOKE_SUBAGENTS, "missing_tool"], runtime.settings, depth=0
        )
        assert outcome.ok
        assert outcome.text == "done: check the readme"
        payload = transport.subagent_payloads[0]
        assert _tool_names(payload) == ["read_file"]
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]
        assert [m.role for m in outcome.result.conversation] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]

    async def test_default_tools_exclude_invoke_subagents(self, workspace) -> None:
        transport = RoutingTransport([])
        runtime = _runtime(workspace, transport)
        await runtime.spawner.run("task", None, runtime.settings, depth=0)
        names = _tool_names(transport.subagent_payloads[0])
        assert INVOKE_SUBAGENTS not in names
        assert set(names) == set(runtime.registry.names()) - {INVOKE_SUBAGENTS}

    async def test_subagent_context_is_one_level_deeper(self, workspace) -> None:
        seen_depths: list[int] = []
        runtime = _runtime(workspace, RoutingTransport([]))
        original = runtime.dispatcher.with_registry

        def spy(registry, context=None):
            seen_depths.append(context.depth)
            return original(registry, context)

        runtime.dispatcher.with_registry = spy  # type: ignore[method-assign]
        await runtime.spawner.run("task", None, runtime.settings, depth=0)
        assert seen_depths == [1]

    async def test_subagent_failure_is_reported(self, workspace) -> None:
        transport = RoutingTransport([], subagent=lambda task: ProviderAuthError("bad key"))
        runtime = _runtime(workspace, transport)
        outcome = await runtime.spawner.run("task", None, runtime.settings, depth=0)
        assert outcome.failure.kind is FailureKind.PROVIDER_FAILURE
        assert outcome.summary.startswith("[ERROR] ProviderFailure:")


# ---------------------------------------------------------------------------
# invoke_subagents through the parent loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestInvokeSubagents:
    async def test_parallel_subagents_report(self, workspace) -> None:
        request = {
            "subagents": [
                {"task_name": "Counter", "task": "count files"},
                {"task": "read readme", "tools": ["read_file"]},
            ]
        }
        transport = RoutingTransport([openai_tools(("c1", INVOKE_SUBAGENTS, request)), openai_text("All done.")])
        runtime = _runtime(workspace, transport)
        result = await runtime.run("delegate")

        assert result.succeeded
        report = result.conversation[2].content
        assert report.startswith("=== SUBAGENT RESULTS (2 agents ran in parallel) ===")
        assert report.index("--- [Counter] ---") < report.index("--- [Subagent 2] ---")
        assert "done: count files" in report
        assert "done: read readme" in report
        assert report.rstrip().endswith("=== END OF SUBAGENT RESULTS ===")
        assert len(transport.subagent_payloads) == 2
        assert len(transport.parent_payloads) == 2

    async def test_all_refused_is_tool_error(self, workspace) -> None:
        request = {"subagents": [{"task": "a"}, {"task": "b"}]}
        transport = RoutingTransport([openai_tools(("c1", INVOKE_SUBAGENTS, request)), openai_text("Fine.")])
        runtime = _runtime(workspace, transport, max_recursion_depth=0)
        result = await runtime.run("delegate")

        assert result.succeeded
        assert result.tool_calls[0].error_kind is ToolErrorKind.EXECUTION_FAILED
        tool_message = result.conversation[2]
        assert tool_message.is_error
        assert tool_message.tool_call_id == "c1"
        assert "[ERROR] RecursionLimitExceeded" in tool_message.content
        assert transport.subagent_payloads == []

    async def test_failed_subagent_section(self, workspace) -> None:
        def answer(task: str):
            if task == "bad":
                return ProviderAuthError("bad key")
            return openai_text("fine")

        request = {"subagents": [{"task": "good"}, {"task": "bad"}]}
        transport = RoutingTransport([openai_tools(("c1", INVOKE_SUBAGENTS, request)), openai_text("ok")], answer)
        runtime = _runtime(workspace, transport)
        result = await runtime.run("delegate")

        tool_message = result.conversation[2]
        assert not tool_message.is_error
        assert "--- [Subagent 1] ---\nfine" in tool_message.content
        assert "--- [Subagent 2] ---\n[ERROR] ProviderFailure:" in tool_message.content

    @pytest.mark.parametrize("subagents", [[], [{"task_name": "x"}]])
    async def test_schema_rejects_bad_requests(self, workspace, subagents) -> None:
        request = {"subagents": subagents}
        transport = RoutingTransport([openai_tools(("c1", INVOKE_SUBAGENTS, request)), openai_text("ok")])
        runtime = _runtime(workspace, transport)
        result = await runtime.run("delegate")
        assert result.tool_calls[0].error_kind is ToolErrorKind.INVALID_ARGUMENTS

    async def test_caps_at_four(self, workspace) -> None:
        transport = RoutingTransport([])
        runtime = _runtime(workspace, transport)
        report = await invoke_subagents(runtime.dispatcher.context, [{"task": f"t{i}"} for i in range(6)])
        assert "(4 agents ran in parallel)" in report
        assert len(transport.subagent_payloads) == 4

    async def test_blank_task_rejected(self, workspace) -> None:
        runtime = _runtime(workspace, RoutingTransport([]))
        with pytest.raises(ToolArgumentError, match="index 1"):
            await invoke_subagents(runtime.dispatcher.context, [{"task": "ok"}, {"task": "   "}])

    async def test_requires_spawner(self, ctx) -> None:
        with pytest.raises(RuntimeError, match="not available"):
            await invoke_subagents(ctx, [{"task": "x"}])

    async def test_parent_cancellation_reaches_subagents(self, workspace) -> None:
        started = asyncio.Event()

        async def hang(task: str):
            started.set()
            await asyncio.sleep(3600)

        request = {"subagents": [{"task": "slow"}]}
        transport = RoutingTransport([openai_tools(("c1", INVOKE_SUBAGENTS, request))], hang)
        runtime = _runtime(workspace, transport)
        conversation = runtime.new_conversation("delegate")
        task = asyncio.create_task(runtime.run(conversation))
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()
        result = await task

        assert result.failure_kind is FailureKind.CANCELLED
        assert [m.role for m in conversation] == [Role.USER]


def test_format_report_empty_text() -> None:
    report = format_report([("only", SubagentOutcome(task="t", text="   "))])
    assert "--- [only] ---\nNo output." in report
