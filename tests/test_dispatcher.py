"""Tests for agent_runtime.dispatcher: every outcome becomes a ToolResult."""

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from agent_runtime.dispatcher import ToolDispatcher, _truncate
from agent_runtime.errors import ToolArgumentError, ToolDenied, ToolErrorKind
from agent_runtime.models import Capability, ToolCall, ToolCallRecord, ToolDescriptor, ToolResult
from agent_runtime.registry import ToolRegistry
from agent_runtime.tools import builtin_tools
from agent_runtime.tools.base import make_tool


async def echo(ctx, text: str, times: int = 1) -> str:
    """Repeat text."""
    return text * times


async def explode(ctx) -> str:
    """Always fails."""
    raise OSError("disk on fire")


async def deny(ctx) -> str:
    """Always denied."""
    raise ToolDenied("Path is outside the allowed root")


async def bad_arg(ctx) -> str:
    """Handler-level argument problem."""
    raise ToolArgumentError("start_line after end_line")


async def as_dict(ctx) -> dict:
    """Structured payload."""
    return {"size": 3, "kind": "file"}


async def as_error_result(ctx) -> ToolResult:
    """Handler returning an error value."""
    return ToolResult.failure("ignored", ToolErrorKind.EXECUTION_FAILED, "remote said no")


def _registry(*extra: ToolDescriptor) -> ToolRegistry:
    return ToolRegistry(
        [
            make_tool(echo, Capability.FILESYSTEM_READ, {"text": {"type": "string"}, "times": {"type": "integer"}}, ["text"]),
            make_tool(explode, Capability.FILESYSTEM_READ, {}),
            make_tool(deny, Capability.FILESYSTEM_WRITE, {}),
            make_tool(bad_arg, Capability.FILESYSTEM_READ, {}),
            make_tool(as_dict, Capability.FILESYSTEM_READ, {}),
            make_tool(as_error_result, Capability.NETWORK, {}),
            *extra,
        ]
    ).freeze()


@pytest.fixture
def dispatcher(ctx) -> ToolDispatcher:
    return ToolDispatcher(_registry(), ctx)


# ---------------------------------------------------------------------------
# execute
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExecute:
    async def test_success(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "echo", {"text": "ab", "times": 2}))
        assert result == ToolResult.success("c1", "abab")
        assert not result.is_error

    async def test_unknown_tool_lists_available(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "nope", {}))
        assert result.error_kind is ToolErrorKind.UNKNOWN_TOOL
        assert "echo" in result.message
        assert result.content.startswith("Error [UnknownTool]:")

    async def test_schema_violation(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "echo", {"text": 5}))
        assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS
        assert "text" in result.message

    async def test_missing_required(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "echo", {}))
        assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS
        assert "'text' is a required property" in result.message

    async def test_unexpected_argument(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "echo", {"text": "a", "color": "red"}))
        assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS

    async def test_argument_error_from_adapter(self, dispatcher: ToolDispatcher) -> None:
        call = ToolCall("c1", "echo", {}, argument_error="Invalid JSON arguments: Expecting value")
        result = await dispatcher.execute(call)
        assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS
        assert "Invalid JSON" in result.message

    async def test_handler_exception_becomes_execution_failed(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "explode", {}))
        assert result.error_kind is ToolErrorKind.EXECUTION_FAILED
        assert result.message == "OSError: disk on fire"

    async def test_tool_denied_becomes_validation_denied(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "deny", {}))
        assert result.error_kind is ToolErrorKind.VALIDATION_DENIED
        assert "outside" in result.message

    async def test_tool_argument_error(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "bad_arg", {}))
        assert result.error_kind is ToolErrorKind.INVALID_ARGUMENTS

    async def test_structured_payload_serialized(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c1", "as_dict", {}))
        assert result.payload == '{"size": 3, "kind": "file"}'

    async def test_handler_tool_result_gets_call_id(self, dispatcher: ToolDispatcher) -> None:
        result = await dispatcher.execute(ToolCall("c9", "as_error_result", {}))
        assert result.tool_call_id == "c9"
        assert result.error_kind is ToolErrorKind.EXECUTION_FAILED
        assert result.message == "remote said no"

    async def test_capability_not_granted(self, ctx) -> None:
        settings = ctx.settings.with_overrides(capabilities=frozenset({Capability.FILESYSTEM_READ}))
        restricted = ToolDispatcher(_registry(), ctx.child(settings, depth=0))
        result = await restricted.execute(ToolCall("c1", "deny", {}))
        assert result.error_kind is ToolErrorKind.VALIDATION_DENIED
        assert "filesystem-write" in result.message

    async def test_result_truncated(self, ctx) -> None:
        settings = ctx.settings.with_overrides(tool_result_max_length=10)
        small = ToolDispatcher(_registry(), ctx.child(settings, depth=0))
        result = await small.execute(ToolCall("c1", "echo", {"text": "x" * 50}))
        assert result.payload == "x" * 10 + "\n... [truncated at 10 chars]"

    async def test_invalid_schema_is_execution_failed(self, ctx) -> None:
        broken = ToolDescriptor(
            name="broken",
            description="bad schema",
            parameters={"type": "object", "properties": {"a": {"type": "nonsense"}}},
            capability=Capability.FILESYSTEM_READ,
            handler=echo,
        )
        result = await ToolDispatcher(ToolRegistry([broken]), ctx).execute(ToolCall("c1", "broken", {"a": 1}))
        assert result.error_kind is ToolErrorKind.EXECUTION_FAILED
        assert "Invalid tool schema" in result.message

    async def test_record(self, dispatcher: ToolDispatcher) -> None:
        result, record = await dispatcher.execute_with_record(ToolCall("c1", "explode", {}))
        assert isinstance(record, ToolCallRecord)
        assert record.tool == "explode"
        assert record.error_kind is ToolErrorKind.EXECUTION_FAILED
        assert record.result is None
        assert record.latency_s >= 0

    async def test_cancellation_propagates(self, ctx) -> None:
        started = asyncio.Event()

        async def hang(ctx) -> str:
            """Never finishes."""
            started.set()
            await asyncio.sleep(3600)
            return "late"

        dispatcher = ToolDispatcher(ToolRegistry([make_tool(hang, Capability.FILESYSTEM_READ, {})]), ctx)
        task = asyncio.create_task(dispatcher.execute(ToolCall("c1", "hang", {})))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestConfirmation:
    @pytest.fixture
    def builtins(self, ctx) -> ToolDispatcher:
        (ctx.workspace / "notes.txt").write_text("keep me", encoding="utf-8")
        return ToolDispatcher(ToolRegistry(builtin_tools()).freeze(), ctx)

    async def test_refusal_is_validation_denied(self, builtins: ToolDispatcher) -> None:
        builtins.context.confirm = AsyncMock(return_value=False)
        result = await builtins.execute(ToolCall("c1", "delete_file", {"path": "notes.txt", "permanent": True}))
        assert result.error_kind is ToolErrorKind.VALIDATION_DENIED
        assert result.message == "User declined: Permanent deletion cannot be undone"
        assert (builtins.context.workspace / "notes.txt").exists()

    async def test_approval_runs_the_tool(self, builtins: ToolDispatcher) -> None:
        builtins.context.confirm = AsyncMock(return_value=True)
        result = await builtins.execute(ToolCall("c1", "delete_file", {"path": "notes.txt", "permanent": True}))
        assert not result.is_error
        assert result.payload == "Permanently deleted notes.txt"
        builtins.context.confirm.assert_awaited_once()

    async def test_no_callback_is_validation_denied(self, builtins: ToolDispatcher) -> None:
        result = await builtins.execute(ToolCall("c1", "run_shell", {"command": "git push origin main"}))
        assert result.error_kind is ToolErrorKind.VALIDATION_DENIED
        assert "Git push" in result.message

    async def test_failing_callback_is_execution_failed(self, builtins: ToolDispatcher) -> None:
        builtins.context.confirm = AsyncMock(side_effect=RuntimeError("prompt closed"))
        result = await builtins.execute(ToolCall("c1", "delete_file", {"path": "notes.txt", "permanent": True}))
        assert result.error_kind is ToolErrorKind.EXECUTION_FAILED
        assert result.message == "RuntimeError: prompt closed"


# ---------------------------------------------------------------------------
# execute_all ordering
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestExecuteAll:
    @pytest.mark.parametrize("parallel", [True, False])
    async def test_results_follow_call_order_under_random_latency(self, ctx, parallel: bool) -> None:
        completion: list[str] = []

        async def sleepy(ctx, label: str, delay: float) -> str:
            """Sleep then echo."""
            await asyncio.sleep(delay)
            completion.append(label)
            return label

        tool = make_tool(sleepy, Capability.FILESYSTEM_READ, {"label": {"type": "string"}, "delay": {"type": "number"}})
        settings = ctx.settings.with_overrides(parallel_tools=parallel)
        dispatcher = ToolDispatcher(ToolRegistry([tool]), ctx.child(settings, depth=0))
        rng = random.Random(7)
        labels = [f"t{i}" for i in range(12)]
        calls = [ToolCall(f"id-{label}", "sleepy", {"label": label, "delay": rng.uniform(0, 0.03)}) for label in labels]

        records: list[ToolCallRecord] = []
        results = await dispatcher.execute_all(calls, records)

        assert [r.tool_call_id for r in results] == [c.id for c in calls]
        assert [r.payload for r in results] == labels
        assert [r.tool_call_id for r in records] == [c.id for c in calls]
        if not parallel:
            assert completion == labels

    async def test_parallel_runs_concurrently(self, ctx) -> None:
        running = 0
        peak = 0

        async def track(ctx) -> str:
            """Track concurrency."""
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "done"

        dispatcher = ToolDispatcher(ToolRegistry([make_tool(track, Capability.FILESYSTEM_READ, {})]), ctx)
        await dispatcher.execute_all([ToolCall(f"c{i}", "track", {}) for i in range(4)])
        assert peak == 4

    async def test_mixed_failures_keep_order(self, dispatcher: ToolDispatcher) -> None:
        calls = [
            ToolCall("a", "explode", {}),
            ToolCall("b", "echo", {"text": "ok"}),
            ToolCall("c", "missing", {}),
        ]
        results = await dispatcher.execute_all(calls)
        assert [r.error_kind for r in results] == [
            ToolErrorKind.EXECUTION_FAILED,
            None,
            ToolErrorKind.UNKNOWN_TOOL,
        ]


def test_truncate_short_text_untouched() -> None:
    assert _truncate("abc", 10) == "abc"
