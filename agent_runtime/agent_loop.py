"""Agent loop: model call, tool dispatch, repeat until a final answer.

States: AWAITING_MODEL → DISPATCHING → AWAITING_MODEL → … → COMPLETED | FAILED.

Only run-level failures (provider failure after retries, iteration limit,
cancellation) end a run as FAILED. Tool failures are ordinary tool messages
the model reads on its next turn.

Usage:
    loop = AgentLoop(adapter, dispatcher, limiter=limiter)
    result = await loop.run(Conversation([Message.user("list files")]), settings)
    if result.succeeded:
        print(result.final_text)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_runtime.config import AgentSettings
from agent_runtime.dispatcher import ToolDispatcher
from agent_runtime.errors import (
    AgentLoopError,
    FailureKind,
    ProviderError,
    failure_error,
)
from agent_runtime.interfaces import ConversationStore
from agent_runtime.models import (
    Conversation,
    FinalAnswer,
    Message,
    ToolCallRecord,
    ToolRequests,
    Usage,
)
from agent_runtime.providers.base import ProviderAdapter
from agent_runtime.rate_limit import ProviderRateLimiter
from agent_runtime.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class LoopState(str, enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    FAILED = "failed"


class EventKind(str, enum.Enum):
    TEXT = "text"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_RESULT = "tool_call_result"
    ITERATION = "iteration"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class AgentEvent:
    """Progress notification for UIs and the CLI."""

    kind: EventKind
    iteration: int = 0
    data: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[AgentEvent], None]


@dataclass
class AgentRunResult:
    """Outcome of one AgentLoop run."""

    status: LoopState
    conversation: Conversation
    final_text: str | None = None
    failure: AgentLoopError | None = None
    iterations: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    @property
    def succeeded(self) -> bool:
        return self.status is LoopState.COMPLETED

    @property
    def failure_kind(self) -> FailureKind | None:
        return self.failure.kind if self.failure is not None else None

    def raise_for_failure(self) -> "AgentRunResult":
        if self.failure is not None:
            raise self.failure
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "final_text": self.final_text,
            "failure": (
                {"kind": self.failure.kind.value, "message": str(self.failure)} if self.failure is not None else None
            ),
            "iterations": self.iterations,
            "tool_calls": [
                {
                    "tool": r.tool,
                    "tool_call_id": r.tool_call_id,
                    "source": r.source,
                    "arguments": r.arguments,
                    "error_kind": r.error_kind.value if r.error_kind else None,
                    "error": r.error,
                    "latency_s": r.latency_s,
                }
                for r in self.tool_calls
            ],
            "usage": {"input_tokens": self.usage.input_tokens, "output_tokens": self.usage.output_tokens},
        }


class AgentLoop:
    """Drives one conversation turn against one provider and one tool registry."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        dispatcher: ToolDispatcher,
        *,
        limiter: ProviderRateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.adapter = adapter
        self.dispatcher = dispatcher
        self.limiter = limiter or ProviderRateLimiter()
        self.retry_policy = retry_policy
        self.on_event = on_event
        self.state = LoopState.AWAITING_MODEL

    def _emit(self, kind: EventKind, iteration: int, /, **data: Any) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(AgentEvent(kind=kind, iteration=iteration, data=data))
        except Exception:
            logger.warning("on_event callback raised for %s", kind.value, exc_info=True)

    async def _send(self, conversation: Conversation, settings: AgentSettings):
        tools = self.dispatcher.registry.descriptors()
        policy = self.retry_policy or RetryPolicy.from_settings(settings)

        async def _attempt():
            async with self.limiter.aacquire(settings.provider):
                return await self.adapter.send(conversation, tools, settings)

        return await call_with_retry(_attempt, policy, label=settings.provider.value)

    async def run(self, conversation: Conversation, settings: AgentSettings | None = None) -> AgentRunResult:
        """Run until a final answer or a FAILED state.

        *conversation* is appended to in place; on failure it keeps only fully
        appended messages, so no assistant tool call is left unanswered.
        """
        settings = settings or self.dispatcher.settings
        conversation.validate()
        result = AgentRunResult(status=LoopState.AWAITING_MODEL, conversation=conversation)
        committed = len(conversation)
        self.state = LoopState.AWAITING_MODEL
        max_iterations = settings.max_loop_iterations

        try:
            for iteration in range(1, max_iterations + 1):
                result.iterations = iteration
                self.state = LoopState.AWAITING_MODEL
                self._emit(EventKind.ITERATION, iteration, max_iterations=max_iterations)

                turn = await self._send(conversation, settings)
                result.usage.add(turn.usage)
                if turn.text:
                    self._emit(EventKind.TEXT, iteration, text=turn.text)

                if isinstance(turn, FinalAnswer):
                    conversation.append(Message.assistant(turn.text))
                    committed = len(conversation)
                    self.state = LoopState.COMPLETED
                    result.status = LoopState.COMPLETED
                    result.final_text = turn.text
                    logger.info(
                        "Agent run completed after %d iteration(s), %d tool call(s)",
                        iteration,
                        len(result.tool_calls),
                    )
                    self._emit(EventKind.DONE, iteration, text=turn.text)
                    return result

                assert isinstance(turn, ToolRequests)
                if iteration == max_iterations:
                    break

                self.state = LoopState.DISPATCHING
                conversation.append(Message.assistant(turn.text, turn.calls))
                for call in turn.calls:
                    self._emit(EventKind.TOOL_CALL_START, iteration, tool=call.name, tool_call_id=call.id)
                records: list[ToolCallRecord] = []
                try:
                    results = await self.dispatcher.execute_all(turn.calls, records)
                finally:
                    result.tool_calls.extend(records)
                for call, tool_result in zip(turn.calls, results):
                    conversation.append(Message.tool_result(tool_result, tool_name=call.name))
                    self._emit(
                        EventKind.TOOL_CALL_RESULT,
                        iteration,
                        tool=call.name,
                        tool_call_id=call.id,
                        is_error=tool_result.is_error,
                        content=tool_result.content,
                    )
                committed = len(conversation)
                logger.debug("Agent iteration %d/%d: %d tool call(s)", iteration, max_iterations, len(turn.calls))

            logger.warning("Agent loop exhausted max_loop_iterations=%d", max_iterations)
            return self._fail(
                result,
                FailureKind.ITERATION_LIMIT_EXCEEDED,
                f"Model still requested tools after {max_iterations} iteration(s)",
            )
        except ProviderError as exc:
            conversation.truncate(committed)
            logger.error("Provider %s failed: %s: %s", settings.provider.value, type(exc).__name__, exc)
            return self._fail(result, FailureKind.PROVIDER_FAILURE, f"{type(exc).__name__}: {exc}", exc)
        except asyncio.CancelledError:
            conversation.truncate(committed)
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.info("Agent run cancelled; conversation rolled back to %d message(s)", committed)
            return self._fail(result, FailureKind.CANCELLED, "Run was cancelled")

    def _fail(
        self,
        result: AgentRunResult,
        kind: FailureKind,
        message: str,
        cause: Exception | None = None,
    ) -> AgentRunResult:
        self.state = LoopState.FAILED
        result.status = LoopState.FAILED
        result.failure = failure_error(kind, message, cause)
        self._emit(EventKind.ERROR, result.iterations, kind=kind.value, message=message)
        return result

    async def run_or_raise(self, conversation: Conversation, settings: AgentSettings | None = None) -> AgentRunResult:
        """Like :meth:`run` but raises the AgentLoopError of a FAILED run."""
        return (await self.run(conversation, settings)).raise_for_failure()

    async def run_turn(
        self,
        store: ConversationStore,
        conversation_id: str,
        user_text: str,
        settings: AgentSettings | None = None,
    ) -> AgentRunResult:
        """Load a stored conversation, run one user turn, persist the new messages."""
        conversation = await store.load(conversation_id)
        conversation.append(Message.user(user_text))
        start = len(conversation) - 1
        result = await self.run(conversation, settings)
        for message in conversation.messages[start:]:
            await store.append(conversation_id, message)
        return result
