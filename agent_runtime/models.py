"""Provider-neutral data model for agent_runtime.

Everything that crosses a component boundary is one of these types:
``Message``/``Conversation`` between the loop and adapters, ``ToolCall`` and
``ToolResult`` between the loop and the dispatcher, ``ToolDescriptor`` inside
the registry.
"""

from __future__ import annotations

import enum
import json as _json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from pydantic import JsonValue, TypeAdapter, ValidationError

from agent_runtime.errors import ConversationProtocolError, ToolErrorKind

# ---------------------------------------------------------------------------
# Dynamic tool arguments
# ---------------------------------------------------------------------------

ToolArguments = dict[str, JsonValue]
"""Tagged union over str/int/float/bool/None/list/dict, keyed by argument name."""

_ARGUMENTS_ADAPTER: TypeAdapter[dict[str, JsonValue]] = TypeAdapter(dict[str, JsonValue])


def normalize_arguments(raw: Any) -> tuple[ToolArguments, str | None]:
    """Coerce loosely-typed provider arguments into a ToolArguments map.

    Providers hand back arguments as a JSON string (OpenAI), a dict
    (Anthropic, Gemini), or occasionally ``None``/``""`` for no-arg calls.

    Returns:
        (arguments, error) -- error is a human-readable reason when the payload
        cannot be turned into an object; arguments is then ``{}``.
    """
    if raw is None:
        return {}, None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return {}, None
        try:
            raw = _json.loads(stripped)
        except _json.JSONDecodeError as exc:
            return {}, f"Invalid JSON arguments: {exc}"
    if not isinstance(raw, dict):
        return {}, f"Arguments must be a JSON object, got {type(raw).__name__}"
    try:
        return _ARGUMENTS_ADAPTER.validate_python(raw), None
    except ValidationError as exc:
        return {}, f"Arguments are not JSON-compatible: {exc.errors()[0].get('msg', exc)}"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """One model-issued request to run a tool."""

    id: str
    name: str
    arguments: ToolArguments = field(default_factory=dict)
    argument_error: str | None = None
    """Set by adapters when the raw arguments could not be decoded."""


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = ()) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, result: "ToolResult", tool_name: str | None = None) -> "Message":
        return cls(
            role=Role.TOOL,
            content=result.content,
            tool_call_id=result.tool_call_id,
            tool_name=tool_name,
            is_error=result.is_error,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            out["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments} for tc in self.tool_calls
            ]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
            out["is_error"] = self.is_error
        if self.tool_name is not None:
            out["tool_name"] = self.tool_name
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        calls = tuple(
            ToolCall(id=str(tc["id"]), name=str(tc["name"]), arguments=dict(tc.get("arguments") or {}))
            for tc in data.get("tool_calls") or []
        )
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=calls,
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            is_error=bool(data.get("is_error", False)),
        )


class Conversation:
    """Ordered, append-only message list for one turn.

    Enforces the tool-result invariant on every append: a tool message must
    answer a call issued by the most recent assistant message, and only other
    tool messages may sit between them.
    """

    def __init__(self, messages: list[Message] | None = None, conversation_id: str | None = None) -> None:
        self.id = conversation_id
        self._messages: list[Message] = []
        for message in messages or []:
            self.append(message)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]

    @property
    def system_prompt(self) -> str | None:
        parts = [m.content for m in self._messages if m.role is Role.SYSTEM and m.content]
        return "\n\n".join(parts) if parts else None

    def append(self, message: Message) -> None:
        if message.role is Role.TOOL:
            self._check_tool_reference(message, self._messages)
        elif message.role is Role.ASSISTANT:
            ids = [tc.id for tc in message.tool_calls]
            if len(ids) != len(set(ids)):
                raise ConversationProtocolError(f"Duplicate tool call ids in one assistant message: {ids}")
        self._messages.append(message)

    def extend(self, messages: list[Message]) -> None:
        for message in messages:
            self.append(message)

    def truncate(self, length: int) -> None:
        """Drop everything after the first *length* messages (rollback)."""
        del self._messages[length:]

    def copy(self) -> "Conversation":
        clone = Conversation(conversation_id=self.id)
        clone._messages = list(self._messages)
        return clone

    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls of the trailing assistant message that have no result yet."""
        answered: set[str] = set()
        for message in reversed(self._messages):
            if message.role is Role.TOOL and message.tool_call_id:
                answered.add(message.tool_call_id)
                continue
            if message.role is Role.ASSISTANT:
                return [tc for tc in message.tool_calls if tc.id not in answered]
            break
        return []

    def validate(self) -> None:
        """Re-check the tool-result invariant over the whole history."""
        seen: list[Message] = []
        for message in self._messages:
            if message.role is Role.TOOL:
                self._check_tool_reference(message, seen)
            seen.append(message)

    @staticmethod
    def _check_tool_reference(message: Message, history: list[Message]) -> None:
        answered: set[str] = set()
        for previous in reversed(history):
            if previous.role is Role.TOOL:
                if previous.tool_call_id:
                    answered.add(previous.tool_call_id)
                continue
            if previous.role is Role.ASSISTANT:
                issued = {tc.id for tc in previous.tool_calls}
                if message.tool_call_id not in issued:
                    raise ConversationProtocolError(
                        f"Tool result {message.tool_call_id!r} does not reference a call "
                        f"from the preceding assistant message (issued: {sorted(issued)})"
                    )
                if message.tool_call_id in answered:
                    raise ConversationProtocolError(f"Tool call {message.tool_call_id!r} answered twice")
                return
            break
        raise ConversationProtocolError(
            f"Tool result {message.tool_call_id!r} is not preceded by an assistant message with tool calls"
        )

    def to_dicts(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._messages]


# ---------------------------------------------------------------------------
# Tool results / descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool call: Ok(payload) or Error(kind, message)."""

    tool_call_id: str
    payload: str | None = None
    error_kind: ToolErrorKind | None = None
    message: str = ""

    @classmethod
    def success(cls, tool_call_id: str, payload: str) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, payload=payload)

    @classmethod
    def failure(cls, tool_call_id: str, kind: ToolErrorKind, message: str) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, error_kind=kind, message=message)

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None

    @property
    def content(self) -> str:
        """Text handed back to the model."""
        if self.error_kind is not None:
            return f"Error [{self.error_kind.value}]: {self.message}"
        return self.payload or ""


class Capability(str, enum.Enum):
    FILESYSTEM_READ = "filesystem-read"
    FILESYSTEM_WRITE = "filesystem-write"
    SHELL_EXEC = "shell-exec"
    NETWORK = "network"
    SCHEDULING = "scheduling"
    MEMORY = "memory"
    DELEGATION = "delegation"


ToolHandler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: dict[str, Any]
    capability: Capability
    handler: ToolHandler = field(repr=False, compare=False)
    source: str = "local"


# ---------------------------------------------------------------------------
# Provider turn results
# ---------------------------------------------------------------------------


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage | None") -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class FinalAnswer:
    text: str
    usage: Usage | None = None


@dataclass(frozen=True)
class ToolRequests:
    calls: tuple[ToolCall, ...]
    text: str = ""
    usage: Usage | None = None


AssistantTurn = Union[FinalAnswer, ToolRequests]


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------


@dataclass
class ToolCallRecord:
    """Record of a single tool call during a run."""

    tool: str
    tool_call_id: str
    arguments: dict[str, Any]
    source: str = "local"
    result: str | None = None
    error: str | None = None
    error_kind: ToolErrorKind | None = None
    latency_s: float = 0.0
