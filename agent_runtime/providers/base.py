"""ProviderAdapter contract shared by every vendor wire format.

An adapter is pure translation: ``build_request`` turns the neutral
conversation and tool descriptors into the vendor's JSON payload, and
``parse_response`` turns the vendor's JSON answer into an ``AssistantTurn``.
Moving bytes is the job of an injected ``Transport`` so adapters can be
exercised against vendor stubs.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar, Protocol, Sequence

from agent_runtime.config import AgentSettings, ProviderKind
from agent_runtime.errors import ProviderError, ProviderProtocolError, wrap_error
from agent_runtime.models import (
    AssistantTurn,
    Conversation,
    FinalAnswer,
    Message,
    ToolCall,
    ToolDescriptor,
    ToolRequests,
    Usage,
    normalize_arguments,
)

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Sends one vendor payload and returns the decoded JSON response."""

    async def __call__(self, payload: dict[str, Any], settings: AgentSettings) -> dict[str, Any]: ...


def make_tool_call(call_id: str, name: Any, raw_arguments: Any) -> ToolCall:
    """Neutral ToolCall from loosely-typed vendor data; bad arguments are kept, not raised."""
    if not isinstance(name, str) or not name:
        raise ProviderProtocolError(f"Tool call {call_id!r} has no function name")
    arguments, error = normalize_arguments(raw_arguments)
    if error is not None:
        logger.warning("Tool call %s (%s) has malformed arguments: %s", call_id, name, error)
    return ToolCall(id=call_id, name=name, arguments=arguments, argument_error=error)


def assistant_turn(text: str, calls: Sequence[ToolCall], usage: Usage | None) -> AssistantTurn:
    ids = [call.id for call in calls]
    if len(ids) != len(set(ids)):
        raise ProviderProtocolError(f"Duplicate tool call ids in one assistant message: {ids}")
    if calls:
        return ToolRequests(calls=tuple(calls), text=text, usage=usage)
    return FinalAnswer(text=text, usage=usage)


class ProviderAdapter(abc.ABC):
    """One vendor's translation between neutral and wire formats."""

    kind: ClassVar[ProviderKind]

    def __init__(self, transport: Transport | None = None) -> None:
        self._transport = transport

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            self._transport = self.default_transport()
        return self._transport

    @abc.abstractmethod
    def default_transport(self) -> Transport:
        """Transport used when none was injected."""

    @abc.abstractmethod
    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
        settings: AgentSettings,
    ) -> dict[str, Any]:
        """Vendor request payload for *conversation*."""

    @abc.abstractmethod
    def parse_response(self, data: dict[str, Any]) -> AssistantTurn:
        """Neutral turn from a vendor response; raises ProviderProtocolError on garbage."""

    @abc.abstractmethod
    def decode_messages(self, payload: dict[str, Any]) -> list[Message]:
        """Inverse of the message half of ``build_request``."""

    async def send(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
        settings: AgentSettings,
    ) -> AssistantTurn:
        payload = self.build_request(conversation, tools, settings)
        logger.debug("%s request: %d messages, %d tools", self.kind.value, len(conversation), len(tools))
        try:
            data = await self.transport(payload, settings)
        except ProviderError:
            raise
        except Exception as exc:
            raise wrap_error(exc) from exc
        if not isinstance(data, dict):
            raise ProviderProtocolError(f"{self.kind.value} response is not a JSON object: {type(data).__name__}")
        try:
            return self.parse_response(data)
        except ProviderError:
            raise
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderProtocolError(f"Malformed {self.kind.value} response: {exc}", original=exc) from exc


def tool_schema(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Descriptor parameters, defaulting to an empty object schema."""
    return descriptor.parameters or {"type": "object", "properties": {}}
