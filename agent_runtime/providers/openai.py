"""OpenAI chat-completions wire format (also what litellm speaks)."""

from __future__ import annotations

import json as _json
from typing import Any, Sequence

from agent_runtime.config import AgentSettings, ProviderKind
from agent_runtime.errors import ProviderProtocolError
from agent_runtime.models import (
    AssistantTurn,
    Conversation,
    Message,
    Role,
    ToolCall,
    ToolDescriptor,
    Usage,
)
from agent_runtime.providers.base import (
    ProviderAdapter,
    Transport,
    assistant_turn,
    make_tool_call,
    tool_schema,
)


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text") or "" for part in content if isinstance(part, dict))
    return str(content)


class OpenAIAdapter(ProviderAdapter):
    kind = ProviderKind.OPENAI

    def default_transport(self) -> Transport:
        from agent_runtime.providers.transport import LiteLLMTransport

        return LiteLLMTransport()

    def encode_messages(self, conversation: Conversation) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for message in conversation:
            if message.role is Role.ASSISTANT:
                entry: dict[str, Any] = {"role": "assistant", "content": message.content or None}
                if message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": _json.dumps(call.arguments)},
                        }
                        for call in message.tool_calls
                    ]
                out.append(entry)
            elif message.role is Role.TOOL:
                out.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content})
            else:
                out.append({"role": message.role.value, "content": message.content})
        return out

    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
        settings: AgentSettings,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": settings.resolved_model,
            "messages": self.encode_messages(conversation),
            "max_tokens": settings.max_output_tokens,
            "temperature": settings.temperature,
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": d.name, "description": d.description, "parameters": tool_schema(d)},
                }
                for d in tools
            ]
        return payload

    def parse_response(self, data: dict[str, Any]) -> AssistantTurn:
        if data.get("error"):
            raise ProviderProtocolError(f"OpenAI error payload: {data['error']}")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ProviderProtocolError("OpenAI response has no choices")
        message = choices[0].get("message") or {}
        calls: list[ToolCall] = []
        for index, raw in enumerate(message.get("tool_calls") or []):
            fn = raw.get("function") or {}
            calls.append(make_tool_call(str(raw.get("id") or f"call_{index}"), fn.get("name"), fn.get("arguments")))
        usage_raw = data.get("usage") or {}
        usage = Usage(
            input_tokens=int(usage_raw.get("prompt_tokens") or 0),
            output_tokens=int(usage_raw.get("completion_tokens") or 0),
        )
        return assistant_turn(_content_text(message.get("content")), calls, usage)

    def decode_messages(self, payload: dict[str, Any]) -> list[Message]:
        messages: list[Message] = []
        names: dict[str, str] = {}
        for entry in payload.get("messages") or []:
            role = entry.get("role")
            if role == "assistant":
                calls = []
                for raw in entry.get("tool_calls") or []:
                    fn = raw.get("function") or {}
                    names[raw["id"]] = fn.get("name")
                    calls.append(make_tool_call(raw["id"], fn.get("name"), fn.get("arguments")))
                messages.append(Message.assistant(_content_text(entry.get("content")), calls))
            elif role == "tool":
                call_id = entry.get("tool_call_id")
                content = _content_text(entry.get("content"))
                messages.append(
                    Message(
                        role=Role.TOOL,
                        content=content,
                        tool_call_id=call_id,
                        tool_name=names.get(call_id or ""),
                        is_error=content.startswith("Error ["),
                    )
                )
            elif role == "system":
                messages.append(Message.system(_content_text(entry.get("content"))))
            else:
                messages.append(Message.user(_content_text(entry.get("content"))))
        return messages
