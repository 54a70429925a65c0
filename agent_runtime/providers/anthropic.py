"""Anthropic Messages API wire format.

System prompt is top-level. Assistant tool calls are ``tool_use`` content
blocks; results go back as ``tool_result`` blocks inside a user message,
with consecutive results merged into one message so roles alternate.
"""

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


class AnthropicAdapter(ProviderAdapter):
    kind = ProviderKind.ANTHROPIC

    def default_transport(self) -> Transport:
        from agent_runtime.providers.transport import AnthropicHttpTransport

        return AnthropicHttpTransport()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def encode_messages(self, conversation: Conversation) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []

        def push_user_block(block: dict[str, Any]) -> None:
            last = out[-1] if out else None
            if last is not None and last["role"] == "user":
                if isinstance(last["content"], str):
                    last["content"] = [{"type": "text", "text": last["content"]}]
                last["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})

        for message in conversation:
            if message.role is Role.SYSTEM:
                continue
            if message.role is Role.USER:
                if out and out[-1]["role"] == "user":
                    push_user_block({"type": "text", "text": message.content})
                else:
                    out.append({"role": "user", "content": message.content})
            elif message.role is Role.ASSISTANT:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.tool_calls:
                    blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": dict(call.arguments)})
                out.append({"role": "assistant", "content": blocks or [{"type": "text", "text": ""}]})
            else:
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
                if message.is_error:
                    block["is_error"] = True
                push_user_block(block)
        return out

    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
        settings: AgentSettings,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": settings.resolved_model,
            "max_tokens": settings.max_output_tokens,
            "temperature": settings.temperature,
            "messages": self.encode_messages(conversation),
        }
        system = conversation.system_prompt
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = [
                {"name": d.name, "description": d.description, "input_schema": tool_schema(d)} for d in tools
            ]
        return payload

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def parse_response(self, data: dict[str, Any]) -> AssistantTurn:
        if data.get("type") == "error":
            raise ProviderProtocolError(f"Anthropic error payload: {data.get('error')}")
        content = data.get("content")
        if not isinstance(content, list):
            raise ProviderProtocolError("Anthropic response has no content list")
        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in content:
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text") or "")
            elif kind == "tool_use":
                calls.append(make_tool_call(str(block.get("id") or f"toolu_{len(calls)}"), block.get("name"), block.get("input")))
        usage_raw = data.get("usage") or {}
        usage = Usage(
            input_tokens=int(usage_raw.get("input_tokens") or 0),
            output_tokens=int(usage_raw.get("output_tokens") or 0),
        )
        return assistant_turn("".join(texts), calls, usage)

    def decode_messages(self, payload: dict[str, Any]) -> list[Message]:
        messages: list[Message] = []
        if payload.get("system"):
            messages.append(Message.system(payload["system"]))
        names: dict[str, str] = {}
        for entry in payload.get("messages") or []:
            content = entry.get("content")
            if entry.get("role") == "assistant":
                blocks = content if isinstance(content, list) else [{"type": "text", "text": content or ""}]
                text = "".join(b.get("text") or "" for b in blocks if b.get("type") == "text")
                calls = []
                for b in blocks:
                    if b.get("type") == "tool_use":
                        names[b["id"]] = b["name"]
                        calls.append(make_tool_call(b["id"], b["name"], b.get("input")))
                messages.append(Message.assistant(text, calls))
                continue
            if isinstance(content, str):
                messages.append(Message.user(content))
                continue
            for b in content or []:
                if b.get("type") == "tool_result":
                    result_content = b.get("content")
                    if isinstance(result_content, list):
                        result_content = "".join(p.get("text") or "" for p in result_content)
                    elif not isinstance(result_content, str):
                        result_content = _json.dumps(result_content)
                    messages.append(
                        Message(
                            role=Role.TOOL,
                            content=result_content,
                            tool_call_id=b.get("tool_use_id"),
                            tool_name=names.get(b.get("tool_use_id") or ""),
                            is_error=bool(b.get("is_error")),
                        )
                    )
                elif b.get("type") == "text":
                    messages.append(Message.user(b.get("text") or ""))
        return messages
