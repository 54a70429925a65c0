"""Gemini generateContent wire format.

Gemini function calls historically carry no id. When a ``functionCall``
arrives without one the adapter synthesises ``gemini-<index>-<name>``, and
when decoding history it pairs ``functionResponse`` parts with the calls of
the preceding model turn by function name. Ids are sent back when known.
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

# JSON-schema keywords the functionDeclarations schema subset rejects
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"additionalProperties", "$schema", "$id", "default", "examples", "title"})


def gemini_schema(schema: Any) -> Any:
    """Trim a JSON schema down to what functionDeclarations accept."""
    if isinstance(schema, list):
        return [gemini_schema(s) for s in schema]
    if not isinstance(schema, dict):
        return schema
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _UNSUPPORTED_SCHEMA_KEYS:
            continue
        if key == "type" and isinstance(value, list):
            non_null = [t for t in value if t != "null"]
            out["type"] = non_null[0] if non_null else "string"
            if "null" in value:
                out["nullable"] = True
        elif key == "properties" and isinstance(value, dict):
            out[key] = {name: gemini_schema(sub) for name, sub in value.items()}
        else:
            out[key] = gemini_schema(value)
    return out


def synthesize_call_id(index: int, name: str) -> str:
    return f"gemini-{index}-{name}"


class GeminiAdapter(ProviderAdapter):
    kind = ProviderKind.GEMINI

    def default_transport(self) -> Transport:
        from agent_runtime.providers.transport import GeminiHttpTransport

        return GeminiHttpTransport()

    def encode_messages(self, conversation: Conversation) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in conversation:
            if message.role is Role.SYSTEM:
                continue
            if message.role is Role.USER:
                contents.append({"role": "user", "parts": [{"text": message.content}]})
            elif message.role is Role.ASSISTANT:
                parts: list[dict[str, Any]] = []
                if message.content:
                    parts.append({"text": message.content})
                for call in message.tool_calls:
                    parts.append({"functionCall": {"id": call.id, "name": call.name, "args": dict(call.arguments)}})
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            else:
                key = "error" if message.is_error else "content"
                part = {
                    "functionResponse": {
                        "id": message.tool_call_id,
                        "name": message.tool_name or "",
                        "response": {key: message.content},
                    }
                }
                last = contents[-1] if contents else None
                if last is not None and last["role"] == "user" and all("functionResponse" in p for p in last["parts"]):
                    last["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
        return contents

    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolDescriptor],
        settings: AgentSettings,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": self.encode_messages(conversation),
            "generationConfig": {
                "maxOutputTokens": settings.max_output_tokens,
                "temperature": settings.temperature,
            },
        }
        system = conversation.system_prompt
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": d.name, "description": d.description, "parameters": gemini_schema(tool_schema(d))}
                        for d in tools
                    ]
                }
            ]
        return payload

    def parse_response(self, data: dict[str, Any]) -> AssistantTurn:
        if data.get("error"):
            raise ProviderProtocolError(f"Gemini error payload: {data['error']}")
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = data.get("promptFeedback") or {}
            reason = feedback.get("blockReason")
            raise ProviderProtocolError(
                f"Gemini returned no candidates (blocked: {reason})" if reason else "Gemini returned no candidates"
            )
        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts:
            if "text" in part and not part.get("thought"):
                texts.append(part.get("text") or "")
            elif "functionCall" in part:
                fc = part["functionCall"] or {}
                name = fc.get("name")
                call_id = fc.get("id") or synthesize_call_id(len(calls), str(name))
                calls.append(make_tool_call(str(call_id), name, fc.get("args")))
        usage_raw = data.get("usageMetadata") or {}
        usage = Usage(
            input_tokens=int(usage_raw.get("promptTokenCount") or 0),
            output_tokens=int(usage_raw.get("candidatesTokenCount") or 0),
        )
        return assistant_turn("".join(texts), calls, usage)

    def decode_messages(self, payload: dict[str, Any]) -> list[Message]:
        messages: list[Message] = []
        system = payload.get("systemInstruction")
        if system:
            messages.append(Message.system("".join(p.get("text") or "" for p in system.get("parts") or [])))
        pending: list[ToolCall] = []
        for entry in payload.get("contents") or []:
            parts = entry.get("parts") or []
            if entry.get("role") == "model":
                text = "".join(p.get("text") or "" for p in parts if "text" in p)
                calls: list[ToolCall] = []
                for p in parts:
                    if "functionCall" in p:
                        fc = p["functionCall"]
                        call_id = fc.get("id") or synthesize_call_id(len(calls), fc.get("name"))
                        calls.append(make_tool_call(call_id, fc.get("name"), fc.get("args")))
                pending = list(calls)
                messages.append(Message.assistant(text, calls))
                continue
            for p in parts:
                if "functionResponse" in p:
                    fr = p["functionResponse"]
                    call_id = fr.get("id")
                    if not call_id:
                        match = next((c for c in pending if c.name == fr.get("name")), None)
                        if match is None:
                            raise ProviderProtocolError(f"functionResponse {fr.get('name')!r} has no matching call")
                        call_id = match.id
                    pending = [c for c in pending if c.id != call_id]
                    response = fr.get("response") or {}
                    is_error = "error" in response
                    body = response.get("error" if is_error else "content")
                    if body is None:
                        body = _json.dumps(response)
                    messages.append(
                        Message(
                            role=Role.TOOL,
                            content=body if isinstance(body, str) else _json.dumps(body),
                            tool_call_id=call_id,
                            tool_name=fr.get("name"),
                            is_error=is_error,
                        )
                    )
                elif "text" in p:
                    messages.append(Message.user(p.get("text") or ""))
        return messages
