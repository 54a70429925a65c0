"""Helpers shared by the built-in tool modules."""

from __future__ import annotations

from typing import Any

from agent_runtime.models import Capability, ToolDescriptor, ToolHandler

SKIP_DIR_NAMES = frozenset({".git", ".hg", ".svn", ".trash", ".backup", "__pycache__", "node_modules", ".venv"})
"""Directories never descended into by walking tools."""

BINARY_CHECK_SIZE = 8000


def object_schema(properties: dict[str, Any], required: list[str] | tuple[str, ...] = ()) -> dict[str, Any]:
    """JSON schema for a closed argument object."""
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = list(required)
    return schema


def make_tool(
    handler: ToolHandler,
    capability: Capability,
    properties: dict[str, Any],
    required: list[str] | tuple[str, ...] = (),
    *,
    name: str | None = None,
    description: str | None = None,
) -> ToolDescriptor:
    """Build a descriptor; name and description default to the handler's name and docstring."""
    if description is None:
        doc = (handler.__doc__ or "").strip()
        description = " ".join(doc.split("\n\n")[0].split())
    return ToolDescriptor(
        name=name or handler.__name__,
        description=description,
        parameters=object_schema(properties, required),
        capability=capability,
        handler=handler,
    )


def looks_binary(head: bytes) -> bool:
    return b"\x00" in head[:BINARY_CHECK_SIZE]
