"""Scheduling and memory tools: reminders, persistent notes and the todo list."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from agent_runtime.errors import ToolArgumentError
from agent_runtime.models import Capability, ToolDescriptor
from agent_runtime.tools.base import make_tool
from agent_runtime.tools.context import TodoItem, TodoStatus, ToolContext

logger = logging.getLogger(__name__)

MAX_MEMORY_SIZE_BYTES = 512 * 1024
DEFAULT_MEMORY_SECTION = "Important Facts"
RECURRENCES = ("once", "daily", "weekly")

_DATETIME_FORMATS = ("%d/%m/%Y %H:%M",)


def parse_trigger(raw: str) -> datetime:
    """Parse ``YYYY-MM-DDTHH:MM[:SS]``, ``YYYY-MM-DD HH:MM`` or ``DD/MM/YYYY HH:MM``."""
    text = raw.strip()
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ToolArgumentError(f"Cannot parse datetime {raw!r}; use YYYY-MM-DDTHH:MM (e.g. 2026-02-27T17:00)")


async def create_reminder(
    ctx: ToolContext,
    title: str,
    message: str,
    datetime: str,
    repeat: str = "once",
) -> str:
    """Schedule a reminder for a future local time; repeat is once, daily or weekly."""
    if ctx.reminders is None:
        raise RuntimeError("No reminder scheduler is configured")
    trigger = parse_trigger(datetime)
    now = _now(trigger)
    if trigger <= now:
        raise ToolArgumentError("Datetime is in the past; provide a future time")
    job_id = await ctx.reminders.schedule(trigger, f"{title.strip()}: {message.strip()}", repeat)
    msg = f"Reminder scheduled ({job_id}): \"{title.strip()}\" at {trigger.isoformat(sep=' ', timespec='minutes')}"
    if repeat != "once":
        msg += f" (repeats {repeat})"
    return msg


def _now(reference: datetime) -> datetime:
    if reference.tzinfo is not None:
        return datetime.now(reference.tzinfo)
    return datetime.now()


def _insert_in_section(current: str, section: str, entry: str) -> str:
    header = f"## {section}"
    lines = current.splitlines()
    for index, line in enumerate(lines):
        if line.strip() == header:
            lines.insert(index + 1, entry)
            return "\n".join(lines) + "\n"
    prefix = current.rstrip("\n")
    return f"{prefix}\n\n{header}\n{entry}\n" if prefix else f"{header}\n{entry}\n"


async def update_memory(
    ctx: ToolContext,
    content: str,
    target: str = "daily",
    section: str = DEFAULT_MEMORY_SECTION,
) -> str:
    """Save a note to memory: today's daily log, or a section of long-term MEMORY.md."""
    if ctx.memory is None:
        raise RuntimeError("No memory store is configured")
    memory = ctx.memory
    text = content.strip()
    if not text:
        raise ToolArgumentError("content must not be empty")

    if target == "daily":
        day = await asyncio.to_thread(memory.append_daily, text)
        return f"Saved to daily log {day}"

    def _write_long() -> str:
        current = memory.read_long_term()
        if len(current.encode("utf-8")) > MAX_MEMORY_SIZE_BYTES:
            raise ToolArgumentError(
                f"Long-term memory exceeds {MAX_MEMORY_SIZE_BYTES // 1024}KB; summarise it before adding more"
            )
        memory.write_long_term(_insert_in_section(current, section, f"- {text}"))
        return f"Saved to long-term memory under \"{section}\""

    return await asyncio.to_thread(_write_long)


def _todo_from_raw(raw: dict[str, Any]) -> TodoItem:
    try:
        item_id = int(raw["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ToolArgumentError(f"Todo item needs an integer id: {raw!r}") from exc
    return TodoItem(
        id=item_id,
        status=TodoStatus.parse(raw.get("status")),
        content=raw.get("content"),
        active_form=raw.get("active_form"),
    )


async def update_todo(ctx: ToolContext, todos: list[dict[str, Any]], merge: bool = True) -> str:
    """Update the plan shown to the user.

    merge=true updates items by id (and appends new ones); merge=false
    replaces the list. Status is pending, in_progress or completed.
    """
    items = [_todo_from_raw(raw) for raw in todos]
    if merge:
        ctx.todos.merge(items)
    else:
        ctx.todos.replace(items)
    return f"Todo updated: {ctx.todos.completed}/{len(ctx.todos.items)} completed"


def memory_tools() -> list[ToolDescriptor]:
    todo_item = {
        "type": "object",
        "properties": {
            "id": {"type": ["integer", "string"]},
            "status": {"type": "string"},
            "content": {"type": "string"},
            "active_form": {"type": "string"},
        },
        "required": ["id"],
    }
    return [
        make_tool(create_reminder, Capability.SCHEDULING, {
            "title": {"type": "string", "minLength": 1},
            "message": {"type": "string", "minLength": 1},
            "datetime": {"type": "string", "description": "Local time, YYYY-MM-DDTHH:MM"},
            "repeat": {"type": "string", "enum": list(RECURRENCES)},
        }, ["title", "message", "datetime"]),
        make_tool(update_memory, Capability.MEMORY, {
            "content": {"type": "string", "minLength": 1},
            "target": {"type": "string", "enum": ["daily", "long"]},
            "section": {"type": "string", "minLength": 1},
        }, ["content"]),
        make_tool(update_todo, Capability.MEMORY, {
            "todos": {"type": "array", "items": todo_item},
            "merge": {"type": "boolean"},
        }, ["todos"]),
    ]
