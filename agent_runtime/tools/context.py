"""Per-run context handed to every tool handler."""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agent_runtime.config import AgentSettings
from agent_runtime.errors import ToolDenied
from agent_runtime.interfaces import FileIndex, MemoryStore, ReminderScheduler
from agent_runtime.path_guard import PathGuard, RequiresConfirmation, RiskLevel

if TYPE_CHECKING:
    from agent_runtime.subagent import SubagentSpawner

logger = logging.getLogger(__name__)


class TodoStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: Any) -> "TodoStatus":
        value = str(raw or "").strip().lower().replace("-", "_")
        if value in {"in_progress", "inprogress", "active"}:
            return cls.IN_PROGRESS
        if value in {"completed", "done", "finished"}:
            return cls.COMPLETED
        return cls.PENDING


@dataclass
class TodoItem:
    id: int
    status: TodoStatus = TodoStatus.PENDING
    content: str | None = None
    active_form: str | None = None


@dataclass
class TodoList:
    """Plan shown to the user; ordered by id."""

    items: list[TodoItem] = field(default_factory=list)

    def replace(self, items: list[TodoItem]) -> None:
        self.items = sorted(items, key=lambda i: i.id)

    def merge(self, incoming: list[TodoItem]) -> None:
        by_id = {item.id: item for item in self.items}
        for item in incoming:
            existing = by_id.get(item.id)
            if existing is None:
                by_id[item.id] = item
                continue
            by_id[item.id] = TodoItem(
                id=item.id,
                status=item.status,
                content=item.content if item.content is not None else existing.content,
                active_form=item.active_form if item.active_form is not None else existing.active_form,
            )
        self.items = sorted(by_id.values(), key=lambda i: i.id)

    @property
    def completed(self) -> int:
        return sum(1 for i in self.items if i.status is TodoStatus.COMPLETED)


@dataclass(frozen=True)
class ConfirmationRequest:
    """What the user is asked to approve before a destructive operation."""

    tool: str
    reason: str
    details: str = ""
    risk: RiskLevel = RiskLevel.MEDIUM


ConfirmCallback = Callable[[ConfirmationRequest], Awaitable[bool]]


@dataclass
class ToolContext:
    """Everything a handler may touch besides its arguments.

    ``guard`` is the only way handlers obtain host paths; ``depth`` is the
    sub-agent nesting level of the loop that owns this context. ``confirm``
    asks the user about destructive operations and is inherited by sub-agents.
    """

    settings: AgentSettings
    guard: PathGuard
    reminders: ReminderScheduler | None = None
    file_index: FileIndex | None = None
    memory: MemoryStore | None = None
    spawner: "SubagentSpawner | None" = None
    depth: int = 0
    todos: TodoList = field(default_factory=TodoList)
    confirm: ConfirmCallback | None = None

    @classmethod
    def from_settings(cls, settings: AgentSettings, **collaborators: Any) -> "ToolContext":
        return cls(settings=settings, guard=PathGuard.from_settings(settings), **collaborators)

    @property
    def workspace(self) -> Path:
        return self.settings.primary_root

    def child(self, settings: AgentSettings | None = None, depth: int | None = None) -> "ToolContext":
        """Context for a sub-agent one level deeper, with its own todo list."""
        settings = settings or self.settings
        guard = self.guard if settings is self.settings else PathGuard.from_settings(settings)
        return dataclasses.replace(
            self,
            settings=settings,
            guard=guard,
            depth=self.depth + 1 if depth is None else depth,
            todos=TodoList(),
        )

    async def require_confirmation(
        self,
        tool: str,
        reason: str,
        details: str = "",
        risk: RiskLevel = RiskLevel.MEDIUM,
    ) -> None:
        """Ask the user to approve an operation; raise ToolDenied unless they do.

        Without a ``confirm`` callback nobody can approve, so the operation is
        refused.
        """
        request = ConfirmationRequest(tool=tool, reason=reason, details=details, risk=risk)
        if self.confirm is None:
            logger.warning("%s needs confirmation but no confirm callback is set: %s", tool, reason)
            raise ToolDenied(f"{reason} (confirmation required, none available): {details}")
        if not await self.confirm(request):
            logger.info("User declined %s: %s", tool, reason)
            raise ToolDenied(f"User declined: {reason}")
        logger.info("User approved %s: %s", tool, reason)

    async def authorize_command(self, tool: str, command_line: str) -> str:
        """``guard.require_command`` plus the confirmation step for risky commands."""
        command = self.guard.require_command(command_line)
        verdict = self.guard.check_command(command)
        if isinstance(verdict, RequiresConfirmation):
            await self.require_confirmation(tool, verdict.reason, verdict.subject, verdict.risk)
        return command
