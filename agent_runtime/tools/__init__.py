"""Built-in local tools.

Each module exposes a ``*_tools()`` factory returning ToolDescriptors.
``invoke_subagents`` lives in :mod:`agent_runtime.subagent` because it needs
the loop machinery.
"""

from agent_runtime.models import ToolDescriptor
from agent_runtime.tools.context import ConfirmationRequest, TodoItem, TodoList, TodoStatus, ToolContext
from agent_runtime.tools.filesystem import filesystem_tools
from agent_runtime.tools.memory import memory_tools
from agent_runtime.tools.search import search_tools
from agent_runtime.tools.shell import shell_tools


def builtin_tools() -> list[ToolDescriptor]:
    return [*filesystem_tools(), *search_tools(), *shell_tools(), *memory_tools()]


__all__ = [
    "ConfirmationRequest",
    "TodoItem",
    "TodoList",
    "TodoStatus",
    "ToolContext",
    "builtin_tools",
    "filesystem_tools",
    "memory_tools",
    "search_tools",
    "shell_tools",
]
