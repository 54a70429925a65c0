"""External collaborators consumed by the runtime.

Persistence, settings storage, reminder firing, file indexing and long-term
memory live outside this package. The runtime only talks to them through the
protocols below. Small in-memory/file implementations are provided for the
CLI and tests.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agent_runtime.config import AgentSettings
from agent_runtime.models import Conversation, Message

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    """Backs the excluded persistence layer."""

    async def load(self, conversation_id: str) -> Conversation: ...
    async def append(self, conversation_id: str, message: Message) -> None: ...
    async def create(self, title: str | None = None) -> str: ...


@runtime_checkable
class SettingsProvider(Protocol):
    def current(self) -> AgentSettings: ...


@runtime_checkable
class ReminderScheduler(Protocol):
    """Owns actual firing; the runtime only registers jobs."""

    async def schedule(self, trigger: datetime, prompt: str, recurrence: str) -> str: ...


@runtime_checkable
class FileIndex(Protocol):
    async def search(self, query: str) -> list[str]: ...


@runtime_checkable
class MemoryStore(Protocol):
    def append_daily(self, content: str) -> str: ...
    def read_long_term(self) -> str: ...
    def write_long_term(self, text: str) -> None: ...


# ---------------------------------------------------------------------------
# Reference implementations
# ---------------------------------------------------------------------------


class InMemoryConversationStore:
    """Dict-backed ConversationStore. Not durable; for tests and the CLI."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[Message]] = {}
        self._titles: dict[str, str | None] = {}
        self._lock = asyncio.Lock()

    async def create(self, title: str | None = None) -> str:
        conversation_id = uuid.uuid4().hex[:12]
        async with self._lock:
            self._conversations[conversation_id] = []
            self._titles[conversation_id] = title
        return conversation_id

    async def load(self, conversation_id: str) -> Conversation:
        async with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            return Conversation(list(self._conversations[conversation_id]), conversation_id=conversation_id)

    async def append(self, conversation_id: str, message: Message) -> None:
        async with self._lock:
            if conversation_id not in self._conversations:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            self._conversations[conversation_id].append(message)


class StaticSettingsProvider:
    def __init__(self, settings: AgentSettings) -> None:
        self._settings = settings

    def current(self) -> AgentSettings:
        return self._settings


class EnvSettingsProvider:
    """Re-reads ``AGENT_RUNTIME_*`` on every call so each run gets a fresh snapshot."""

    def __init__(self, base: AgentSettings | None = None) -> None:
        self._base = base

    def current(self) -> AgentSettings:
        return AgentSettings.from_env(self._base)


@dataclass
class ScheduledReminder:
    job_id: str
    trigger: datetime
    prompt: str
    recurrence: str


@dataclass
class InMemoryReminderScheduler:
    """Records reminders instead of firing them."""

    jobs: list[ScheduledReminder] = field(default_factory=list)
    _ids: Any = field(default_factory=lambda: itertools.count(1), repr=False)

    async def schedule(self, trigger: datetime, prompt: str, recurrence: str) -> str:
        job_id = f"job-{next(self._ids)}"
        self.jobs.append(ScheduledReminder(job_id, trigger, prompt, recurrence))
        logger.info("Scheduled reminder %s at %s (%s)", job_id, trigger.isoformat(), recurrence)
        return job_id


class FileMemoryStore:
    """Markdown memory under one directory: MEMORY.md plus memory/YYYY-MM-DD.md logs."""

    LONG_TERM_FILE = "MEMORY.md"

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _daily_path(self, day: date) -> Path:
        return self.base_dir / "memory" / f"{day.isoformat()}.md"

    def append_daily(self, content: str) -> str:
        today = date.today()
        path = self._daily_path(today)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%H:%M")
        with path.open("a", encoding="utf-8") as fh:
            fh.write(f"- [{stamp}] {content.strip()}\n")
        return today.isoformat()

    def read_long_term(self) -> str:
        path = self.base_dir / self.LONG_TERM_FILE
        if not path.is_file():
            return ""
        return path.read_text(encoding="utf-8")

    def write_long_term(self, text: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        (self.base_dir / self.LONG_TERM_FILE).write_text(text, encoding="utf-8")
