from __future__ import annotations

from pathlib import Path

import pytest

from agent_runtime.config import AgentSettings
from agent_runtime.interfaces import FileMemoryStore, InMemoryReminderScheduler
from agent_runtime.tools.context import ToolContext
from stubs import make_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer environment variables out of settings and limiter tests."""
    for name in (
        "AGENT_RUNTIME_PROVIDER",
        "AGENT_RUNTIME_MODEL",
        "AGENT_RUNTIME_API_KEY",
        "AGENT_RUNTIME_API_BASE",
        "AGENT_RUNTIME_ROOTS",
        "AGENT_RUNTIME_MAX_ITERATIONS",
        "AGENT_RUNTIME_MAX_DEPTH",
        "AGENT_RUNTIME_RAW_SHELL",
        "AGENT_RUNTIME_PARALLEL_TOOLS",
        "AGENT_RUNTIME_CONFIG",
        "AGENT_RUNTIME_RATE_LIMITS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def settings(workspace: Path) -> AgentSettings:
    return make_settings(workspace)


@pytest.fixture
def ctx(settings: AgentSettings, workspace: Path) -> ToolContext:
    return ToolContext.from_settings(
        settings,
        reminders=InMemoryReminderScheduler(),
        memory=FileMemoryStore(workspace / ".memory"),
    )
