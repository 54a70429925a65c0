"""Tests for the agent_runtime command-line entry point."""

from __future__ import annotations

import io
import json
from unittest.mock import patch

from agent_runtime.__main__ import main
from agent_runtime.errors import ProviderAuthError
from agent_runtime.providers.openai import OpenAIAdapter
from stubs import ScriptedTransport, openai_text, openai_tools


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()


def test_tools_json(workspace, capsys):
    assert main(["tools", "--root", str(workspace), "--format", "json"]) == 0
    data = json.loads(capsys.readouterr().out)
    names = [t["name"] for t in data["tools"]]
    assert "read_file" in names
    assert "run_shell" in names
    assert "invoke_subagents" in names
    assert all(t["source"] == "local" for t in data["tools"])
    assert data["shadowed"] == []


def test_tools_text(workspace, capsys):
    assert main(["tools", "--root", str(workspace)]) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[0].startswith("Tool")
    assert "filesystem-read" in out


def test_run_text(workspace, capsys, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    (workspace / "notes.txt").write_text("remember the milk", encoding="utf-8")
    transport = ScriptedTransport(
        [openai_tools(("c1", "read_file", {"path": "notes.txt"})), openai_text("You need milk.")]
    )
    with patch.object(OpenAIAdapter, "default_transport", return_value=transport):
        code = main(["run", "what do I need?", "--root", str(workspace), "--provider", "openai", "-v"])
    captured = capsys.readouterr()
    assert code == 0
    assert captured.out.strip() == "You need milk."
    assert "-> read_file" in captured.err
    assert "<- read_file (ok)" in captured.err
    assert transport.calls == 2


def test_run_json(workspace, capsys):
    transport = ScriptedTransport([openai_text("hi")])
    with patch.object(OpenAIAdapter, "default_transport", return_value=transport):
        code = main(["run", "hello", "--root", str(workspace), "--format", "json"])
    data = json.loads(capsys.readouterr().out)
    assert code == 0
    assert data["status"] == "completed"
    assert data["final_text"] == "hi"
    assert data["iterations"] == 1


def test_run_failure_exit_code(workspace, capsys):
    transport = ScriptedTransport([ProviderAuthError("bad key")])
    with patch.object(OpenAIAdapter, "default_transport", return_value=transport):
        code = main(["run", "hello", "--root", str(workspace)])
    assert code == 1
    assert "Run failed (ProviderFailure)" in capsys.readouterr().err


class _Terminal(io.StringIO):
    def isatty(self) -> bool:
        return True


def _permanent_delete_script() -> ScriptedTransport:
    return ScriptedTransport(
        [openai_tools(("c1", "delete_file", {"path": "old.log", "permanent": True})), openai_text("cleaned")]
    )


def test_run_yes_approves_destructive_tools(workspace, capsys):
    (workspace / "old.log").write_text("stale", encoding="utf-8")
    with patch.object(OpenAIAdapter, "default_transport", return_value=_permanent_delete_script()):
        code = main(["run", "clean up", "--root", str(workspace), "--yes", "--format", "json"])
    captured = capsys.readouterr()
    assert code == 0
    assert not (workspace / "old.log").exists()
    assert json.loads(captured.out)["tool_calls"][0]["error_kind"] is None
    assert "[approved] delete_file" in captured.err


def test_run_without_terminal_refuses_destructive_tools(workspace, capsys, monkeypatch):
    (workspace / "old.log").write_text("stale", encoding="utf-8")
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    with patch.object(OpenAIAdapter, "default_transport", return_value=_permanent_delete_script()):
        code = main(["run", "clean up", "--root", str(workspace), "--format", "json"])
    data = json.loads(capsys.readouterr().out)
    assert code == 0
    assert (workspace / "old.log").exists()
    assert data["tool_calls"][0]["error_kind"] == "ValidationDenied"


def test_run_asks_on_terminal(workspace, capsys, monkeypatch):
    (workspace / "old.log").write_text("stale", encoding="utf-8")
    monkeypatch.setattr("sys.stdin", _Terminal("n\n"))
    with patch.object(OpenAIAdapter, "default_transport", return_value=_permanent_delete_script()):
        code = main(["run", "clean up", "--root", str(workspace), "--format", "json"])
    captured = capsys.readouterr()
    assert code == 0
    assert (workspace / "old.log").exists()
    assert "Allow? [y/N]" in captured.err
    assert json.loads(captured.out)["tool_calls"][0]["error"] == "User declined: Permanent deletion cannot be undone"
