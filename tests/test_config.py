"""Tests for agent_runtime.config: defaults, loaders and environment overlays."""

from __future__ import annotations

import logging
import os

import pytest

from agent_runtime.config import (
    DEFAULT_MAX_LOOP_ITERATIONS,
    DEFAULT_MAX_RECURSION_DEPTH,
    AgentSettings,
    McpServerConfig,
    ProviderKind,
)
from agent_runtime.models import Capability


class TestDefaults:
    def test_defaults(self):
        s = AgentSettings()
        assert s.provider is ProviderKind.OPENAI
        assert s.resolved_model == "gpt-4o"
        assert s.max_loop_iterations == DEFAULT_MAX_LOOP_ITERATIONS
        assert s.max_recursion_depth == DEFAULT_MAX_RECURSION_DEPTH
        assert s.capabilities == frozenset(Capability)
        assert s.parallel_tools is True
        assert s.raw_shell is False

    @pytest.mark.parametrize(
        "provider,model",
        [("anthropic", "claude-sonnet-4-5"), ("openai", "gpt-4o"), ("gemini", "gemini-2.5-flash")],
    )
    def test_default_models(self, provider, model):
        assert AgentSettings(provider=provider).resolved_model == model

    def test_explicit_model_wins(self):
        assert AgentSettings(model="gpt-4o-mini").resolved_model == "gpt-4o-mini"

    def test_roots_resolved(self, tmp_path):
        nested = tmp_path / "a" / ".." / "b"
        s = AgentSettings(allowed_roots=(str(nested),))
        assert s.allowed_roots == ((tmp_path / "b").resolve(),)
        assert s.primary_root == (tmp_path / "b").resolve()

    def test_no_root(self):
        with pytest.raises(ValueError, match="No allowed filesystem root"):
            AgentSettings().primary_root

    def test_capabilities_coerced(self):
        s = AgentSettings(capabilities=frozenset({"filesystem-read"}))
        assert s.capabilities == frozenset({Capability.FILESYSTEM_READ})

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"max_loop_iterations": 0}, "max_loop_iterations"),
            ({"max_recursion_depth": -1}, "max_recursion_depth"),
        ],
    )
    def test_validation(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            AgentSettings(**kwargs)

    def test_invalid_provider(self):
        with pytest.raises(ValueError):
            AgentSettings(provider="cohere")

    def test_frozen(self):
        s = AgentSettings()
        with pytest.raises(AttributeError):
            s.model = "x"  # type: ignore[misc]

    def test_with_overrides(self, tmp_path):
        s = AgentSettings(allowed_roots=(tmp_path,))
        t = s.with_overrides(raw_shell=True)
        assert t.raw_shell is True
        assert s.raw_shell is False
        assert t.allowed_roots == s.allowed_roots


# ---------------------------------------------------------------------------
# API key resolution
# ---------------------------------------------------------------------------


class TestApiKey:
    def test_explicit_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert AgentSettings(api_key="explicit").resolved_api_key() == "explicit"

    def test_vendor_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        assert AgentSettings(provider="anthropic").resolved_api_key() == "sk-ant"

    def test_gemini_falls_back_to_google_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        assert AgentSettings(provider="gemini").resolved_api_key() == "g-key"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert AgentSettings().resolved_api_key() == ""

    def test_key_not_in_repr(self):
        assert "secret" not in repr(AgentSettings(api_key="secret"))


# ---------------------------------------------------------------------------
# from_mapping / from_yaml
# ---------------------------------------------------------------------------


class TestMcpServerConfig:
    def test_stdio(self):
        cfg = McpServerConfig.from_mapping("fs", {"command": "npx", "args": ["-y", "server", 3]})
        assert cfg.args == ("-y", "server", "3")
        assert cfg.endpoint == "npx -y server 3"
        assert cfg.enabled

    def test_http(self):
        cfg = McpServerConfig.from_mapping(
            "web", {"url": "http://localhost:8000/mcp", "headers": {"X-Key": "k"}, "init_timeout": 5}
        )
        assert cfg.endpoint == "http://localhost:8000/mcp"
        assert cfg.headers == {"X-Key": "k"}
        assert cfg.init_timeout == 5.0

    def test_needs_command_or_url(self):
        with pytest.raises(ValueError, match="either 'command' or 'url'"):
            McpServerConfig.from_mapping("broken", {"args": ["x"]})


class TestFromMapping:
    def test_full_mapping(self, tmp_path):
        s = AgentSettings.from_mapping(
            {
                "provider": " Anthropic ",
                "model": "claude-opus-4-1",
                "allowed_roots": [str(tmp_path)],
                "blocked_command_patterns": ["curl .*"],
                "capabilities": ["filesystem-read", "shell-exec"],
                "max_loop_iterations": 4,
                "mcp_servers": {"web": {"url": "http://localhost:1/mcp"}},
            }
        )
        assert s.provider is ProviderKind.ANTHROPIC
        assert s.model == "claude-opus-4-1"
        assert s.allowed_roots == (tmp_path.resolve(),)
        assert s.blocked_command_patterns == ("curl .*",)
        assert s.capabilities == frozenset({Capability.FILESYSTEM_READ, Capability.SHELL_EXEC})
        assert s.max_loop_iterations == 4
        assert [m.name for m in s.mcp_servers] == ["web"]

    def test_unknown_keys_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="agent_runtime.config"):
            s = AgentSettings.from_mapping({"temperature": 0.1, "colour": "blue"})
        assert s.temperature == 0.1
        assert "colour" in caplog.text

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text(
            "provider: gemini\n"
            "max_recursion_depth: 2\n"
            "mcp_servers:\n"
            "  files:\n"
            "    command: mcp-files\n"
            "    enabled: false\n",
            encoding="utf-8",
        )
        s = AgentSettings.from_yaml(path)
        assert s.provider is ProviderKind.GEMINI
        assert s.max_recursion_depth == 2
        assert s.mcp_servers[0].command == "mcp-files"
        assert s.mcp_servers[0].enabled is False

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert AgentSettings.from_yaml(path) == AgentSettings()

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="must contain a mapping"):
            AgentSettings.from_yaml(path)


# ---------------------------------------------------------------------------
# from_env
# ---------------------------------------------------------------------------


class TestFromEnv:
    def test_no_env_is_defaults(self):
        assert AgentSettings.from_env() == AgentSettings()

    def test_overlay(self, monkeypatch, tmp_path):
        a, b = tmp_path / "a", tmp_path / "b"
        monkeypatch.setenv("AGENT_RUNTIME_PROVIDER", "GEMINI")
        monkeypatch.setenv("AGENT_RUNTIME_MODEL", "gemini-2.5-pro")
        monkeypatch.setenv("AGENT_RUNTIME_ROOTS", f"{a}{os.pathsep}{b}")
        monkeypatch.setenv("AGENT_RUNTIME_MAX_ITERATIONS", "25")
        monkeypatch.setenv("AGENT_RUNTIME_RAW_SHELL", "yes")
        monkeypatch.setenv("AGENT_RUNTIME_PARALLEL_TOOLS", "off")
        s = AgentSettings.from_env()
        assert s.provider is ProviderKind.GEMINI
        assert s.model == "gemini-2.5-pro"
        assert s.allowed_roots == (a.resolve(), b.resolve())
        assert s.max_loop_iterations == 25
        assert s.raw_shell is True
        assert s.parallel_tools is False

    def test_invalid_values_keep_base(self, monkeypatch, caplog):
        monkeypatch.setenv("AGENT_RUNTIME_PROVIDER", "cohere")
        monkeypatch.setenv("AGENT_RUNTIME_MAX_DEPTH", "deep")
        monkeypatch.setenv("AGENT_RUNTIME_RAW_SHELL", "maybe")
        base = AgentSettings(provider="anthropic", max_recursion_depth=3)
        with caplog.at_level(logging.WARNING, logger="agent_runtime.config"):
            s = AgentSettings.from_env(base)
        assert s is base
        assert "AGENT_RUNTIME_PROVIDER" in caplog.text
        assert "AGENT_RUNTIME_MAX_DEPTH" in caplog.text
        assert "AGENT_RUNTIME_RAW_SHELL" in caplog.text

    def test_config_file_env(self, monkeypatch, tmp_path):
        path = tmp_path / "agent.yaml"
        path.write_text("max_loop_iterations: 7\n", encoding="utf-8")
        monkeypatch.setenv("AGENT_RUNTIME_CONFIG", str(path))
        monkeypatch.setenv("AGENT_RUNTIME_API_KEY", "k")
        s = AgentSettings.from_env()
        assert s.max_loop_iterations == 7
        assert s.api_key == "k"
