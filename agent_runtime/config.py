"""Typed runtime configuration for agent_runtime.

``AgentSettings`` is resolved once by the caller and passed explicitly into
every AgentLoop/SubagentSpawner invocation. It is frozen: a run never mutates
it, and there is no module-level settings singleton.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from agent_runtime.models import Capability

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENT_RUNTIME_"

PROVIDER_ENV = f"{ENV_PREFIX}PROVIDER"
MODEL_ENV = f"{ENV_PREFIX}MODEL"
API_KEY_ENV = f"{ENV_PREFIX}API_KEY"
API_BASE_ENV = f"{ENV_PREFIX}API_BASE"
ROOTS_ENV = f"{ENV_PREFIX}ROOTS"
MAX_ITERATIONS_ENV = f"{ENV_PREFIX}MAX_ITERATIONS"
MAX_DEPTH_ENV = f"{ENV_PREFIX}MAX_DEPTH"
RAW_SHELL_ENV = f"{ENV_PREFIX}RAW_SHELL"
PARALLEL_TOOLS_ENV = f"{ENV_PREFIX}PARALLEL_TOOLS"
CONFIG_FILE_ENV = f"{ENV_PREFIX}CONFIG"

DEFAULT_MAX_LOOP_ITERATIONS: int = 10
"""Model round trips allowed per run before failing with IterationLimitExceeded."""

DEFAULT_MAX_RECURSION_DEPTH: int = 1
"""Nested sub-agent levels allowed below the top-level loop."""

DEFAULT_TOOL_RESULT_MAX_LENGTH: int = 50_000
"""Maximum character length for a single tool result. Longer results are truncated."""

DEFAULT_SHELL_TIMEOUT_S: float = 30.0
DEFAULT_MCP_INIT_TIMEOUT: float = 30.0


class ProviderKind(str, enum.Enum):
    """Closed set of supported wire formats."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GEMINI = "gemini"


_VENDOR_KEY_ENVS: dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    ProviderKind.OPENAI: ("OPENAI_API_KEY",),
    ProviderKind.GEMINI: ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}

DEFAULT_MODELS: dict[ProviderKind, str] = {
    ProviderKind.ANTHROPIC: "claude-sonnet-4-5",
    ProviderKind.OPENAI: "gpt-4o",
    ProviderKind.GEMINI: "gemini-2.5-flash",
}

ALL_CAPABILITIES: frozenset[Capability] = frozenset(Capability)


@dataclass(frozen=True)
class McpServerConfig:
    """How to reach one MCP server: stdio subprocess (command) or HTTP (url)."""

    name: str
    command: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    enabled: bool = True
    init_timeout: float = DEFAULT_MCP_INIT_TIMEOUT

    @property
    def endpoint(self) -> str:
        if self.url:
            return self.url
        return " ".join([self.command or "", *self.args]).strip()

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, Any]) -> "McpServerConfig":
        if not raw.get("command") and not raw.get("url"):
            raise ValueError(f"MCP server {name!r} needs either 'command' or 'url'")
        return cls(
            name=name,
            command=raw.get("command"),
            args=tuple(str(a) for a in raw.get("args") or ()),
            env=dict(raw["env"]) if raw.get("env") else None,
            cwd=raw.get("cwd"),
            url=raw.get("url"),
            headers=dict(raw.get("headers") or {}),
            enabled=bool(raw.get("enabled", True)),
            init_timeout=float(raw.get("init_timeout", DEFAULT_MCP_INIT_TIMEOUT)),
        )


@dataclass(frozen=True)
class AgentSettings:
    """Everything a run needs to know, resolved once and passed explicitly."""

    provider: ProviderKind = ProviderKind.OPENAI
    model: str = ""
    api_key: str = field(default="", repr=False)
    api_base: str | None = None
    max_loop_iterations: int = DEFAULT_MAX_LOOP_ITERATIONS
    max_recursion_depth: int = DEFAULT_MAX_RECURSION_DEPTH
    allowed_roots: tuple[Path, ...] = ()
    blocked_command_patterns: tuple[str, ...] = ()
    raw_shell: bool = False
    capabilities: frozenset[Capability] = ALL_CAPABILITIES
    max_output_tokens: int = 8192
    temperature: float = 0.7
    provider_max_retries: int = 2
    provider_base_delay: float = 1.0
    provider_max_delay: float = 30.0
    parallel_tools: bool = True
    tool_result_max_length: int = DEFAULT_TOOL_RESULT_MAX_LENGTH
    shell_timeout_s: float = DEFAULT_SHELL_TIMEOUT_S
    mcp_servers: tuple[McpServerConfig, ...] = ()
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        if self.max_loop_iterations < 1:
            raise ValueError("max_loop_iterations must be >= 1")
        if self.max_recursion_depth < 0:
            raise ValueError("max_recursion_depth must be >= 0")
        roots = tuple(Path(r).expanduser().resolve() for r in self.allowed_roots)
        object.__setattr__(self, "allowed_roots", roots)
        object.__setattr__(self, "provider", ProviderKind(self.provider))
        object.__setattr__(self, "capabilities", frozenset(Capability(c) for c in self.capabilities))

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    @property
    def primary_root(self) -> Path:
        if not self.allowed_roots:
            raise ValueError("No allowed filesystem root configured")
        return self.allowed_roots[0]

    def resolved_api_key(self) -> str:
        """Explicit key, else the vendor's conventional environment variable."""
        if self.api_key:
            return self.api_key
        for env_name in _VENDOR_KEY_ENVS[self.provider]:
            value = os.environ.get(env_name, "").strip()
            if value:
                return value
        return ""

    def with_overrides(self, **changes: Any) -> "AgentSettings":
        return dataclasses.replace(self, **changes)

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "AgentSettings":
        """Build settings from a plain mapping (parsed YAML/JSON)."""
        kwargs: dict[str, Any] = {}
        simple = {f.name for f in dataclasses.fields(cls)} - {
            "allowed_roots",
            "blocked_command_patterns",
            "capabilities",
            "mcp_servers",
            "provider",
        }
        for key, value in raw.items():
            if key in simple:
                kwargs[key] = value
            elif key not in {"allowed_roots", "blocked_command_patterns", "capabilities", "mcp_servers", "provider"}:
                logger.warning("Ignoring unknown settings key %r", key)
        if "provider" in raw:
            kwargs["provider"] = ProviderKind(str(raw["provider"]).strip().lower())
        if "allowed_roots" in raw:
            kwargs["allowed_roots"] = tuple(Path(str(p)) for p in raw["allowed_roots"] or ())
        if "blocked_command_patterns" in raw:
            kwargs["blocked_command_patterns"] = tuple(str(p) for p in raw["blocked_command_patterns"] or ())
        if "capabilities" in raw:
            kwargs["capabilities"] = frozenset(Capability(c) for c in raw["capabilities"] or ())
        servers = raw.get("mcp_servers") or {}
        if isinstance(servers, Mapping):
            kwargs["mcp_servers"] = tuple(
                McpServerConfig.from_mapping(name, cfg) for name, cfg in servers.items()
            )
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AgentSettings":
        p = Path(path).expanduser()
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Settings file {p} must contain a mapping, got {type(data).__name__}")
        return cls.from_mapping(data)

    @classmethod
    def from_env(cls, base: "AgentSettings | None" = None) -> "AgentSettings":
        """Overlay ``AGENT_RUNTIME_*`` environment variables on *base*.

        *base* defaults to the YAML file named by ``AGENT_RUNTIME_CONFIG`` when
        set, else to plain defaults. Invalid values log a warning and keep the
        base value.
        """
        if base is None:
            config_file = os.environ.get(CONFIG_FILE_ENV, "").strip()
            base = cls.from_yaml(config_file) if config_file else cls()

        changes: dict[str, Any] = {}

        provider_raw = os.environ.get(PROVIDER_ENV, "").strip().lower()
        if provider_raw:
            try:
                changes["provider"] = ProviderKind(provider_raw)
            except ValueError:
                logger.warning(
                    "Invalid %s=%r; expected one of %s. Keeping %s.",
                    PROVIDER_ENV,
                    provider_raw,
                    ", ".join(k.value for k in ProviderKind),
                    base.provider.value,
                )

        for env_name, attr in ((MODEL_ENV, "model"), (API_KEY_ENV, "api_key"), (API_BASE_ENV, "api_base")):
            value = os.environ.get(env_name, "").strip()
            if value:
                changes[attr] = value

        roots_raw = os.environ.get(ROOTS_ENV, "").strip()
        if roots_raw:
            changes["allowed_roots"] = tuple(Path(p) for p in roots_raw.split(os.pathsep) if p.strip())

        for env_name, attr in ((MAX_ITERATIONS_ENV, "max_loop_iterations"), (MAX_DEPTH_ENV, "max_recursion_depth")):
            value = os.environ.get(env_name, "").strip()
            if not value:
                continue
            try:
                changes[attr] = int(value)
            except ValueError:
                logger.warning("Invalid %s=%r; expected an integer. Keeping %s.", env_name, value, getattr(base, attr))

        for env_name, attr in ((RAW_SHELL_ENV, "raw_shell"), (PARALLEL_TOOLS_ENV, "parallel_tools")):
            value = os.environ.get(env_name, "").strip().lower()
            if not value:
                continue
            if value in {"1", "true", "yes", "on"}:
                changes[attr] = True
            elif value in {"0", "false", "no", "off"}:
                changes[attr] = False
            else:
                logger.warning("Invalid %s=%r; expected on/off boolean. Keeping %s.", env_name, value, getattr(base, attr))

        return base.with_overrides(**changes) if changes else base
