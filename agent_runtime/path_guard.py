"""Security gate between model-generated intent and host-system effects.

Every filesystem and shell tool handler goes through ``PathGuard`` before it
touches the host. Denials are values (``Denied``), never exceptions, so the
dispatcher can hand them back to the model as ordinary tool errors.
``require_path``/``require_command`` are the raising variants handlers use;
they raise ``ToolDenied`` which the dispatcher maps to ``ValidationDenied``.
Risky but permitted commands come back as ``RequiresConfirmation``; the
handler then asks the user through ``ToolContext.require_confirmation``.
"""

from __future__ import annotations

import enum
import logging
import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

from agent_runtime.config import AgentSettings
from agent_runtime.errors import ToolDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allowed:
    path: Path | None = None


@dataclass(frozen=True)
class Denied:
    reason: str
    subject: str = ""


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RequiresConfirmation:
    """Permitted only if the user approves; handlers ask via ``ToolContext.require_confirmation``."""

    reason: str
    subject: str = ""
    risk: RiskLevel = RiskLevel.MEDIUM


GuardResult = Union[Allowed, Denied, RequiresConfirmation]


DEFAULT_DENYLIST: frozenset[str] = frozenset({
    "rm", "rmdir",
    "dd",
    "mkfs", "format",
    "reboot", "shutdown", "poweroff", "halt",
    "su", "sudo", "doas",
    "mount", "umount",
    "insmod", "rmmod", "modprobe",
    "iptables", "ip6tables",
    "init", "systemctl",
    "setenforce",
})
"""Executables refused regardless of arguments."""

_WRAPPER_COMMANDS = frozenset({
    "env", "nohup", "nice", "time", "command", "exec", "xargs", "timeout", "busybox", "toybox", "stdbuf",
})
"""Commands that run their argument as another command."""

_WRAPPER_VALUE_OPTIONS: dict[str, frozenset[str]] = {
    "env": frozenset({"-u", "--unset", "-C", "--chdir", "-S", "--split-string"}),
    "timeout": frozenset({"-s", "--signal", "-k", "--kill-after"}),
    "nice": frozenset({"-n", "--adjustment"}),
    "stdbuf": frozenset({"-i", "-o", "-e", "--input", "--output", "--error"}),
    "xargs": frozenset({
        "-a", "-d", "-E", "-I", "-L", "-n", "-P", "-s",
        "--arg-file", "--delimiter", "--eof", "--replace", "--max-lines",
        "--max-args", "--max-procs", "--max-chars", "--process-slot-var",
    }),
    "time": frozenset({"-f", "--format", "-o", "--output"}),
    "exec": frozenset({"-a"}),
}
"""Wrapper options whose value is the next word, not the wrapped command."""

_SPLIT_STRING_OPTIONS = frozenset({"-S", "--split-string"})
"""env options whose value is itself a command line."""

_SHELLS = frozenset({"sh", "bash", "zsh", "dash", "ksh", "fish"})

_CHAIN_TOKENS = frozenset({";", ";;", "&", "&&", "|", "||", "|&", "(", ")"})

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

_SUBSTITUTIONS = (
    re.compile(r"`([^`]*)`"),
    re.compile(r"\$\(([^)]*)\)"),
)

_DANGEROUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"-[a-zA-Z]*r[a-zA-Z]*f[a-zA-Z]*\s+/(\s|$)"),
    re.compile(r"--no-preserve-root"),
    re.compile(r">\s*/dev/(sd|hd|nvme|mmcblk)"),
    re.compile(r"\|\s*(sh|bash)\b"),
    re.compile(r"chmod\s+(-\w+\s+)*777"),
    re.compile(r"chmod\s+(-\w+\s+)*\+s"),
)
"""Refused even when raw shell is granted."""

_COMMAND_START = r"(?:^|[\s;&|(`/])"

_CONFIRM_PATTERNS: tuple[tuple[re.Pattern[str], str, RiskLevel], ...] = (
    (re.compile(r"\bgit\s+push\b"), "Git push will modify a remote repository", RiskLevel.MEDIUM),
    (re.compile(r"\bgit\s+reset\s+(\S+\s+)*--hard\b"), "Git reset --hard will discard uncommitted changes", RiskLevel.HIGH),
    (re.compile(r"\bgit\s+clean\s+(\S+\s+)*-\w*f"), "Git clean will delete untracked files", RiskLevel.HIGH),
    (re.compile(_COMMAND_START + r"(chmod|chown|chgrp)\s"), "Changing file permissions or ownership", RiskLevel.HIGH),
    (re.compile(_COMMAND_START + r"(kill|pkill|killall)\s"), "Signalling other processes", RiskLevel.HIGH),
    (re.compile(_COMMAND_START + r"(curl|wget)\s"), "Network request to an external URL", RiskLevel.MEDIUM),
)
"""Permitted only after the user confirms."""


class PathGuard:
    """Decides whether a path or shell command is permitted."""

    def __init__(
        self,
        roots: Iterable[str | Path] = (),
        *,
        denylist: Iterable[str] = DEFAULT_DENYLIST,
        blocked_patterns: Iterable[str] = (),
        raw_shell: bool = False,
    ) -> None:
        self.roots: tuple[Path, ...] = tuple(Path(r).expanduser().resolve() for r in roots)
        self.denylist = frozenset(denylist)
        self.raw_shell = raw_shell
        self._blocked: list[re.Pattern[str]] = []
        for pattern in blocked_patterns:
            try:
                self._blocked.append(re.compile(pattern))
            except re.error as exc:
                raise ValueError(f"Invalid blocked command pattern {pattern!r}: {exc}") from exc

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> "PathGuard":
        return cls(
            settings.allowed_roots,
            blocked_patterns=settings.blocked_command_patterns,
            raw_shell=settings.raw_shell,
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def check(self, path: str | os.PathLike[str], intended_root: str | os.PathLike[str]) -> GuardResult:
        """Allow *path* only if its resolved form lies inside *intended_root*.

        Relative paths are taken relative to the root. Symlinks are resolved
        before the containment test, so links pointing outside are refused.
        """
        raw = os.fspath(path) if path is not None else ""
        if not raw or not raw.strip():
            return Denied("Empty path", raw)
        if "\x00" in raw:
            return Denied("Path contains a NUL byte", raw)
        try:
            root = Path(intended_root).expanduser().resolve()
            candidate = Path(raw).expanduser()
            if not candidate.is_absolute():
                candidate = root / candidate
            resolved = candidate.resolve(strict=False)
        except (OSError, RuntimeError, ValueError) as exc:
            return Denied(f"Cannot resolve path: {exc}", raw)
        if resolved == root or resolved.is_relative_to(root):
            return Allowed(resolved)
        return Denied(f"Path is outside the allowed root {root}", raw)

    def check_any(
        self,
        path: str | os.PathLike[str],
        roots: Iterable[str | os.PathLike[str]] | None = None,
    ) -> GuardResult:
        """Like ``check`` against several roots (default: the configured ones); first match wins."""
        roots = self.roots if roots is None else tuple(Path(r).expanduser().resolve() for r in roots)
        if not roots:
            return Denied("No allowed filesystem root is configured", os.fspath(path) if path else "")
        denied: Denied | None = None
        for root in roots:
            result = self.check(path, root)
            if isinstance(result, Allowed):
                return result
            denied = denied or result
        assert denied is not None
        if len(roots) > 1 and denied.reason.startswith("Path is outside"):
            return Denied(
                "Path is outside the allowed roots " + ", ".join(str(r) for r in roots),
                denied.subject,
            )
        return denied

    def require_path(self, path: str | os.PathLike[str] | None) -> Path:
        result = self.check_any(path or "")
        if isinstance(result, Denied):
            logger.warning("PathGuard denied path %r: %s", result.subject, result.reason)
            raise ToolDenied(f"{result.reason}: {result.subject}" if result.subject else result.reason)
        assert result.path is not None
        return result.path

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def check_command(self, command_line: str, raw_shell: bool | None = None) -> GuardResult:
        raw_shell = self.raw_shell if raw_shell is None else raw_shell
        command = (command_line or "").strip()
        if not command:
            return Denied("Empty command", command_line or "")

        for pattern in _DANGEROUS_PATTERNS:
            if pattern.search(command):
                return Denied(f"Command contains dangerous pattern: {pattern.pattern}", command)

        for pattern in self._blocked:
            if pattern.search(command):
                return Denied(f"Command matches blocked pattern: {pattern.pattern}", command)

        has_substitution = any(p.search(command) for p in _SUBSTITUTIONS)
        try:
            tokens = _tokenize(command)
        except ValueError as exc:
            return Denied(f"Cannot parse command: {exc}", command)

        chained = has_substitution or "\n" in command or any(t in _CHAIN_TOKENS for t in tokens)
        if chained and not raw_shell:
            return Denied(
                "Command chaining, pipes and substitution (;, &&, ||, |, `...`, $(...)) "
                "require the raw shell capability",
                command,
            )

        for segment in _segments(tokens):
            denied = self._check_segment(segment, raw_shell)
            if denied is not None:
                return Denied(denied, command)

        for pattern in _SUBSTITUTIONS:
            for inner in pattern.findall(command):
                nested = self.check_command(inner, raw_shell=raw_shell)
                if isinstance(nested, Denied) and inner.strip():
                    return Denied(nested.reason, command)

        for pattern, reason, risk in _CONFIRM_PATTERNS:
            if pattern.search(command):
                return RequiresConfirmation(reason, command, risk)

        return Allowed()

    def require_command(self, command_line: str) -> str:
        """Raise ToolDenied for a denied command; commands needing confirmation pass."""
        result = self.check_command(command_line)
        if isinstance(result, Denied):
            logger.warning("PathGuard denied command %r: %s", result.subject, result.reason)
            raise ToolDenied(result.reason)
        return command_line.strip()

    def _check_segment(self, segment: list[str], raw_shell: bool) -> str | None:
        # Skip leading VAR=value assignments
        i = 0
        while i < len(segment) and _ENV_ASSIGNMENT.match(segment[i]):
            i += 1
        words = segment[i:]
        while words:
            executable = os.path.basename(words[0])
            if executable in self.denylist:
                return f"Command '{executable}' is blocked for safety"
            if executable in _SHELLS:
                if not raw_shell:
                    return f"Nested shell '{executable}' requires the raw shell capability"
                if "-c" in words:
                    idx = words.index("-c")
                    if idx + 1 < len(words):
                        nested = self.check_command(words[idx + 1], raw_shell=True)
                        if isinstance(nested, Denied):
                            return nested.reason
                return None
            if executable not in _WRAPPER_COMMANDS:
                return None
            words, denied = self._skip_wrapper(executable, words[1:], raw_shell)
            if denied is not None:
                return denied
        return None

    def _skip_wrapper(self, wrapper: str, words: list[str], raw_shell: bool) -> tuple[list[str], str | None]:
        """Drop a wrapper's options, option values and env assignments; return the wrapped words."""
        value_options = _WRAPPER_VALUE_OPTIONS.get(wrapper, frozenset())
        while words:
            word = words[0]
            if word == "--":
                return words[1:], None
            option, _sep, attached = word.partition("=")
            if wrapper == "env" and (option in _SPLIT_STRING_OPTIONS or word.startswith("-S")):
                if option in _SPLIT_STRING_OPTIONS and not _sep:
                    inner, words = (words[1] if len(words) > 1 else ""), words[2:]
                else:
                    inner, words = (attached if _sep else word[2:]), words[1:]
                nested = self.check_command(inner, raw_shell=raw_shell) if inner.strip() else None
                if isinstance(nested, Denied):
                    return [], nested.reason
                continue
            if word in value_options:
                words = words[2:]
                continue
            if word.startswith("-") or _ENV_ASSIGNMENT.match(word) or _is_number(word):
                words = words[1:]
                continue
            break
        return words, None


def _tokenize(command: str) -> list[str]:
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    return list(lexer)


def _segments(tokens: list[str]) -> list[list[str]]:
    """Split a token stream at chaining operators; redirects stay in their segment."""
    segments: list[list[str]] = [[]]
    for token in tokens:
        if token in _CHAIN_TOKENS:
            segments.append([])
        else:
            segments[-1].append(token)
    return [s for s in segments if s]


def _is_number(word: str) -> bool:
    try:
        float(word.rstrip("smhd"))
    except ValueError:
        return False
    return True
