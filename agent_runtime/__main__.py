"""Command-line entry point for agent_runtime.

Usage:
    python -m agent_runtime run "list the python files"               # uses AGENT_RUNTIME_* env
    python -m agent_runtime run "fix the typo in README.md" --root .   # sandbox root
    python -m agent_runtime run "..." --provider anthropic --model claude-sonnet-4-5
    python -m agent_runtime run "..." --config agent.yaml --format json
    python -m agent_runtime run "..." --raw-shell --max-iterations 20
    python -m agent_runtime run "clean up build output" --yes             # approve destructive steps

    python -m agent_runtime tools                                      # list the registry
    python -m agent_runtime tools --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from agent_runtime.agent_loop import AgentEvent, EventKind
from agent_runtime.config import ENV_PREFIX, AgentSettings, ProviderKind
from agent_runtime.interfaces import FileMemoryStore, InMemoryReminderScheduler
from agent_runtime.runtime import open_runtime
from agent_runtime.tools.context import ConfirmationRequest, ConfirmCallback

LOG_LEVEL_ENV = f"{ENV_PREFIX}LOG_LEVEL"


def _settings_from_args(args: argparse.Namespace) -> AgentSettings:
    base = AgentSettings.from_yaml(args.config) if args.config else None
    settings = AgentSettings.from_env(base)
    changes: dict[str, Any] = {}
    if args.provider:
        changes["provider"] = ProviderKind(args.provider)
    if args.model:
        changes["model"] = args.model
    if args.root:
        changes["allowed_roots"] = tuple(Path(r) for r in args.root)
    if getattr(args, "max_iterations", None):
        changes["max_loop_iterations"] = args.max_iterations
    if getattr(args, "raw_shell", False):
        changes["raw_shell"] = True
    if not settings.allowed_roots and "allowed_roots" not in changes:
        changes["allowed_roots"] = (Path.cwd(),)
    return settings.with_overrides(**changes) if changes else settings


def _collaborators(settings: AgentSettings) -> dict[str, Any]:
    return {
        "reminders": InMemoryReminderScheduler(),
        "memory": FileMemoryStore(settings.primary_root / ".agent_memory"),
    }


def _confirm_callback(args: argparse.Namespace) -> ConfirmCallback | None:
    """Approve everything with --yes, else ask on an interactive stdin; None refuses."""
    if args.yes:
        async def approve(request: ConfirmationRequest) -> bool:
            print(f"[approved] {request.tool}: {request.reason}", file=sys.stderr)
            return True

        return approve
    if not sys.stdin.isatty():
        return None
    lock = asyncio.Lock()

    async def ask(request: ConfirmationRequest) -> bool:
        async with lock:
            print(
                f"{request.tool} wants to proceed ({request.risk.value} risk): {request.reason}\n"
                f"  {request.details}\nAllow? [y/N] ",
                end="",
                file=sys.stderr,
                flush=True,
            )
            answer = await asyncio.to_thread(sys.stdin.readline)
        return answer.strip().lower() in {"y", "yes"}

    return ask


def _print_event(event: AgentEvent) -> None:
    if event.kind is EventKind.TOOL_CALL_START:
        print(f"[{event.iteration}] -> {event.data['tool']}", file=sys.stderr)
    elif event.kind is EventKind.TOOL_CALL_RESULT:
        status = "error" if event.data.get("is_error") else "ok"
        print(f"[{event.iteration}] <- {event.data['tool']} ({status})", file=sys.stderr)
    elif event.kind is EventKind.ERROR:
        print(f"[{event.iteration}] FAILED {event.data['kind']}: {event.data['message']}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _run(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    async with open_runtime(settings, confirm=_confirm_callback(args), **_collaborators(settings)) as runtime:
        on_event = _print_event if args.verbose else None
        result = await runtime.run(args.prompt, on_event=on_event)

    if args.format == "json":
        print(json.dumps(result.to_dict(), indent=2, default=str))
    elif result.succeeded:
        print(result.final_text or "")
    else:
        kind = result.failure_kind.value if result.failure_kind else "unknown"
        print(f"Run failed ({kind}): {result.failure}", file=sys.stderr)
    return 0 if result.succeeded else 1


async def _tools(args: argparse.Namespace) -> int:
    settings = _settings_from_args(args)
    async with open_runtime(settings, **_collaborators(settings)) as runtime:
        summary = runtime.registry.summary()
        shadowed = [{"name": d.name, "source": d.source} for d in runtime.registry.shadowed]

    if args.format == "json":
        print(json.dumps({"tools": summary, "shadowed": shadowed}, indent=2))
        return 0
    width = max((len(t["name"]) for t in summary), default=4)
    print(f"{'Tool':<{width}}  {'Capability':<16}  Source")
    print("-" * (width + 30))
    for tool in summary:
        print(f"{tool['name']:<{width}}  {tool['capability']:<16}  {tool['source']}")
    for entry in shadowed:
        print(f"(shadowed) {entry['name']} from {entry['source']}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args))


def cmd_tools(args: argparse.Namespace) -> int:
    return asyncio.run(_tools(args))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="YAML settings file (MCP servers, roots, limits)")
    p.add_argument("--provider", choices=[k.value for k in ProviderKind], help="Provider wire format")
    p.add_argument("--model", help="Model id (default depends on provider)")
    p.add_argument("--root", action="append", help="Allowed filesystem root (repeatable, default: cwd)")
    p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="agent_runtime",
        description="Agentic tool-execution runtime",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV, "WARNING"),
        help=f"Logging level (default: ${LOG_LEVEL_ENV} or WARNING)",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # run
    run_p = sub.add_parser("run", help="Run one agent turn for a prompt")
    run_p.add_argument("prompt", help="User message")
    _add_common(run_p)
    run_p.add_argument("--max-iterations", type=int, help="Max model round trips")
    run_p.add_argument("--raw-shell", action="store_true", help="Allow shell chaining and redirection")
    run_p.add_argument("-v", "--verbose", action="store_true", help="Print tool activity to stderr")
    run_p.add_argument(
        "-y", "--yes", action="store_true", help="Approve destructive operations without asking"
    )

    # tools
    tools_p = sub.add_parser("tools", help="List the tools a run would see")
    _add_common(tools_p)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "run":
        return cmd_run(args)
    if args.command == "tools":
        return cmd_tools(args)
    return 1


if __name__ == "__main__":
    sys.exit(main())
