"""run_shell: execute a PathGuard-approved command in a subprocess.

Without the raw shell capability the command line is split with ``shlex``
and executed directly, so no shell interprets it. With raw shell it runs
under ``/bin/sh -c``. The process is killed on timeout and on cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex

from agent_runtime.errors import ToolArgumentError
from agent_runtime.models import Capability, ToolDescriptor
from agent_runtime.tools.base import make_tool
from agent_runtime.tools.context import ToolContext

logger = logging.getLogger(__name__)

MAX_TIMEOUT_S = 300.0
MIN_TIMEOUT_S = 1.0
MAX_OUTPUT_SIZE = 1024 * 1024


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def run_shell(
    ctx: ToolContext,
    command: str,
    working_dir: str | None = None,
    timeout_s: float | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Run a shell command inside the workspace and return its exit code and output.

    Dangerous executables are blocked. Pipes, chaining and substitution need
    the raw shell capability. Risky commands (git push, chmod, kill, curl and
    similar) run only after the user confirms.
    """
    command = await ctx.authorize_command("run_shell", command)
    cwd = ctx.guard.require_path(working_dir) if working_dir else ctx.workspace
    if not cwd.is_dir():
        raise NotADirectoryError(f"Working directory does not exist: {cwd}")
    timeout = min(max(timeout_s or ctx.settings.shell_timeout_s, MIN_TIMEOUT_S), MAX_TIMEOUT_S)

    proc_env = dict(os.environ)
    if env:
        proc_env.update({str(k): str(v) for k, v in env.items()})

    if ctx.guard.raw_shell:
        argv = ["/bin/sh", "-c", command]
    else:
        try:
            argv = shlex.split(command)
        except ValueError as exc:
            raise ToolArgumentError(f"Cannot parse command: {exc}") from exc

    logger.info("run_shell: %s (cwd=%s, timeout=%.0fs)", command, cwd, timeout)
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        env=proc_env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        raise TimeoutError(f"Command timed out after {timeout:.0f}s: {command}") from None
    finally:
        # Covers cancellation of the awaiting task as well
        await _terminate(proc)

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    if len(output) > MAX_OUTPUT_SIZE:
        output = output[:MAX_OUTPUT_SIZE] + f"\n... [output truncated, exceeded {MAX_OUTPUT_SIZE // 1024}KB]"
    return f"Exit code: {proc.returncode}\n{output}".rstrip("\n")


def shell_tools() -> list[ToolDescriptor]:
    return [
        make_tool(run_shell, Capability.SHELL_EXEC, {
            "command": {"type": "string", "minLength": 1},
            "working_dir": {"type": "string", "description": "Directory inside the workspace."},
            "timeout_s": {"type": "number", "minimum": 1, "maximum": MAX_TIMEOUT_S},
            "env": {"type": "object", "additionalProperties": {"type": "string"}},
        }, ["command"]),
    ]
