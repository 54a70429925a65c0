"""Content and name search under the allowed roots."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import re
from pathlib import Path

from agent_runtime.errors import ToolArgumentError
from agent_runtime.models import Capability, ToolDescriptor
from agent_runtime.path_guard import Allowed
from agent_runtime.tools.base import SKIP_DIR_NAMES, looks_binary, make_tool
from agent_runtime.tools.context import ToolContext

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 200
MAX_FIND_RESULTS = 100
MAX_FIND_DEPTH = 20
MAX_SEARCH_FILE_SIZE = 2 * 1024 * 1024


def _iter_files(base: Path, max_depth: int | None = None):
    """Yield (path, is_dir) under *base*, skipping hidden and bulky directories."""
    base_depth = len(base.parts)
    for dirpath, dirnames, filenames in os.walk(base):
        current = Path(dirpath)
        depth = len(current.parts) - base_depth
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIR_NAMES and not d.startswith("."))
        for d in dirnames:
            yield current / d, True
        if max_depth is not None and depth + 1 >= max_depth:
            dirnames[:] = []
        for name in sorted(filenames):
            yield current / name, False


async def search_files(
    ctx: ToolContext,
    query: str,
    path: str = ".",
    regex: bool = False,
    case_sensitive: bool = False,
    file_pattern: str | None = None,
    max_results: int = 50,
) -> str:
    """Search file contents for text (or a regex) and report file:line matches."""
    base = ctx.guard.require_path(path)
    flags = 0 if case_sensitive else re.IGNORECASE
    try:
        matcher = re.compile(query if regex else re.escape(query), flags)
    except re.error as exc:
        raise ToolArgumentError(f"Invalid regex {query!r}: {exc}") from exc
    limit = min(max_results, MAX_SEARCH_RESULTS)

    def _search() -> str:
        if base.is_file():
            candidates = [base]
            display_root = base.parent
        else:
            candidates = (p for p, is_dir in _iter_files(base) if not is_dir)
            display_root = base
        hits: list[str] = []
        for file_path in candidates:
            if file_pattern and not fnmatch.fnmatch(file_path.name, file_pattern):
                continue
            if not isinstance(ctx.guard.check_any(file_path), Allowed):
                logger.debug("Skipping %s: resolves outside the allowed roots", file_path)
                continue
            try:
                if file_path.stat().st_size > MAX_SEARCH_FILE_SIZE:
                    continue
                data = file_path.read_bytes()
            except OSError as exc:
                logger.debug("Skipping unreadable %s: %s", file_path, exc)
                continue
            if looks_binary(data):
                continue
            for lineno, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), 1):
                if matcher.search(line):
                    hits.append(f"{file_path.relative_to(display_root)}:{lineno}: {line.strip()[:200]}")
                    if len(hits) >= limit:
                        hits.append(f"... [stopped after {limit} matches]")
                        return "\n".join(hits)
        return "\n".join(hits) if hits else f"No matches for {query!r}"

    return await asyncio.to_thread(_search)


async def find_files(
    ctx: ToolContext,
    pattern: str,
    path: str = ".",
    type: str = "all",
    max_depth: int = 10,
    max_results: int = 50,
) -> str:
    """Find files or directories whose name matches a glob pattern.

    When a file index is configured it is consulted first; the filesystem is
    walked only if the index has no hits.
    """
    base = ctx.guard.require_path(path)
    limit = min(max_results, MAX_FIND_RESULTS)
    depth = min(max_depth, MAX_FIND_DEPTH)

    if ctx.file_index is not None:
        indexed = await ctx.file_index.search(pattern)
        allowed: list[str] = []
        for raw in indexed:
            verdict = ctx.guard.check_any(raw)
            if isinstance(verdict, Allowed) and verdict.path is not None and verdict.path.is_relative_to(base):
                allowed.append(str(verdict.path))
        if allowed:
            return "\n".join(allowed[:limit])
        logger.debug("File index had no hits for %r; walking %s", pattern, base)

    def _find() -> str:
        found: list[str] = []
        for candidate, is_dir in _iter_files(base, depth):
            if type == "file" and is_dir or type == "directory" and not is_dir:
                continue
            if not fnmatch.fnmatch(candidate.name, pattern):
                continue
            if not isinstance(ctx.guard.check_any(candidate), Allowed):
                continue
            rel = candidate.relative_to(base)
            found.append(f"{rel}/" if is_dir else str(rel))
            if len(found) >= limit:
                found.append(f"... [stopped after {limit} results]")
                break
        return "\n".join(found) if found else f"No files matching {pattern!r}"

    return await asyncio.to_thread(_find)


def search_tools() -> list[ToolDescriptor]:
    read = Capability.FILESYSTEM_READ
    return [
        make_tool(search_files, read, {
            "query": {"type": "string", "minLength": 1},
            "path": {"type": "string"},
            "regex": {"type": "boolean"},
            "case_sensitive": {"type": "boolean"},
            "file_pattern": {"type": "string", "description": "Glob on file names, e.g. *.py"},
            "max_results": {"type": "integer", "minimum": 1},
        }, ["query"]),
        make_tool(find_files, read, {
            "pattern": {"type": "string", "minLength": 1, "description": "Glob on names, e.g. *.md"},
            "path": {"type": "string"},
            "type": {"type": "string", "enum": ["all", "file", "directory"]},
            "max_depth": {"type": "integer", "minimum": 1},
            "max_results": {"type": "integer", "minimum": 1},
        }, ["pattern"]),
    ]
