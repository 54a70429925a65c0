"""Filesystem tools: listing, reading, writing and reversible edits.

Every handler obtains its host path from ``ctx.guard.require_path`` first.
Blocking I/O runs in a worker thread via ``asyncio.to_thread``.

Writes keep up to ``MAX_BACKUPS`` prior versions of a file in a ``.backup``
directory next to it; ``undo_change`` restores the newest one. Deletes move
the target into ``.trash`` under its allowed root unless ``permanent`` is set.
Irreversible operations go through ``ctx.require_confirmation`` first.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import stat
from datetime import datetime
from pathlib import Path
from typing import Any

from agent_runtime.errors import ToolArgumentError, ToolDenied
from agent_runtime.models import Capability, ToolDescriptor
from agent_runtime.path_guard import Denied, RiskLevel
from agent_runtime.tools.base import SKIP_DIR_NAMES, looks_binary, make_tool
from agent_runtime.tools.context import ToolContext

logger = logging.getLogger(__name__)

DEFAULT_MAX_READ_SIZE = 1024 * 1024
ABSOLUTE_MAX_READ_SIZE = 10 * 1024 * 1024
MAX_EDIT_FILE_SIZE = 5 * 1024 * 1024
MAX_LIST_ENTRIES = 500
MAX_BATCH_FILES = 10
MAX_BATCH_LINES = 100
MAX_BACKUPS = 5
BACKUP_DIR_NAME = ".backup"
TRASH_DIR_NAME = ".trash"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _root_for(ctx: ToolContext, target: Path) -> Path:
    for root in ctx.guard.roots:
        if target == root or target.is_relative_to(root):
            return root
    raise ToolDenied(f"Path is outside the allowed roots: {target}")


def _display(ctx: ToolContext, target: Path) -> str:
    root = _root_for(ctx, target)
    rel = target.relative_to(root)
    return str(rel) if str(rel) != "." else "."


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_%f")


def _backups_for(target: Path) -> list[Path]:
    """Newest first."""
    backup_dir = target.parent / BACKUP_DIR_NAME
    if not backup_dir.is_dir():
        return []
    prefix = f"{target.name}.bak."
    return sorted((p for p in backup_dir.iterdir() if p.name.startswith(prefix)), key=lambda p: p.name, reverse=True)


def _create_backup(target: Path) -> Path:
    backup_dir = target.parent / BACKUP_DIR_NAME
    backup_dir.mkdir(exist_ok=True)
    backup = backup_dir / f"{target.name}.bak.{_timestamp()}"
    shutil.copy2(target, backup)
    for old in _backups_for(target)[MAX_BACKUPS:]:
        try:
            old.unlink()
        except OSError as exc:
            logger.warning("Could not prune backup %s: %s", old, exc)
    return backup


def _read_text(target: Path, max_size: int) -> str:
    if not target.exists():
        raise FileNotFoundError(f"File not found: {target}")
    if target.is_dir():
        raise IsADirectoryError(f"Is a directory, use list_files: {target}")
    with target.open("rb") as fh:
        data = fh.read(max_size + 1)
    if looks_binary(data):
        raise ToolArgumentError(f"Refusing to read binary file: {target.name}")
    if len(data) > max_size:
        raise ToolArgumentError(
            f"File is larger than {max_size} bytes; pass start_line/end_line or a larger max_size"
        )
    return data.decode("utf-8", errors="replace")


def _slice_lines(text: str, start_line: int | None, end_line: int | None) -> str:
    if start_line is None and end_line is None:
        return text
    lines = text.splitlines(keepends=True)
    start = max(1, start_line or 1)
    end = len(lines) if end_line is None else min(end_line, len(lines))
    if start > end:
        raise ToolArgumentError(f"Empty line range {start}-{end} (file has {len(lines)} lines)")
    return "".join(lines[start - 1:end])


def _describe_file(entry: Path, rel: Path) -> str:
    try:
        size = entry.stat().st_size
    except OSError as exc:
        logger.debug("Cannot stat %s: %s", entry, exc)
        return f"{rel} [broken link]" if entry.is_symlink() else f"{rel} [unreadable]"
    return f"{rel} ({size} bytes)"


# ---------------------------------------------------------------------------
# Read-only tools
# ---------------------------------------------------------------------------


async def list_files(
    ctx: ToolContext,
    path: str = ".",
    pattern: str | None = None,
    max_depth: int = 1,
    include_hidden: bool = False,
) -> str:
    """List the contents of a directory.

    Directories are shown with a trailing slash, files with their size.
    ``pattern`` is a regular expression matched against entry names.
    """
    target = ctx.guard.require_path(path)
    try:
        matcher = re.compile(pattern) if pattern else None
    except re.error as exc:
        raise ToolArgumentError(f"Invalid pattern {pattern!r}: {exc}") from exc

    def _walk() -> str:
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        lines: list[str] = []
        truncated = False

        def visit(directory: Path, depth: int) -> None:
            nonlocal truncated
            try:
                entries = sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
            except PermissionError:
                lines.append(f"{directory.relative_to(target)}/ [permission denied]")
                return
            for entry in entries:
                if len(lines) >= MAX_LIST_ENTRIES:
                    truncated = True
                    return
                if not include_hidden and entry.name.startswith("."):
                    continue
                rel = entry.relative_to(target)
                is_dir = entry.is_dir()
                if matcher is None or matcher.search(entry.name):
                    lines.append(f"{rel}/" if is_dir else _describe_file(entry, rel))
                if is_dir and depth < max_depth and entry.name not in SKIP_DIR_NAMES and not entry.is_symlink():
                    visit(entry, depth + 1)

        visit(target, 1)
        if not lines:
            return f"{path}: no matching entries"
        if truncated:
            lines.append(f"... [listing truncated at {MAX_LIST_ENTRIES} entries]")
        return "\n".join(lines)

    return await asyncio.to_thread(_walk)


async def read_file(
    ctx: ToolContext,
    path: str,
    start_line: int | None = None,
    end_line: int | None = None,
    max_size: int | None = None,
) -> str:
    """Read a UTF-8 text file, optionally only a 1-based inclusive line range.

    Binary files are refused.
    """
    target = ctx.guard.require_path(path)
    limit = min(max_size or DEFAULT_MAX_READ_SIZE, ABSOLUTE_MAX_READ_SIZE)
    if start_line is not None or end_line is not None:
        limit = ABSOLUTE_MAX_READ_SIZE
    text = await asyncio.to_thread(_read_text, target, limit)
    return _slice_lines(text, start_line, end_line)


async def batch_read(ctx: ToolContext, paths: list[str], max_lines: int = MAX_BATCH_LINES) -> str:
    """Read several text files at once; per-file problems are reported inline."""
    if len(paths) > MAX_BATCH_FILES:
        raise ToolArgumentError(f"Too many files: {len(paths)} (max: {MAX_BATCH_FILES})")

    def _read_all() -> str:
        sections: list[str] = []
        for raw in paths:
            verdict = ctx.guard.check_any(raw)
            if isinstance(verdict, Denied):
                sections.append(f"=== {raw} ===\n[ERROR] {verdict.reason}")
                continue
            assert verdict.path is not None
            try:
                text = _read_text(verdict.path, DEFAULT_MAX_READ_SIZE)
            except (OSError, ToolArgumentError) as exc:
                sections.append(f"=== {raw} ===\n[ERROR] {exc}")
                continue
            lines = text.splitlines()
            body = "\n".join(lines[:max_lines])
            if len(lines) > max_lines:
                body += f"\n... [{len(lines) - max_lines} more lines]"
            sections.append(f"=== {raw} ===\n{body}")
        return "\n\n".join(sections)

    return await asyncio.to_thread(_read_all)


async def get_file_info(ctx: ToolContext, path: str) -> dict[str, Any]:
    """Size, type, modification time and permissions of a path."""
    target = ctx.guard.require_path(path)

    def _info() -> dict[str, Any]:
        st = target.stat()
        if stat.S_ISDIR(st.st_mode):
            kind = "directory"
        elif target.is_symlink():
            kind = "symlink"
        else:
            kind = "file"
        return {
            "path": str(target),
            "type": kind,
            "size": st.st_size,
            "modified": datetime.fromtimestamp(st.st_mtime).isoformat(timespec="seconds"),
            "permissions": stat.filemode(st.st_mode),
            "readable": os.access(target, os.R_OK),
            "writable": os.access(target, os.W_OK),
        }

    return await asyncio.to_thread(_info)


# ---------------------------------------------------------------------------
# Mutating tools
# ---------------------------------------------------------------------------


async def write_file(
    ctx: ToolContext,
    path: str,
    content: str,
    append: bool = False,
    create_backup: bool = True,
) -> str:
    """Write (or append) text to a file, creating parent directories.

    The previous version is backed up so undo_change can restore it.
    Replacing an existing file without a backup needs the user's confirmation.
    """
    target = ctx.guard.require_path(path)
    if not append and not create_backup and target.is_file():
        await ctx.require_confirmation(
            "write_file", "Overwriting an existing file without a backup", _display(ctx, target), RiskLevel.HIGH
        )

    def _write() -> str:
        if target.is_dir():
            raise IsADirectoryError(f"Is a directory: {path}")
        backup = _create_backup(target) if create_backup and target.exists() else None
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("a" if append else "w", encoding="utf-8") as fh:
                fh.write(content)
        except OSError:
            if backup is not None:
                shutil.copy2(backup, target)
            raise
        action = "Appended" if append else "Wrote"
        msg = f"{action} {len(content.encode('utf-8'))} bytes to {_display(ctx, target)}"
        if backup is not None:
            msg += f" (backup: {backup.name})"
        return msg

    return await asyncio.to_thread(_write)


async def edit_file(
    ctx: ToolContext,
    path: str,
    old_content: str,
    new_content: str,
    all_occurrences: bool = False,
    dry_run: bool = False,
    create_backup: bool = True,
) -> str:
    """Replace exact text in a file: the first occurrence, or all of them."""
    target = ctx.guard.require_path(path)
    if not old_content:
        raise ToolArgumentError("old_content must not be empty")

    def _edit() -> str:
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        if target.stat().st_size > MAX_EDIT_FILE_SIZE:
            raise ToolArgumentError(f"File too large to edit (max {MAX_EDIT_FILE_SIZE // 1024}KB)")
        text = target.read_text(encoding="utf-8")
        occurrences = text.count(old_content)
        if occurrences == 0:
            raise ToolArgumentError(f"old_content not found in {path}")
        count = occurrences if all_occurrences else 1
        updated = text.replace(old_content, new_content, -1 if all_occurrences else 1)
        if dry_run:
            return f"Dry run: would replace {count} of {occurrences} occurrence(s) in {_display(ctx, target)}"
        backup = _create_backup(target) if create_backup else None
        target.write_text(updated, encoding="utf-8")
        msg = f"Replaced {count} occurrence(s) in {_display(ctx, target)}"
        if backup is not None:
            msg += f" (backup: {backup.name})"
        return msg

    return await asyncio.to_thread(_edit)


async def create_directory(ctx: ToolContext, path: str) -> str:
    """Create a directory and any missing parents."""
    target = ctx.guard.require_path(path)
    if target.exists() and not target.is_dir():
        raise FileExistsError(f"A file already exists at {path}")
    await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
    return f"Directory ready: {_display(ctx, target)}"


async def delete_file(ctx: ToolContext, path: str, permanent: bool = False) -> str:
    """Delete a file or directory by moving it to .trash; permanent=true removes it.

    Permanent deletion needs the user's confirmation.
    """
    target = ctx.guard.require_path(path)
    root = _root_for(ctx, target)
    if target == root:
        raise ToolDenied("Refusing to delete an allowed root")
    trash = root / TRASH_DIR_NAME
    if target == trash or target.is_relative_to(trash):
        permanent = True
    if permanent and (target.exists() or target.is_symlink()):
        await ctx.require_confirmation(
            "delete_file", "Permanent deletion cannot be undone", _display(ctx, target), RiskLevel.HIGH
        )

    def _delete() -> str:
        if not target.exists() and not target.is_symlink():
            raise FileNotFoundError(f"Not found: {path}")
        if permanent:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
            return f"Permanently deleted {_display(ctx, target)}"
        trash.mkdir(exist_ok=True)
        destination = trash / f"{target.name}.{_timestamp()}"
        shutil.move(str(target), str(destination))
        return f"Moved {_display(ctx, target)} to {TRASH_DIR_NAME}/{destination.name}"

    return await asyncio.to_thread(_delete)


async def _transfer(ctx: ToolContext, tool: str, source: str, destination: str, overwrite: bool, move: bool) -> str:
    src = ctx.guard.require_path(source)
    dst = ctx.guard.require_path(destination)
    if dst.is_dir() and src.exists() and not src.is_dir():
        dst = dst / src.name
    if overwrite and src != dst and (dst.exists() or dst.is_symlink()):
        await ctx.require_confirmation(
            tool, "Overwriting an existing destination", _display(ctx, dst), RiskLevel.HIGH
        )
    return await asyncio.to_thread(_copy_or_move, ctx, src, dst, source, destination, overwrite, move)


def _copy_or_move(
    ctx: ToolContext, src: Path, dst: Path, source: str, destination: str, overwrite: bool, move: bool
) -> str:
    if not src.exists():
        raise FileNotFoundError(f"Source not found: {source}")
    if src == dst:
        raise ToolArgumentError("Source and destination are the same path")
    if dst.exists():
        if not overwrite:
            raise FileExistsError(f"Destination exists (pass overwrite=true): {destination}")
        if dst.is_dir() and not dst.is_symlink():
            shutil.rmtree(dst)
        else:
            dst.unlink()
    dst.parent.mkdir(parents=True, exist_ok=True)
    if move:
        shutil.move(str(src), str(dst))
        verb = "Moved"
    elif src.is_dir():
        shutil.copytree(src, dst, symlinks=True)
        verb = "Copied"
    else:
        shutil.copy2(src, dst)
        verb = "Copied"
    return f"{verb} {_display(ctx, src)} -> {_display(ctx, dst)}"


async def copy_file(ctx: ToolContext, source: str, destination: str, overwrite: bool = False) -> str:
    """Copy a file or directory."""
    return await _transfer(ctx, "copy_file", source, destination, overwrite, move=False)


async def move_file(ctx: ToolContext, source: str, destination: str, overwrite: bool = False) -> str:
    """Move or rename a file or directory."""
    return await _transfer(ctx, "move_file", source, destination, overwrite, move=True)


async def undo_change(ctx: ToolContext, path: str, list_backups: bool = False) -> str:
    """Restore a file from its most recent backup, or list the available backups."""
    target = ctx.guard.require_path(path)

    def _undo() -> str:
        backups = _backups_for(target)
        if not backups:
            raise FileNotFoundError(f"No backups found for {target.name}")
        if list_backups:
            lines = [f"Available backups for {target.name}:"]
            for index, backup in enumerate(backups, 1):
                mtime = datetime.fromtimestamp(backup.stat().st_mtime).isoformat(sep=" ", timespec="seconds")
                lines.append(f"{index}. {backup.name} ({mtime})")
            return "\n".join(lines)
        latest = backups[0]
        shutil.copy2(latest, target)
        latest.unlink()
        return f"Restored {_display(ctx, target)} from {latest.name}"

    return await asyncio.to_thread(_undo)


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

_PATH = {"type": "string", "description": "Path, absolute or relative to the workspace root."}


def filesystem_tools() -> list[ToolDescriptor]:
    read = Capability.FILESYSTEM_READ
    write = Capability.FILESYSTEM_WRITE
    return [
        make_tool(list_files, read, {
            "path": _PATH,
            "pattern": {"type": "string", "description": "Regex matched against entry names."},
            "max_depth": {"type": "integer", "minimum": 1, "maximum": 10},
            "include_hidden": {"type": "boolean"},
        }),
        make_tool(read_file, read, {
            "path": _PATH,
            "start_line": {"type": "integer", "minimum": 1},
            "end_line": {"type": "integer", "minimum": 1},
            "max_size": {"type": "integer", "minimum": 1},
        }, ["path"]),
        make_tool(batch_read, read, {
            "paths": {"type": "array", "items": {"type": "string"}, "minItems": 1},
            "max_lines": {"type": "integer", "minimum": 1, "maximum": 500},
        }, ["paths"]),
        make_tool(get_file_info, read, {"path": _PATH}, ["path"]),
        make_tool(write_file, write, {
            "path": _PATH,
            "content": {"type": "string"},
            "append": {"type": "boolean"},
            "create_backup": {"type": "boolean"},
        }, ["path", "content"]),
        make_tool(edit_file, write, {
            "path": _PATH,
            "old_content": {"type": "string", "description": "Exact text to replace."},
            "new_content": {"type": "string"},
            "all_occurrences": {"type": "boolean"},
            "dry_run": {"type": "boolean"},
            "create_backup": {"type": "boolean"},
        }, ["path", "old_content", "new_content"]),
        make_tool(create_directory, write, {"path": _PATH}, ["path"]),
        make_tool(delete_file, write, {"path": _PATH, "permanent": {"type": "boolean"}}, ["path"]),
        make_tool(copy_file, write, {
            "source": _PATH,
            "destination": _PATH,
            "overwrite": {"type": "boolean"},
        }, ["source", "destination"]),
        make_tool(move_file, write, {
            "source": _PATH,
            "destination": _PATH,
            "overwrite": {"type": "boolean"},
        }, ["source", "destination"]),
        make_tool(undo_change, write, {"path": _PATH, "list_backups": {"type": "boolean"}}, ["path"]),
    ]
