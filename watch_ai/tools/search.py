"""Directory listing and text search tools."""

import asyncio
import fnmatch
import os
from pathlib import Path
from typing import Any

from watch_ai.config import get_config
from watch_ai.logging import get_logger
from watch_ai.tools.registry import (
    Tool,
    ToolResult,
    display_path,
    resolve_in_workspace,
    workspace_root_from,
)

log = get_logger(__name__)

SNIPPET_CHARS = 100


def _sort_key(entry: dict[str, Any]) -> tuple[int, str, str]:
    name = entry["name"]
    return (0 if entry["type"] == "dir" else 1, name.lower(), name)


def list_entries(
    directory: Path,
    root: Path,
    ignore: set[str],
    recursive: bool = False,
    max_depth: int = 3,
    level: int = 0,
) -> list[dict[str, Any]]:
    """List a directory, directories first, skipping ignored names.

    Raises:
        OSError: if ``directory`` itself cannot be read. Per-child stat
            errors are skipped.
    """
    entries: list[dict[str, Any]] = []
    for name in os.listdir(directory):
        if name in ignore:
            continue
        child = directory / name
        try:
            is_dir = child.is_dir()
        except OSError:
            continue
        entry: dict[str, Any] = {
            "name": name,
            "path": display_path(root, child),
            "type": "dir" if is_dir else "file",
        }
        if is_dir and recursive and level + 1 < max_depth:
            try:
                entry["children"] = list_entries(child, root, ignore, recursive, max_depth, level + 1)
            except OSError:
                entry["children"] = []
        entries.append(entry)
    entries.sort(key=_sort_key)
    return entries


def _matches_pattern(filename: str, file_pattern: str | None) -> bool:
    if not file_pattern:
        return True
    if any(ch in file_pattern for ch in "*?["):
        return fnmatch.fnmatch(filename, file_pattern)
    return filename.endswith(file_pattern)


def search_files(
    directory: Path,
    root: Path,
    query: str,
    ignore: set[str],
    file_pattern: str | None = None,
    max_results: int = 20,
) -> list[dict[str, Any]]:
    """Find lines containing ``query`` (case-sensitive) under ``directory``."""
    results: list[dict[str, Any]] = []

    def walk(current: Path) -> None:
        try:
            children = sorted(os.scandir(current), key=lambda e: e.name)
        except OSError:
            return
        for item in children:
            if len(results) >= max_results:
                return
            if item.name in ignore:
                continue
            try:
                if item.is_dir():
                    walk(Path(item.path))
                    continue
                if not _matches_pattern(item.name, file_pattern):
                    continue
                with open(item.path, encoding="utf-8") as handle:
                    for line_no, line in enumerate(handle, start=1):
                        if query in line:
                            results.append({
                                "file": display_path(root, Path(item.path)),
                                "line": line_no,
                                "snippet": line.strip()[:SNIPPET_CHARS],
                            })
                            if len(results) >= max_results:
                                return
            except (OSError, UnicodeDecodeError):
                # unreadable or binary
                continue

    walk(directory)
    return results


def _fuzzy_rank(query: str, rel_path: str) -> int | None:
    """Rank a path against a fuzzy query: 0 name match, 1 path match, 2 subsequence."""
    needle = query.lower()
    haystack = rel_path.lower()
    if needle in haystack.rsplit("/", 1)[-1]:
        return 0
    if needle in haystack:
        return 1
    chars = iter(haystack)
    if all(ch in chars for ch in needle):
        return 2
    return None


def find_files(root: Path, query: str, ignore: set[str], max_results: int = 10) -> list[str]:
    """Workspace-relative file paths matching ``query``, best matches first."""
    ranked: list[tuple[int, int, str]] = []
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in ignore)
        for filename in files:
            if filename in ignore:
                continue
            rel_path = display_path(root, Path(current) / filename)
            rank = _fuzzy_rank(query, rel_path)
            if rank is not None:
                ranked.append((rank, len(rel_path), rel_path))
    ranked.sort()
    return [rel_path for _, _, rel_path in ranked[:max_results]]


class ListDirTool(Tool):
    """List directory contents."""

    name = "list_dir"
    description = (
        "List files and folders in a directory (default: workspace root). "
        "Set recursive=true to include subfolders up to 3 levels deep."
    )
    kind = "query"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to list, relative to the workspace root",
            },
            "recursive": {
                "type": "boolean",
                "description": "Include nested folders",
            },
        },
        "required": [],
    }

    async def execute(self, path: str | None = None, recursive: bool = False, **kwargs: Any) -> ToolResult:
        root = workspace_root_from(kwargs)
        directory = resolve_in_workspace(root, path)
        shown = display_path(root, directory)
        if not directory.is_dir():
            return ToolResult.failure(f"Not a directory: {path or '.'}", "io_error", path=shown)

        cfg = get_config().tools
        try:
            loop = asyncio.get_running_loop()
            entries = await loop.run_in_executor(
                None,
                lambda: list_entries(
                    directory,
                    Path(root).resolve(),
                    set(cfg.ignore_names),
                    recursive=bool(recursive),
                    max_depth=cfg.list_max_depth,
                ),
            )
        except OSError as e:
            log.warning("List failed", path=path, error=str(e))
            return ToolResult.failure(f"Failed to list {path or '.'}: {e}", "io_error", path=shown)

        return ToolResult(
            success=True,
            message=f"Found {len(entries)} items in {shown}",
            path=shown,
            entries=entries,
            count=len(entries),
        )


class SearchTextTool(Tool):
    """Search text across workspace files."""

    name = "search_text"
    description = (
        "Search for a text string in files (case-sensitive). Returns up to 20 matches "
        "with file, line number and snippet. file_pattern may be a suffix like '.py' or a glob."
    )
    kind = "query"
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Text to search for",
            },
            "directory": {
                "type": "string",
                "description": "Directory to search in (default: workspace root)",
            },
            "file_pattern": {
                "type": "string",
                "description": "Only search files ending with this suffix or matching this glob",
            },
        },
        "required": ["query"],
    }

    async def execute(
        self,
        query: str,
        directory: str | None = None,
        file_pattern: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if not query:
            return ToolResult.failure("query must not be empty", "validation_error")

        root = workspace_root_from(kwargs)
        search_root = resolve_in_workspace(root, directory)
        if not search_root.is_dir():
            return ToolResult.failure(f"Not a directory: {directory}", "io_error")

        cfg = get_config().tools
        loop = asyncio.get_running_loop()
        results = await loop.run_in_executor(
            None,
            lambda: search_files(
                search_root,
                Path(root).resolve(),
                query,
                set(cfg.ignore_names),
                file_pattern=file_pattern,
                max_results=cfg.search_max_results,
            ),
        )
        return ToolResult(
            success=True,
            message=f'Found {len(results)} matches for "{query}"',
            results=results,
            count=len(results),
        )


class FileSearchTool(Tool):
    """Find files by fuzzy name."""

    name = "file_search"
    description = (
        "Find files whose path fuzzily matches a name fragment. Returns up to 10 "
        "workspace-relative paths, closest matches first."
    )
    kind = "query"
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Part of the file name or path, e.g. 'userctrl' or 'routes/api'",
            },
        },
        "required": ["query"],
    }

    async def execute(self, query: str, **kwargs: Any) -> ToolResult:
        if not query.strip():
            return ToolResult.failure("query must not be empty", "validation_error")

        root = Path(workspace_root_from(kwargs)).resolve()
        cfg = get_config().tools
        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(
            None,
            lambda: find_files(root, query.strip(), set(cfg.ignore_names), cfg.file_search_max_results),
        )
        return ToolResult(
            success=True,
            message=f'Found {len(files)} files matching "{query.strip()}"',
            files=files,
            count=len(files),
        )
