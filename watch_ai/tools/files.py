"""File tools: read, write, edit and delete inside the workspace."""

import asyncio
import shutil
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


def _count_lines(text: str) -> int:
    if not text:
        return 0
    return text.count("\n") + (0 if text.endswith("\n") else 1)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = (
        "Read the contents of a file in the workspace. "
        "Optionally pass start_line/end_line (1-indexed, inclusive) to read a range."
    )
    kind = "read"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the workspace root",
            },
            "start_line": {
                "type": "integer",
                "description": "First line to return (1-indexed)",
            },
            "end_line": {
                "type": "integer",
                "description": "Last line to return (inclusive)",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        start_line: int | None = None,
        end_line: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            start_line: Optional first line
            end_line: Optional last line

        Returns:
            ToolResult with ``content`` and ``total_lines``
        """
        root = workspace_root_from(kwargs)
        file_path = resolve_in_workspace(root, path)
        shown = display_path(root, file_path)

        if not file_path.exists():
            return ToolResult.failure(f"File not found: {path}", "not_found", path=shown)
        if not file_path.is_file():
            return ToolResult.failure(f"Not a file: {path}", "io_error", path=shown)

        max_size = get_config().tools.max_read_bytes
        try:
            file_size = file_path.stat().st_size
            if file_size > max_size:
                return ToolResult.failure(
                    f"File too large: {file_size} bytes (max {max_size})",
                    "io_error",
                    path=shown,
                )
            loop = asyncio.get_running_loop()
            text = await loop.run_in_executor(
                None,
                lambda: file_path.read_text(encoding="utf-8", errors="replace"),
            )
        except OSError as e:
            log.warning("Read failed", path=path, error=str(e))
            return ToolResult.failure(f"Failed to read {path}: {e}", "io_error", path=shown)

        lines = text.splitlines()
        total = len(lines)
        if start_line is not None or end_line is not None:
            first = max(1, int(start_line or 1))
            last = min(total, int(end_line or total))
            if first > last and total:
                return ToolResult.failure(
                    f"Invalid line range {first}-{last} (file has {total} lines)",
                    "validation_error",
                    path=shown,
                )
            content = "\n".join(lines[first - 1:last])
            message = f"Read {shown} lines {first}-{last} of {total}"
        else:
            content = text
            message = f"Read {shown} ({total} lines)"

        return ToolResult(
            success=True,
            message=message,
            path=shown,
            content=content,
            total_lines=total,
        )


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = "Create or overwrite a file with the given content. Parent directories are created."
    kind = "write"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Full new content of the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        root = workspace_root_from(kwargs)
        file_path = resolve_in_workspace(root, path)
        shown = display_path(root, file_path)
        if file_path.is_dir():
            return ToolResult.failure(f"Path is a directory: {path}", "io_error", path=shown)

        is_new = not file_path.exists()
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: file_path.write_text(content, encoding="utf-8"))
        except OSError as e:
            log.warning("Write failed", path=path, error=str(e))
            return ToolResult.failure(f"Failed to write {path}: {e}", "io_error", path=shown)

        lines = _count_lines(content)
        verb = "Created" if is_new else "Updated"
        return ToolResult(
            success=True,
            message=f"{verb} {shown} ({lines} lines)",
            path=shown,
            is_new=is_new,
            lines_written=lines,
        )


class EditFileTool(Tool):
    """Replace one exact text occurrence in a file."""

    name = "edit_file"
    description = (
        "Replace an exact piece of text in a file. old_text must match the file content "
        "exactly (including whitespace); only the first occurrence is replaced. "
        "Read the file first to get the exact text."
    )
    kind = "write"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to edit",
            },
            "old_text": {
                "type": "string",
                "description": "Exact text to find",
            },
            "new_text": {
                "type": "string",
                "description": "Replacement text",
            },
        },
        "required": ["path", "old_text", "new_text"],
    }

    async def execute(self, path: str, old_text: str, new_text: str, **kwargs: Any) -> ToolResult:
        root = workspace_root_from(kwargs)
        file_path = resolve_in_workspace(root, path)
        shown = display_path(root, file_path)

        if not file_path.is_file():
            return ToolResult.failure(f"File not found: {path}", "not_found", path=shown)
        if old_text == "":
            return ToolResult.failure("old_text must not be empty", "validation_error", path=shown)

        try:
            original = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return ToolResult.failure(f"Failed to read {path}: {e}", "io_error", path=shown)

        occurrences = original.count(old_text)
        if occurrences == 0:
            return ToolResult.failure(
                f"Text not found in {shown}. Read the file first for exact text.",
                "not_found",
                path=shown,
            )

        updated = original.replace(old_text, new_text, 1)
        try:
            file_path.write_text(updated, encoding="utf-8")
        except OSError as e:
            log.warning("Edit failed", path=path, error=str(e))
            return ToolResult.failure(f"Failed to write {path}: {e}", "io_error", path=shown)

        message = f"Edited {shown}"
        if occurrences > 1:
            message += f" (replaced first of {occurrences} occurrences)"
        return ToolResult(
            success=True,
            message=message,
            path=shown,
            occurrences=occurrences,
            lines_written=_count_lines(new_text),
        )


class DeleteFileTool(Tool):
    """Delete a file or directory."""

    name = "delete_file"
    description = "Delete a file, or a directory with everything in it."
    kind = "delete"
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file or directory to delete",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        root = workspace_root_from(kwargs)
        target = resolve_in_workspace(root, path)
        shown = display_path(root, target)

        if target == Path(root).expanduser().resolve():
            return ToolResult.failure("Refusing to delete the workspace root", "validation_error")
        if not target.exists() and not target.is_symlink():
            return ToolResult.failure(f"Path not found: {path}", "io_error", path=shown)

        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
                kind = "directory"
            else:
                target.unlink()
                kind = "file"
        except OSError as e:
            log.warning("Delete failed", path=path, error=str(e))
            return ToolResult.failure(f"Failed to delete {path}: {e}", "io_error", path=shown)

        return ToolResult(success=True, message=f"Deleted {kind} {shown}", path=shown)
