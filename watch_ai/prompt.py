"""System prompt assembly: template loading, editor context and project tree."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from watch_ai.config import get_config

SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"
MAX_FILE_CONTENT_CHARS = 12000
MAX_SELECTION_CHARS = 500
STRUCTURE_DEPTH = 3
STRUCTURE_ENTRIES_PER_DIR = 20

_PERSONAL_DIR = Path("~/.watch-ai/instructions").expanduser()


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class TemplateLoader:
    """Prompt templates with personal overrides.

    A file in the personal directory (``~/.watch-ai/instructions``) wins over
    the packaged default of the same name. ``WATCH_AI_INSTRUCTIONS_DIR``
    replaces the packaged directory.
    """

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        if base_dir is None:
            base_dir = os.getenv("WATCH_AI_INSTRUCTIONS_DIR") or Path(__file__).resolve().parent / "templates"
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.personal_dir = Path(personal_dir if personal_dir is not None else _PERSONAL_DIR).expanduser().resolve()
        self._cache: dict[str, str] = {}

    def locate(self, name: str) -> Path:
        for directory in (self.personal_dir, self.base_dir):
            candidate = directory / name
            if candidate.is_file():
                return candidate
        raise FileNotFoundError(f"Prompt template not found: {name} (looked in {self.personal_dir}, {self.base_dir})")

    def load(self, name: str) -> str:
        if name not in self._cache:
            self._cache[name] = self.locate(name).read_text(encoding="utf-8").strip()
        return self._cache[name]

    def render(self, name: str, **variables: object) -> str:
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return self.load(name).format_map(_SafeFormatDict(values))


@dataclass
class EditorContext:
    """What the host editor currently shows."""

    active_file: str | None = None
    file_content: str = ""
    cursor_line: int | None = None  # 0-indexed, as editors report it
    selected_text: str = ""
    open_files: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EditorContext | None":
        """Accept both snake_case and the camelCase keys editor clients send."""
        if not data:
            return None
        cursor = data.get("cursor_line", data.get("cursorLine"))
        return cls(
            active_file=data.get("active_file") or data.get("activeFile"),
            file_content=data.get("file_content") or data.get("fileContent") or "",
            cursor_line=int(cursor) if cursor is not None else None,
            selected_text=data.get("selected_text") or data.get("selectedText") or "",
            open_files=list(data.get("open_files") or data.get("openFiles") or []),
        )


def project_structure(
    root: Path,
    ignore: Iterable[str] | None = None,
    depth: int = STRUCTURE_DEPTH,
    per_dir: int = STRUCTURE_ENTRIES_PER_DIR,
) -> str:
    """Render a tree of ``root`` with box-drawing prefixes."""
    ignored = set(ignore if ignore is not None else get_config().tools.ignore_names)
    lines: list[str] = []

    def walk(directory: Path, prefix: str, level: int) -> None:
        if level >= depth:
            return
        try:
            names = sorted(n for n in os.listdir(directory) if n not in ignored)[:per_dir]
        except OSError:
            return
        for index, name in enumerate(names):
            last = index == len(names) - 1
            lines.append(f"{prefix}{'└── ' if last else '├── '}{name}")
            child = directory / name
            if child.is_dir():
                walk(child, prefix + ("    " if last else "│   "), level + 1)

    walk(Path(root), "", 0)
    return "\n".join(lines)


def build_system_prompt(
    workspace: Path,
    editor: EditorContext | None = None,
    loader: TemplateLoader | None = None,
    include_structure: bool = True,
) -> str:
    """Render the system prompt for one turn."""
    loader = loader or TemplateLoader()
    editor = editor or EditorContext()

    active = f"**Active File:** `{editor.active_file}`" if editor.active_file else "**Active File:** None"
    cursor = f"**Cursor Line:** {editor.cursor_line + 1}" if editor.cursor_line is not None else ""
    open_files = f"**Open Files:** {', '.join(editor.open_files)}" if editor.open_files else ""
    selection = ""
    if editor.selected_text:
        selection = f"**Selected Text:**\n```\n{editor.selected_text[:MAX_SELECTION_CHARS]}\n```"

    file_content = ""
    if editor.file_content:
        body = editor.file_content[:MAX_FILE_CONTENT_CHARS]
        if len(editor.file_content) > MAX_FILE_CONTENT_CHARS:
            body += "\n// ... (truncated)"
        file_content = f"\n## ACTIVE FILE CONTENT\n```\n{body}\n```"

    project = ""
    if include_structure:
        tree = project_structure(workspace)
        if tree:
            project = f"\n## PROJECT STRUCTURE\n```\n{tree}\n```"

    return loader.render(
        SYSTEM_PROMPT_TEMPLATE,
        workspace=workspace,
        active_file_section=active,
        cursor_section=cursor,
        open_files_section=open_files,
        selection_section=selection,
        file_content_section=file_content,
        project_section=project,
    )
