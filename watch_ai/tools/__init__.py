"""Tools package for Watch AI."""

from pathlib import Path

from watch_ai.config import get_config
from watch_ai.tools.command import RunCommandTool
from watch_ai.tools.editor import (
    GetDiagnosticsTool,
    LanguageServices,
    NullLanguageServices,
    ViewOutlineTool,
)
from watch_ai.tools.files import DeleteFileTool, EditFileTool, ReadFileTool, WriteFileTool
from watch_ai.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    is_blocked_shell_command,
    resolve_in_workspace,
)
from watch_ai.tools.search import FileSearchTool, ListDirTool, SearchTextTool


def build_default_registry(
    workspace_root: Path | str | None = None,
    language_services: LanguageServices | None = None,
) -> ToolRegistry:
    """Registry with every enabled tool from the config, in catalog order."""
    config = get_config()
    registry = ToolRegistry(workspace_root or config.resolved_workspace_path())
    factories = {
        "read_file": ReadFileTool,
        "write_file": WriteFileTool,
        "edit_file": EditFileTool,
        "delete_file": DeleteFileTool,
        "list_dir": ListDirTool,
        "search_text": SearchTextTool,
        "file_search": FileSearchTool,
        "run_command": RunCommandTool,
        "get_diagnostics": lambda: GetDiagnosticsTool(language_services),
        "view_outline": lambda: ViewOutlineTool(language_services),
    }
    enabled = set(config.tools.enabled)
    for name, factory in factories.items():
        if name in enabled:
            registry.register(factory())
    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "build_default_registry",
    "is_blocked_shell_command",
    "resolve_in_workspace",
    "LanguageServices",
    "NullLanguageServices",
    "ReadFileTool",
    "WriteFileTool",
    "EditFileTool",
    "DeleteFileTool",
    "ListDirTool",
    "SearchTextTool",
    "FileSearchTool",
    "RunCommandTool",
    "GetDiagnosticsTool",
    "ViewOutlineTool",
]
