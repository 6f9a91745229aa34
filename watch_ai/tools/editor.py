"""Editor language-service tools (diagnostics and outline).

The host editor supplies the actual data through a ``LanguageServices``
implementation; without one, both tools report that nothing is available.
"""

from typing import Any, Protocol, runtime_checkable

from watch_ai.tools.registry import (
    Tool,
    ToolResult,
    display_path,
    resolve_in_workspace,
    workspace_root_from,
)


@runtime_checkable
class LanguageServices(Protocol):
    """Read-only access to the host editor's language features."""

    async def diagnostics(self, path: str) -> list[dict[str, Any]] | None:
        """Problems for ``path`` as ``{line, severity, message, source}`` dicts, or None."""
        ...

    async def outline(self, path: str) -> list[dict[str, Any]] | None:
        """Symbols for ``path`` as ``{name, kind, line, children}`` dicts, or None."""
        ...


class NullLanguageServices:
    """Used when no editor is attached."""

    async def diagnostics(self, path: str) -> list[dict[str, Any]] | None:
        return None

    async def outline(self, path: str) -> list[dict[str, Any]] | None:
        return None


class _LanguageServiceTool(Tool):
    kind = "query"

    def __init__(self, services: LanguageServices | None = None):
        self.services: LanguageServices = services or NullLanguageServices()

    def _resolve(self, path: str, kwargs: dict[str, Any]) -> tuple[str, str]:
        root = workspace_root_from(kwargs)
        resolved = resolve_in_workspace(root, path)
        return str(resolved), display_path(root, resolved)


class GetDiagnosticsTool(_LanguageServiceTool):
    name = "get_diagnostics"
    description = "Get errors and warnings reported by the editor for a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "File to check",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        absolute, shown = self._resolve(path, kwargs)
        items = await self.services.diagnostics(absolute)
        if items is None:
            return ToolResult(
                success=True,
                message=f"No diagnostics available for {shown}",
                path=shown,
                diagnostics=[],
            )
        return ToolResult(
            success=True,
            message=f"{len(items)} problems in {shown}",
            path=shown,
            diagnostics=items,
        )


class ViewOutlineTool(_LanguageServiceTool):
    name = "view_outline"
    description = "Get the symbol outline (classes, functions, methods) of a file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "File to outline",
            },
        },
        "required": ["path"],
    }

    async def execute(self, path: str, **kwargs: Any) -> ToolResult:
        absolute, shown = self._resolve(path, kwargs)
        symbols = await self.services.outline(absolute)
        if symbols is None:
            return ToolResult(
                success=True,
                message=f"No outline available for {shown}",
                path=shown,
                symbols=[],
            )
        return ToolResult(
            success=True,
            message=f"{len(symbols)} symbols in {shown}",
            path=shown,
            symbols=symbols,
        )
