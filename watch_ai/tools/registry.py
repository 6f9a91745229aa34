"""Tool registry and base tool class."""

import asyncio
import os
import re
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator

from watch_ai.config import get_config
from watch_ai.exceptions import (
    PathOutsideWorkspaceError,
    ToolBlockedError,
    ToolError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolValidationError,
)
from watch_ai.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}

ERROR_KINDS = (
    "validation_error",
    "not_found",
    "io_error",
    "timeout",
    "parse_error",
    "blocked",
    "rejected",
    "cancelled",
    "execution_error",
)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "boolean": (bool,),
    "integer": (int,),
    "number": (int, float),
    "object": (dict,),
    "array": (list,),
}


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    for token in tokens:
        token = str(token).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching.

    Patterns containing whitespace are matched against whole segments
    (``rm -rf /``); single-word patterns are matched against each segment's
    base command (``mkfs``).
    """
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    compact = re.sub(r"\s+", "", cleaned)
    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        # symbol payloads such as fork bombs do not tokenize; match them literally
        if pattern and not re.fullmatch(r"[\w.\- /]+", pattern) and pattern in compact:
            return True, pattern

    try:
        segments = _split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    if not segments:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        for target in targets:
            if segment_level_pattern:
                matched = target == pattern or compiled.fullmatch(target)
            else:
                matched = compiled.fullmatch(target) or compiled.fullmatch(Path(target).name)
            if matched:
                return True, pattern
    return False, ""


def resolve_in_workspace(root: Path | str, path: str | None) -> Path:
    """Resolve a tool path argument against the workspace root.

    Relative paths are joined to the root. The resolved path (symlinks
    followed) must stay inside the root.

    Raises:
        PathOutsideWorkspaceError: if the path escapes the root
    """
    base = Path(root).expanduser().resolve()
    raw = str(path or "").strip()
    if not raw or raw == ".":
        return base
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    resolved = candidate.resolve()
    try:
        resolved.relative_to(base)
    except ValueError:
        raise PathOutsideWorkspaceError(raw)
    return resolved


def display_path(root: Path | str, path: Path) -> str:
    """Workspace-relative path with forward slashes, '.' for the root."""
    try:
        rel = Path(path).relative_to(Path(root).expanduser().resolve())
    except ValueError:
        return str(path)
    text = rel.as_posix()
    return text or "."


class ToolResult(BaseModel):
    """Result from tool execution.

    Tool-specific payload fields (content, entries, results, output, ...) are
    stored as extra attributes.
    """

    model_config = ConfigDict(extra="allow")

    success: bool = True
    message: str = ""
    error: str | None = None
    error_kind: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message and kind."""
        if not self.success:
            if not (self.error or "").strip():
                fallback = (self.message or "").strip()
                self.error = fallback or "Tool execution failed"
            if self.error_kind not in ERROR_KINDS:
                self.error_kind = "execution_error"
        return self

    @classmethod
    def failure(cls, error: str, kind: str = "execution_error", **payload: Any) -> "ToolResult":
        return cls(success=False, error=error, error_kind=kind, **payload)

    @classmethod
    def from_error(cls, exc: Exception) -> "ToolResult":
        """Convert a tool-layer exception into a model-facing failure."""
        if isinstance(exc, (ToolValidationError, PathOutsideWorkspaceError)):
            return cls.failure(str(exc), "validation_error")
        if isinstance(exc, ToolNotFoundError):
            return cls.failure(str(exc), "validation_error")
        if isinstance(exc, ToolBlockedError):
            return cls.failure(str(exc), "blocked")
        if isinstance(exc, ToolExecutionError):
            return cls.failure(str(exc), exc.kind)
        return cls.failure(str(exc) or exc.__class__.__name__, "execution_error")

    def to_content(self) -> str:
        """Serialize for a tool message body."""
        return self.model_dump_json(exclude_none=True)


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0
    # read, write, delete, query or command; drives session stats
    kind: str = "query"
    requires_approval: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments, plus ``_workspace_root`` and
                ``_abort_event`` injected by the registry

        Returns:
            ToolResult with success status and payload
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolValidationError: missing required argument or wrong JSON type
        """
        required = self.parameters.get("required", [])
        for field_name in required:
            if arguments.get(field_name) is None:
                raise ToolValidationError(
                    self.name,
                    f"Missing required argument: {field_name}",
                )
        properties = self.parameters.get("properties", {}) or {}
        for key, value in arguments.items():
            spec = properties.get(key)
            if not spec or value is None:
                continue
            expected = _JSON_TYPES.get(str(spec.get("type", "")))
            if not expected:
                continue
            if isinstance(value, bool) and bool not in expected:
                raise ToolValidationError(self.name, f"Argument '{key}' must be {spec['type']}")
            if not isinstance(value, expected):
                raise ToolValidationError(self.name, f"Argument '{key}' must be {spec['type']}")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, workspace_root: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._workspace_root = Path.cwd()
        self.set_workspace_root(workspace_root or Path.cwd())

    def set_workspace_root(self, root: Path | str) -> None:
        """Set the directory all tool paths are resolved against."""
        self._workspace_root = Path(root).expanduser().resolve()

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    def resolve_path(self, path: str | None) -> Path:
        return resolve_in_workspace(self._workspace_root, path)

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List registered tool names in registration order."""
        return list(self._tools)

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    def requires_approval(self, name: str) -> bool:
        tool = self._tools.get(name)
        return bool(tool and tool.requires_approval)

    def check_blocked(self, name: str, arguments: dict[str, Any]) -> None:
        """Apply the shell deny-list to command tools.

        Raises:
            ToolBlockedError: command is empty, unparseable or matches a blocked pattern
        """
        tool = self.get(name)
        if tool.kind != "command":
            return
        blocked_cmds = get_config().tools.command.blocked or []
        cmd = str(arguments.get("command", ""))
        blocked, matched = is_blocked_shell_command(cmd, blocked_cmds)
        if blocked:
            if matched == "empty_command":
                raise ToolBlockedError(name, "Command is empty")
            if matched == "unparseable_command":
                raise ToolBlockedError(name, "Command is not parseable")
            raise ToolBlockedError(name, f"Command matches blocked pattern: {matched}")

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled task raised", error=str(e))

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        approved: bool = False,
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            approved: Must be True for tools that require human approval
            abort_event: Optional event that aborts the tool when set

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolBlockedError if tool is blocked or unapproved
            ToolValidationError if arguments are invalid
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)

        if tool.requires_approval and not approved:
            raise ToolBlockedError(name, "Requires human approval")

        self.check_blocked(name, arguments)
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=_summarize_args(arguments))
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            if abort_event is not None:
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )

            execute_task = asyncio.create_task(
                tool.execute(
                    **arguments,
                    _workspace_root=self._workspace_root,
                    _abort_event=tool_abort_event,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted", kind="cancelled")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s", kind="timeout")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolError:
            raise
        except TypeError as e:
            # unexpected keyword from the model
            raise ToolValidationError(name, str(e))
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)


def _summarize_args(arguments: dict[str, Any]) -> dict[str, Any]:
    """Shorten long string arguments for logging."""
    summary: dict[str, Any] = {}
    for key, value in arguments.items():
        if isinstance(value, str) and len(value) > 120:
            summary[key] = f"{value[:120]}... ({len(value)} chars)"
        else:
            summary[key] = value
    return summary


def workspace_root_from(kwargs: dict[str, Any]) -> Path:
    """Workspace root injected by the registry, falling back to the config."""
    root = kwargs.get("_workspace_root")
    if root:
        return Path(root)
    return get_config().resolved_workspace_path(os.getcwd())
