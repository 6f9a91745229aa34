"""Custom exceptions for Watch AI."""


class WatchAIError(Exception):
    """Base exception for Watch AI."""

    pass


class ConfigurationError(WatchAIError):
    """Configuration-related errors."""

    pass


class LLMError(WatchAIError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """Model endpoint unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationAborted(WatchAIError):
    """Generation was stopped on request. Not a failure."""

    pass


class TranscriptError(WatchAIError):
    """A message would break transcript ordering rules."""

    pass


class ToolError(WatchAIError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str, kind: str = "execution_error"):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.kind = kind


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    """Tool arguments do not match the declared schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class PathOutsideWorkspaceError(ToolError):
    """A tool path resolved outside the workspace root."""

    def __init__(self, path: str):
        super().__init__(f"Path is outside the workspace: {path}")
        self.path = path


class ApprovalError(WatchAIError):
    """Approval gate errors."""

    pass


class ApprovalNotFoundError(ApprovalError):
    """No pending approval with this id."""

    def __init__(self, approval_id: str):
        super().__init__(f"No pending approval: {approval_id}")
        self.approval_id = approval_id


class ApprovalCancelledError(ApprovalError):
    """A pending approval was dropped before a decision arrived."""

    def __init__(self, approval_id: str, reason: str = "cancelled"):
        super().__init__(f"Approval {approval_id} cancelled: {reason}")
        self.approval_id = approval_id
        self.reason = reason


class SessionError(WatchAIError):
    """Conversation store errors."""

    pass


class SessionNotFoundError(SessionError):
    """Conversation not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Conversation not found: {session_id}")
        self.session_id = session_id
