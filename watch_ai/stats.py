"""Per-turn activity counters reported with the done event."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionStats:
    lines_written: int = 0
    files_modified: set[str] = field(default_factory=set)
    files_read: set[str] = field(default_factory=set)
    tool_calls: list[dict[str, str]] = field(default_factory=list)

    def reset(self) -> None:
        self.lines_written = 0
        self.files_modified.clear()
        self.files_read.clear()
        self.tool_calls.clear()

    def record(self, tool_name: str, kind: str, result: Any, path: str = "") -> None:
        """Record one finished tool call.

        ``kind`` is the tool's category (read, write, delete, query, command).
        Only successful calls count toward lines and files.
        """
        success = bool(getattr(result, "success", False))
        message = str(getattr(result, "message", "") or getattr(result, "error", "") or "")
        self.tool_calls.append({
            "name": tool_name,
            "status": "success" if success else "error",
            "message": message,
        })
        if not success:
            return
        target = str(getattr(result, "path", "") or path)
        if kind == "read" and target:
            self.files_read.add(target)
        elif kind in ("write", "delete") and target:
            self.files_modified.add(target)
            self.lines_written += int(getattr(result, "lines_written", 0) or 0)

    def record_status(self, tool_name: str, status: str, message: str) -> None:
        """Record a call that ended without a normal result (rejected, cancelled, skipped)."""
        self.tool_calls.append({"name": tool_name, "status": status, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "lines": self.lines_written,
            "files": len(self.files_modified),
            "files_read": len(self.files_read),
            "tool_calls": [dict(item) for item in self.tool_calls],
        }
