"""Terminal UI for the Watch AI chat REPL."""

import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from watch_ai.approval import PendingApproval
from watch_ai.logging import get_logger

log = get_logger(__name__)


class TerminalUI:
    """Renders agent events to the console and asks for approvals."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._special_commands = [
            "/help",
            "/new",
            "/history",
            "/load",
            "/delete",
            "/autopilot",
            "/exit",
            "/quit",
        ]
        self._readline = None
        self._history_file = Path("~/.watch-ai/history").expanduser()
        self._assistant_output_active = False
        self._setup_readline()

    def _setup_readline(self) -> None:
        """Set up line editing, history, and command completion."""
        try:
            import readline
        except ImportError:
            return

        self._readline = readline
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            if self._history_file.exists():
                readline.read_history_file(str(self._history_file))
        except OSError as e:
            log.debug("Could not read input history", error=str(e))
        readline.set_completer(self._complete_special_command)
        readline.parse_and_bind("tab: complete")

    def save_history(self) -> None:
        if self._readline is None:
            return
        try:
            self._readline.write_history_file(str(self._history_file))
        except OSError as e:
            log.debug("Could not save input history", error=str(e))

    def _complete_special_command(self, text: str, state: int) -> str | None:
        matches = [c for c in self._special_commands if c.startswith(text)]
        return matches[state] if state < len(matches) else None

    def print_welcome(self, workspace: Path, autopilot: bool) -> None:
        self.console.print("[bold cyan]=== Watch AI ===[/bold cyan]")
        self.console.print(f"Workspace: {escape(str(workspace))}")
        self.console.print(f"Autopilot: {'[yellow]on[/yellow]' if autopilot else 'off'}")
        self.console.print("Type '/help' for commands, Ctrl+C stops a running answer.\n")

    def print_help(self) -> None:
        """Print help message."""
        help_text = """
Commands:
  /help             - Show this help message
  /new              - Start a new conversation
  /history          - List stored conversations
  /load <id>        - Switch to a stored conversation
  /delete <id>      - Delete a stored conversation
  /autopilot on|off - Run commands without asking
  /exit, /quit      - Exit
"""
        self.console.print(help_text, markup=False)

    def print_error(self, error: str) -> None:
        self.end_assistant_stream()
        self.console.print(f"[red]Error:[/red] {escape(error)}")

    def print_warning(self, warning: str) -> None:
        self.end_assistant_stream()
        self.console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")

    def print_success(self, message: str) -> None:
        self.end_assistant_stream()
        self.console.print(f"[green]OK:[/green] {escape(message)}")

    def print_log_line(self, line: str) -> None:
        self.end_assistant_stream()
        self.console.print(Text.from_ansi(line, style="dim"))

    def print_streaming(self, chunk: str) -> None:
        """Print streaming response chunk."""
        if not self._assistant_output_active:
            self.console.print("[bold]assistant>[/bold] ", end="")
            self._assistant_output_active = True
        self.console.print(chunk, end="", markup=False, highlight=False, soft_wrap=True)

    def end_assistant_stream(self) -> None:
        if self._assistant_output_active:
            self.console.print()
            self._assistant_output_active = False

    def print_tool_calls(self, calls: list[dict[str, Any]]) -> None:
        self.end_assistant_stream()
        for call in calls:
            args = call.get("args") or {}
            summary = ", ".join(f"{k}={str(v)[:60]!r}" for k, v in args.items())
            self.console.print(f"[dim]\\[TOOL] {escape(call.get('name', ''))}({escape(summary)})[/dim]")

    def print_step(self, event: dict[str, Any]) -> None:
        self.end_assistant_stream()
        mark = "[green]✓[/green]" if event.get("success") else "[red]✗[/red]"
        message = str(event.get("message", ""))
        if len(message) > 200:
            message = message[:200] + "..."
        self.console.print(f"  {mark} {escape(str(event.get('tool', '')))}: {escape(message)}")

    def print_stats(self, stats: dict[str, Any]) -> None:
        self.end_assistant_stream()
        files = int(stats.get("files") or 0)
        parts = [f"{len(stats.get('tool_calls') or [])} tool calls"]
        if files:
            parts.append(f"{files} files modified")
        if stats.get("lines"):
            parts.append(f"{stats['lines']} lines written")
        self.console.print(f"[dim]{', '.join(parts)}[/dim]")

    def print_history(self, chats: list[dict[str, Any]]) -> None:
        if not chats:
            self.console.print("No stored conversations.")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("Id")
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        table.add_column("Updated")
        for chat in chats:
            table.add_row(
                chat["id"],
                chat.get("title", ""),
                str(chat.get("message_count", 0)),
                chat.get("updated_at", "")[:19],
            )
        self.console.print(table)

    def handle_event(self, event: dict[str, Any]) -> None:
        """Agent event callback."""
        event_type = event.get("type")
        if event_type == "content":
            self.print_streaming(str(event.get("delta", "")))
        elif event_type == "tool_call":
            self.print_tool_calls(event.get("calls") or [])
        elif event_type == "step":
            self.print_step(event)
        elif event_type == "approval_required":
            self.end_assistant_stream()
            self.console.print("[yellow]Command waiting for approval.[/yellow]")
        elif event_type == "done":
            self.print_stats(event.get("stats") or {})
        elif event_type == "error":
            self.print_error(str(event.get("error", "")))

    def confirm_command(self, approval: PendingApproval) -> bool:
        """Ask whether a pending command may run."""
        self.end_assistant_stream()
        self.console.print(f"[bold yellow]Run command?[/bold yellow] {escape(approval.command)}")
        self.console.print(f"[dim]in {escape(approval.cwd)}[/dim]")
        return Confirm.ask("Approve", default=False, console=self.console)

    def prompt(self, prompt_text: str = "> ") -> str:
        """Prompt for input."""
        self.end_assistant_stream()
        return input(prompt_text)

    def handle_special_command(self, cmd: str) -> tuple[str, str] | None:
        """Parse a slash command into (action, argument); None for chat text."""
        text = cmd.strip()
        if not text.startswith("/"):
            return None
        name, _, arg = text.partition(" ")
        name = name.lower()
        arg = arg.strip()
        if name in ("/exit", "/quit"):
            return "exit", ""
        if name == "/help":
            return "help", ""
        if name == "/new":
            return "new", ""
        if name == "/history":
            return "history", ""
        if name in ("/load", "/delete"):
            if not arg:
                self.print_error(f"Usage: {name} <id>")
                return "noop", ""
            return name[1:], arg
        if name == "/autopilot":
            if arg.lower() not in ("on", "off"):
                self.print_error("Usage: /autopilot on|off")
                return "noop", ""
            return "autopilot", arg.lower()
        self.print_error(f"Unknown command: {name}")
        return "noop", ""


_ui: TerminalUI | None = None


def get_ui() -> TerminalUI:
    """Get the global UI instance."""
    global _ui
    if _ui is None:
        _ui = TerminalUI(Console(file=sys.stdout))
    return _ui


def set_ui(ui: TerminalUI) -> None:
    """Set the global UI instance."""
    global _ui
    _ui = ui
