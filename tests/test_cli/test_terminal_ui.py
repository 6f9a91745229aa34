import io

from rich.console import Console

from watch_ai.approval import PendingApproval
from watch_ai.cli import TerminalUI


def _ui() -> tuple[TerminalUI, io.StringIO]:
    buffer = io.StringIO()
    return TerminalUI(Console(file=buffer, width=120, color_system=None)), buffer


def test_special_command_completion():
    ui, _ = _ui()
    assert ui._complete_special_command("/h", 0) == "/help"
    assert ui._complete_special_command("/h", 1) == "/history"
    assert ui._complete_special_command("hello", 0) is None


def test_handle_special_command_parses_arguments():
    ui, buffer = _ui()
    assert ui.handle_special_command("fix the bug") is None
    assert ui.handle_special_command("/quit") == ("exit", "")
    assert ui.handle_special_command("/load abc-123") == ("load", "abc-123")
    assert ui.handle_special_command("/autopilot ON") == ("autopilot", "on")
    assert ui.handle_special_command("/autopilot maybe") == ("noop", "")
    assert ui.handle_special_command("/load") == ("noop", "")
    assert "Usage: /load <id>" in buffer.getvalue()


def test_events_render_stream_steps_and_stats():
    ui, buffer = _ui()

    ui.handle_event({"type": "content", "delta": "Hello "})
    ui.handle_event({"type": "content", "delta": "[world]"})
    ui.handle_event({"type": "tool_call", "calls": [{"id": "c1", "name": "read_file", "args": {"path": "a.py"}}]})
    ui.handle_event({"type": "step", "tool": "read_file", "success": True, "message": "Read a.py (3 lines)"})
    ui.handle_event({"type": "step", "tool": "edit_file", "success": False, "message": "Text not found in a.py"})
    ui.handle_event({"type": "done", "stats": {"lines": 4, "files": 1, "tool_calls": [{}, {}]}})

    out = buffer.getvalue()
    assert "assistant>" in out
    assert "Hello [world]\n" in out
    assert "[TOOL] read_file(path='a.py')" in out
    assert "✓ read_file: Read a.py (3 lines)" in out
    assert "✗ edit_file: Text not found in a.py" in out
    assert "2 tool calls, 1 files modified, 4 lines written" in out


def test_confirm_command_reads_answer(monkeypatch):
    ui, buffer = _ui()
    monkeypatch.setattr("rich.prompt.Confirm.ask", lambda *args, **kwargs: True)
    approval = PendingApproval(id="appr_1", command="npm test", cwd="/work")

    assert ui.confirm_command(approval) is True
    assert "npm test" in buffer.getvalue()


def test_print_history_table():
    ui, buffer = _ui()
    ui.print_history([
        {"id": "c1", "title": "Fix login", "message_count": 4, "updated_at": "2026-01-02T03:04:05+00:00"},
    ])
    out = buffer.getvalue()
    assert "Fix login" in out
    assert "2026-01-02T03:04:05" in out


def test_log_lines_go_through_the_console(config):
    from watch_ai.logging import configure_logging, get_logger, set_log_sink

    ui, buffer = _ui()
    set_log_sink(ui.print_log_line)
    try:
        configure_logging("INFO")
        get_logger("watch_ai.sink_check").warning("disk almost full", free_mb=12)
    finally:
        set_log_sink(None)
        configure_logging()

    assert "disk almost full" in buffer.getvalue()
