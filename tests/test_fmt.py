"""Tests for the fmt module (Rich output helpers and the console display)."""

from io import StringIO

import pytest
from rich.console import Console

from sluice import fmt
from sluice.tools import ConfirmationDetails


def _capture(func, *args, **kwargs):
    """Call a fmt function with captured consoles and return plain-text output."""
    buf = StringIO()
    old_console, old_out = fmt._console, fmt._out
    fmt._console = Console(file=buf, no_color=True, width=100)
    fmt._out = Console(file=buf, no_color=True, width=100)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console, fmt._out = old_console, old_out
    return buf.getvalue()


@pytest.fixture
def captured():
    buf = StringIO()
    old_console, old_out = fmt._console, fmt._out
    fmt._console = Console(file=buf, no_color=True, width=100)
    fmt._out = Console(file=buf, no_color=True, width=100)
    yield buf
    fmt._console, fmt._out = old_console, old_out


class TestHelpers:
    def test_tool_call_shows_description(self):
        out = _capture(fmt.tool_call, "read_file", "notes.txt")
        assert "read_file" in out
        assert "notes.txt" in out

    def test_tool_call_skips_duplicate_description(self):
        out = _capture(fmt.tool_call, "list_files", "list_files")
        assert out.count("list_files") == 1

    def test_tool_result(self):
        out = _capture(fmt.tool_result, "grep", 0.25, "3 matches")
        assert "grep" in out
        assert "0.2s" in out or "0.3s" in out
        assert "3 matches" in out

    def test_tool_error(self):
        out = _capture(fmt.tool_error, "shell", "boom")
        assert "shell" in out
        assert "boom" in out

    def test_error_and_warning(self):
        assert "Error: bad thing" in _capture(fmt.error, "bad thing")
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_confirmation_command(self):
        details = ConfirmationDetails(
            "exec", "Confirm Shell Command", "ls", "shell", command="ls -la /var/tmp/some/longer/path"
        )
        out = _capture(fmt.confirmation, details)
        assert "Confirm Shell Command" in out
        assert "ls -la" in out

    def test_confirmation_mcp_server(self):
        details = ConfirmationDetails(
            "mcp",
            "Confirm MCP Tool Execution",
            "search({\"q\": \"release notes for the next version\"})",
            "mcp__docs__search",
            server="docs",
        )
        out = _capture(fmt.confirmation, details)
        assert "release notes" in out
        assert "server: docs" in out

    def test_markup_in_title_is_literal(self):
        details = ConfirmationDetails("exec", "[bold]x[/bold]", "a description wider than the title", "t")
        assert "[bold]x[/bold]" in _capture(fmt.confirmation, details)

    def test_shell_output_strips_trailing_newline(self):
        assert _capture(fmt.shell_output, "hello\n") == "hello\n"
        assert _capture(fmt.shell_output, "") == ""

    def test_assistant_text_blank_is_silent(self):
        assert _capture(fmt.assistant_text, "  \n") == ""

    def test_first_line(self):
        assert fmt._first_line("one\ntwo") == "one"
        assert fmt._first_line("") == ""
        assert fmt._first_line("x" * 300, limit=10) == "x" * 10 + "..."


class TestInit:
    def test_no_color(self):
        old_console, old_out = fmt._console, fmt._out
        try:
            fmt.init(no_color=True)
            assert fmt.console().no_color
        finally:
            fmt._console, fmt._out = old_console, old_out

    def test_force_color(self):
        old_console, old_out = fmt._console, fmt._out
        try:
            fmt.init(color=True)
            assert fmt.console().is_terminal
        finally:
            fmt._console, fmt._out = old_console, old_out


# ---------------------------------------------------------------------------
# ConsoleDisplay
# ---------------------------------------------------------------------------


def _tool_group(status, display="", call_id="c1"):
    return {
        "type": "tool_group",
        "tools": [
            {
                "call_id": call_id,
                "name": "shell",
                "description": "ls -la",
                "status": status,
                "display": display,
            }
        ],
    }


class TestConsoleDisplay:
    def test_pending_assistant_text_not_printed(self, captured):
        display = fmt.ConsoleDisplay()
        item = display.add_item({"type": "assistant", "text": "Hel", "pending": True}, 0.0)
        assert captured.getvalue() == ""
        display.update_item(item, lambda d: {**d, "text": "Hello", "pending": False})
        assert "Hello" in captured.getvalue()

    def test_committed_text_printed_once(self, captured):
        display = fmt.ConsoleDisplay()
        item = display.add_item({"type": "assistant", "text": "Done.", "pending": False}, 0.0)
        display.update_item(item, lambda d: dict(d))
        assert captured.getvalue().count("Done.") == 1

    def test_tool_lifecycle(self, captured):
        display = fmt.ConsoleDisplay()
        item = display.add_item(_tool_group("validating"), 0.0)
        display.update_item(item, lambda d: _tool_group("invoked"))
        display.update_item(item, lambda d: _tool_group("invoked"))
        display.update_item(item, lambda d: _tool_group("success", "total 0\nmore"))
        out = captured.getvalue()
        assert out.count("ls -la") == 1
        assert "✓ shell" in out
        assert "total 0" in out
        assert "more" not in out

    def test_finished_calls_render_once_and_are_forgotten(self, captured):
        def group(first, second):
            return {
                "type": "tool_group",
                "tools": [
                    _tool_group(first, "one done", "c1")["tools"][0],
                    _tool_group(second, "two done", "c2")["tools"][0],
                ],
            }

        display = fmt.ConsoleDisplay()
        item = display.add_item(group("invoked", "pending"), 0.0)
        display.update_item(item, lambda d: group("success", "invoked"))
        display.update_item(item, lambda d: group("success", "invoked"))
        display.update_item(item, lambda d: group("success", "error"))
        out = captured.getvalue()
        assert out.count("one done") == 1
        assert out.count("two done") == 1
        assert display._tool_started == {}

    def test_tool_error_shown_when_quiet(self, captured):
        display = fmt.ConsoleDisplay(quiet=True)
        item = display.add_item(_tool_group("invoked"), 0.0)
        display.update_item(item, lambda d: _tool_group("error", "Tool call cancelled by user."))
        out = captured.getvalue()
        assert "ls -la" not in out
        assert "cancelled by user" in out

    def test_info_hidden_when_quiet(self, captured):
        fmt.ConsoleDisplay(quiet=True).add_item({"type": "info", "text": "Request cancelled."}, 0.0)
        assert captured.getvalue() == ""
        fmt.ConsoleDisplay().add_item({"type": "info", "text": "Request cancelled."}, 0.0)
        assert "Request cancelled." in captured.getvalue()

    def test_error_item(self, captured):
        display = fmt.ConsoleDisplay(quiet=True)
        display.add_item({"type": "error", "text": "connection reset"}, 0.0)
        assert "Error: connection reset" in captured.getvalue()

    def test_item_ids_increase(self):
        display = fmt.ConsoleDisplay(quiet=True)
        first = display.add_item({"type": "other"}, 0.0)
        second = display.add_item({"type": "other"}, 0.0)
        assert second == first + 1
        assert display.items[second] == {"type": "other"}
