"""ANSI-formatted terminal output using Rich.

Diagnostics go to stderr; assistant text goes to stdout.
"""

import threading
import time

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

_console = Console(stderr=True)
_out = Console()


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level consoles from CLI flags.

    Call once at startup, before any output.
    """
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)


def console() -> Console:
    return _console


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, description: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if description and description != name:
        for line in description.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirmation(details) -> None:
    """Show what a tool call is about to do before asking the user."""
    body = Text()
    if details.command:
        body.append(details.command, style="bold")
    else:
        body.append(details.description)
    if details.server:
        body.append(f"\nserver: {details.server}", style="dim")
    _console.print(
        Panel(body, title=escape(details.title), border_style="yellow", expand=False)
    )


def shell_output(text: str) -> None:
    if text:
        _console.print(Text(text.rstrip("\n")))


# -- MCP ---------------------------------------------------------------------


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(
        Text(f"  MCP server {name!r} connected ({tool_count} tools)", style="dim")
    )


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ MCP server {name!r}: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    if text.strip():
        _out.print(Markdown(text))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Prefix a line with ! to run it as a shell command. "
            "Type /exit or Ctrl-D to quit.",
            style="dim",
        )
    )


def _first_line(text: str, limit: int = 200) -> str:
    line = text.strip().split("\n", 1)[0] if text else ""
    return line if len(line) <= limit else line[:limit] + "..."


class ConsoleDisplay:
    """Display sink that renders turn items to the terminal.

    Assistant items are printed once they are committed (no longer
    pending); tool entries are printed on each status change. With
    ``quiet`` only assistant text and errors are shown.
    """

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self.items: dict[int, dict] = {}
        self._next_id = 0
        self._lock = threading.Lock()
        self._tool_started: dict[tuple[int, str], float] = {}

    def add_item(self, data: dict, timestamp: float) -> int:
        with self._lock:
            item_id = self._next_id
            self._next_id += 1
            self.items[item_id] = data
        self._render(item_id, None, data)
        return item_id

    def update_item(self, item_id: int, update_fn) -> None:
        with self._lock:
            old = self.items[item_id]
            new = update_fn(old)
            self.items[item_id] = new
        self._render(item_id, old, new)

    def _render(self, item_id: int, old: dict | None, new: dict) -> None:
        kind = new.get("type")
        if kind == "assistant":
            if not new["pending"] and (old is None or old["pending"]):
                assistant_text(new["text"])
        elif kind == "tool_group":
            seen = {t["call_id"]: t["status"] for t in old["tools"]} if old else {}
            for entry in new["tools"]:
                if seen.get(entry["call_id"]) != entry["status"]:
                    self._render_tool(item_id, entry)
        elif kind == "error":
            error(new["text"])
        elif kind == "info" and not self.quiet:
            info(new["text"])

    def _render_tool(self, item_id: int, entry: dict) -> None:
        key = (item_id, entry["call_id"])
        status = entry["status"]
        if status == "invoked":
            self._tool_started[key] = time.monotonic()
            if not self.quiet:
                tool_call(entry["name"], entry["description"])
        elif status == "success":
            started = self._tool_started.pop(key, None)
            if not self.quiet:
                elapsed = time.monotonic() - started if started is not None else 0.0
                tool_result(entry["name"], elapsed, _first_line(entry["display"]))
        elif status == "error":
            self._tool_started.pop(key, None)
            tool_error(entry["name"], _first_line(entry["display"]))
