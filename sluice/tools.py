"""Tool definitions, the tool registry and the built-in workspace tools."""

import fnmatch
import json
import logging
import os
import re
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Callable

from .commands import (
    escape_argument,
    split_command,
    validate_command,
    validate_tool_command,
    validate_tool_name,
)
from .shell import ShellExecutionResult, ShellExecutor

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100

MAX_INLINE_OUTPUT = 10 * 1024  # 10KB, max shell output returned inline
SLUICE_DIR = ".sluice"
OUTPUT_FILE_TTL = 600  # seconds before temp file cleanup
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120

_JSON_TYPES = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


def _is_json_type(value: Any, name: str) -> bool:
    if name == "null":
        return value is None
    expected = _JSON_TYPES[name]
    # bool is a subclass of int
    if isinstance(value, bool) and expected is not bool:
        return False
    return isinstance(value, expected)


@dataclass(frozen=True)
class ToolOutput:
    """What a tool produced: ``content`` goes to the model, ``display`` to the user."""

    content: str
    display: str


@dataclass(frozen=True)
class ConfirmationDetails:
    kind: str  # "exec", "mcp" or "info"
    title: str
    description: str
    tool_name: str
    server: str | None = None
    command: str | None = None


class ToolError(Exception):
    """Expected tool failure. The message is reported to the model as data."""

    def __init__(self, message: str, display: str | None = None):
        super().__init__(message)
        self.display = display if display is not None else message


class ToolCancelled(ToolError):
    """The tool stopped because the turn was cancelled."""


class Tool:
    """Base class for everything the model can call.

    Subclasses set ``name``, ``description`` and ``parameters`` (a JSON
    schema object) and implement ``execute``. ``server`` names the external
    server a tool came from, if any; trust decisions key on it.
    """

    name: str = ""
    description: str = ""
    parameters: dict = {"type": "object", "properties": {}}
    server: str | None = None

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def validate(self, args: dict) -> str | None:
        """Check required keys and the JSON type of each known property.

        Property schemas that are not objects, or whose type is unknown,
        are not checked.
        """
        if not isinstance(args, dict):
            return "Tool arguments must be a JSON object."
        for key in self.parameters.get("required", []):
            if key not in args:
                return f"Missing required parameter: {key}"
        properties = self.parameters.get("properties", {})
        if not isinstance(properties, dict):
            return None
        for key, value in args.items():
            prop = properties.get(key)
            if not isinstance(prop, dict) or value is None:
                continue
            declared = prop.get("type")
            names = declared if isinstance(declared, list) else [declared]
            if not names or any(
                not isinstance(n, str) or (n != "null" and n not in _JSON_TYPES)
                for n in names
            ):
                continue
            if not any(_is_json_type(value, n) for n in names):
                wanted = " or ".join(names)
                return f"Parameter {key!r} must be of type {wanted}."
        return None

    def get_description(self, args: dict) -> str:
        return f"{self.name}({json.dumps(args, ensure_ascii=False)})"

    def should_confirm_execute(self, args: dict) -> ConfirmationDetails | None:
        return None

    def execute(
        self,
        args: dict,
        cancel: threading.Event,
        on_output: Callable[[str], None] | None = None,
    ) -> ToolOutput:
        raise NotImplementedError


class ToolRegistry:
    """Name -> Tool lookup. Read-only while a turn is running."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Add a tool.

        Raises:
            ValueError: If the tool name is invalid or reserved.
        """
        reason = validate_tool_name(tool.name)
        if reason is not None:
            raise ValueError(reason)
        if tool.name in self._tools:
            logger.warning("tool %r registered twice; keeping the newer one", tool.name)
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [tool.schema() for tool in self._tools.values()]


# --- workspace paths ---------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Symlinks are resolved for both the base directory and the target.

    Raises:
        ToolError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ToolError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _check_pattern(pattern: str) -> None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise ToolError(f"Pattern {pattern!r} must be relative, not absolute")
    # Both splittings, so "../foo" and "..\\foo" are caught.
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise ToolError(f"Pattern {pattern!r} contains '..', which is not allowed")


def _is_within_base(path: Path, base: Path) -> bool:
    try:
        return path.resolve().is_relative_to(base)
    except (OSError, ValueError):
        return False


def _resolve_dir(path: str, base_dir: str) -> Path:
    root = safe_resolve(path, base_dir)
    if not root.exists():
        raise ToolError(f"Path does not exist: {path}")
    if not root.is_dir():
        raise ToolError(f"Path is not a directory: {path}")
    return root


def _relative(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


def read_file(
    file_path: str,
    base_dir: str,
    offset: int = 1,
    limit: int = 2000,
    tail: int | None = None,
) -> str:
    """Read a file with line numbers, or list a directory."""
    resolved = safe_resolve(file_path, base_dir)
    if not resolved.exists():
        raise ToolError(f"Path does not exist: {file_path}")

    if resolved.is_dir():
        output_parts = []
        total_bytes = 0
        truncated = False
        try:
            for child in sorted(resolved.iterdir()):
                name = child.name + ("/" if child.is_dir() else "")
                encoded_len = len(name.encode("utf-8")) + 1
                if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                    truncated = True
                    break
                output_parts.append(name)
                total_bytes += encoded_len
        except PermissionError as exc:
            raise ToolError(str(exc)) from exc
        result = "\n".join(output_parts)
        if truncated:
            result += "\n[truncated at 50KB]"
        return result

    try:
        with open(resolved, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except OSError as exc:
        raise ToolError(str(exc)) from exc
    if b"\x00" in chunk:
        raise ToolError(f"Binary file detected: {file_path}")

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ToolError(f"Failed to decode {file_path} as UTF-8: {exc}") from exc
    except OSError as exc:
        raise ToolError(str(exc)) from exc

    lines = text.splitlines()
    if tail is not None:
        start = max(len(lines) - max(tail, 1), 0)
    else:
        start = max(offset - 1, 0)
    selected = lines[start : start + max(limit, 0)]

    output_parts = []
    total_bytes = 0
    lines_emitted = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)
        total_bytes += encoded_len
        lines_emitted += 1

    result = "\n".join(output_parts)
    remaining = len(lines) - (start + lines_emitted)
    if remaining > 0:
        next_offset = start + lines_emitted + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return result


def list_files(pattern: str, path: str, base_dir: str) -> str:
    """Recursively list files matching a glob pattern, newest first."""
    _check_pattern(pattern)
    root = _resolve_dir(path, base_dir)
    base = Path(base_dir).resolve()

    matched: list[Path] = []
    for filepath in root.glob(pattern):
        if ".git" in filepath.relative_to(root).parts:
            continue
        if not filepath.is_file() or not _is_within_base(filepath, base):
            continue
        matched.append(filepath)

    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    matched = matched[:MAX_LIST_RESULTS]

    output_parts: list[str] = []
    total_bytes = 0
    for filepath in matched:
        rel = _relative(filepath, base)
        encoded_len = len(rel.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            truncated = True
            break
        output_parts.append(rel)
        total_bytes += encoded_len

    result = "\n".join(output_parts)
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


def grep(pattern: str, path: str, base_dir: str, include: str | None = None) -> str:
    """Search file contents for a regex pattern, grouped by file."""
    if include is not None:
        _check_pattern(include)
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ToolError(f"Invalid regex {pattern!r}: {exc}") from exc

    root = _resolve_dir(path, base_dir)
    base = Path(base_dir).resolve()

    # All matches first, then sort and cap, so the cap keeps the newest files.
    matches: list[tuple[Path, int, str, float]] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            if include and not fnmatch.fnmatch(filename, include):
                continue
            filepath = Path(dirpath) / filename
            if not _is_within_base(filepath, base):
                continue
            try:
                with open(filepath, "rb") as f:
                    if b"\x00" in f.read(BINARY_CHECK_BYTES):
                        continue
                text = filepath.read_text(encoding="utf-8")
                mtime = filepath.stat().st_mtime
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line, mtime))

    if not matches:
        return "No matches found."

    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total_found = len(matches)
    truncated = total_found > MAX_GREP_MATCHES
    matches = matches[:MAX_GREP_MATCHES]

    grouped: OrderedDict[Path, list[tuple[int, str]]] = OrderedDict()
    for filepath, line_no, line_text, _ in matches:
        grouped.setdefault(filepath, []).append((line_no, line_text))

    header = f"Found {total_found} matches"
    output_parts = [header]
    total_bytes = len(header.encode("utf-8")) + 1
    for filepath, file_matches in grouped.items():
        entries = [f"\n{_relative(filepath, base)}:"]
        entries += [
            f"  Line {line_no}: {text[:MAX_LINE_LENGTH]}"
            for line_no, text in file_matches
        ]
        for entry in entries:
            encoded_len = len(entry.encode("utf-8")) + 1
            if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
                truncated = True
                break
            output_parts.append(entry)
            total_bytes += encoded_len
        else:
            continue
        break

    result = "\n".join(output_parts)
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return result


class ReadFileTool(Tool):
    name = "read_file"
    description = (
        "Read the contents of a file or list a directory. "
        "For files, returns lines prefixed with line numbers. "
        "Use offset/limit to paginate forward, or tail=N to start from the last N lines."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "Path to the file or directory to read.",
            },
            "offset": {
                "type": "integer",
                "description": "1-based line number to start reading from. Defaults to 1.",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to return. Defaults to 2000.",
            },
            "tail": {
                "type": "integer",
                "minimum": 1,
                "description": "Return the last N lines of the file.",
            },
        },
        "required": ["file_path"],
    }

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def get_description(self, args: dict) -> str:
        return f"read {args.get('file_path', '')}"

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        content = read_file(
            args["file_path"],
            self.base_dir,
            offset=args.get("offset", 1),
            limit=args.get("limit", 2000),
            tail=args.get("tail"),
        )
        lines = content.count("\n") + 1 if content else 0
        return ToolOutput(content, f"Read {lines} lines from {args['file_path']}")


class ListFilesTool(Tool):
    name = "list_files"
    description = (
        "Recursively list files matching a glob pattern. "
        "Returns paths sorted by modification time (newest first), "
        "relative to the base directory."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": 'Glob pattern to match files, e.g. "**/*.py".',
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to "." (base directory).',
            },
        },
        "required": ["pattern"],
    }

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def get_description(self, args: dict) -> str:
        return f"list {args.get('pattern', '')} in {args.get('path', '.')}"

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        content = list_files(args["pattern"], args.get("path", "."), self.base_dir)
        return ToolOutput(content, content)


class GrepTool(Tool):
    name = "grep"
    description = (
        "Search file contents for a regex pattern. "
        "Returns matches grouped by file with line numbers, "
        "sorted by file modification time (newest first)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Python regex pattern to search for.",
            },
            "path": {
                "type": "string",
                "description": 'Directory to search in. Defaults to "." (base directory).',
            },
            "include": {
                "type": "string",
                "description": 'Glob pattern to filter filenames, e.g. "*.py".',
            },
        },
        "required": ["pattern"],
    }

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def get_description(self, args: dict) -> str:
        return f"grep {args.get('pattern', '')!r} in {args.get('path', '.')}"

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        content = grep(
            args["pattern"],
            args.get("path", "."),
            self.base_dir,
            include=args.get("include"),
        )
        return ToolOutput(content, content.split("\n", 1)[0])


# --- shell --------------------------------------------------------------------


def cleanup_old_cmd_outputs(base_dir: str) -> int:
    """Remove cmd_output_* files older than OUTPUT_FILE_TTL from .sluice/.

    Returns the number of files removed.
    """
    scratch = Path(base_dir) / SLUICE_DIR
    if not scratch.is_dir():
        return 0
    cutoff = time.time() - OUTPUT_FILE_TTL
    removed = 0
    for f in scratch.glob("cmd_output_*.txt"):
        try:
            if f.stat().st_mtime < cutoff:
                f.unlink()
                removed += 1
        except OSError:
            pass
    return removed


def save_large_output(output: str, base_dir: str) -> str:
    """Save large command output under .sluice/ and return a summary message.

    The file is removed after OUTPUT_FILE_TTL seconds. Falls back to
    truncated inline output when the file cannot be written.
    """
    size_kb = len(output.encode("utf-8")) / 1024
    scratch = Path(base_dir) / SLUICE_DIR
    filename = f"cmd_output_{uuid.uuid4().hex[:12]}.txt"
    filepath = scratch / filename
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        filepath.write_text(output, encoding="utf-8")
    except OSError as exc:
        logger.warning("could not save command output: %s", exc)
        truncated = output.encode("utf-8")[:MAX_INLINE_OUTPUT].decode(
            "utf-8", errors="replace"
        )
        return truncated + "\n[output truncated, failed to write temp file]"

    def _cleanup():
        try:
            filepath.unlink(missing_ok=True)
        except OSError:
            pass

    timer = threading.Timer(OUTPUT_FILE_TTL, _cleanup)
    timer.daemon = True
    timer.start()

    return (
        f"Command output too large for context ({size_kb:.1f}KB).\n"
        f"Full output saved to: {SLUICE_DIR}/{filename}\n"
        "Use read_file to examine the output (supports offset and limit for pagination)."
    )


class _Deadline:
    """Cancellation view that also fires once ``timeout`` seconds have passed."""

    def __init__(
        self,
        cancel: threading.Event | None,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cancel = cancel
        self._clock = clock
        self._end = clock() + timeout

    @property
    def expired(self) -> bool:
        return self._clock() >= self._end

    def is_set(self) -> bool:
        return (self._cancel is not None and self._cancel.is_set()) or self.expired


def _or_none(value) -> str:
    return "(none)" if value is None or value == "" else str(value)


def format_shell_result(
    command: str, directory: str | None, result: ShellExecutionResult, output: str
) -> str:
    return "\n".join(
        [
            f"Command: {command}",
            f"Directory: {directory or '(root)'}",
            f"Output: {output or '(empty)'}",
            f"Error: {_or_none(result.error)}",
            f"Exit Code: {_or_none(result.exit_code)}",
            f"Signal: {_or_none(result.signal)}",
        ]
    )


class ShellTool(Tool):
    """Runs validated shell commands in the workspace through ShellExecutor."""

    name = "run_shell_command"
    description = (
        "Execute a shell command with bash -c (cmd.exe /c on Windows) and return "
        "its combined stdout and stderr. Command chaining, redirection, "
        "substitution and newlines are rejected; run one command per call. "
        "The working directory does not persist between calls."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Exact command to run."},
            "description": {
                "type": "string",
                "description": "Short description of what the command does.",
            },
            "directory": {
                "type": "string",
                "description": "Directory to run in, relative to the base directory.",
            },
            "timeout": {
                "type": "integer",
                "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {DEFAULT_TIMEOUT}.",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        base_dir: str,
        executor: ShellExecutor,
        default_timeout: int = DEFAULT_TIMEOUT,
    ):
        self.base_dir = base_dir
        self.executor = executor
        self.default_timeout = default_timeout

    def validate(self, args: dict) -> str | None:
        reason = super().validate(args)
        if reason is not None:
            return reason
        reason = validate_command(args["command"])
        if reason is not None:
            return reason
        directory = args.get("directory")
        if directory:
            try:
                _check_pattern(directory)
                _resolve_dir(directory, self.base_dir)
            except ToolError as exc:
                return str(exc)
        return None

    def get_description(self, args: dict) -> str:
        desc = args["command"]
        if args.get("directory"):
            desc += f" [in {args['directory']}]"
        if args.get("description"):
            desc += f" ({args['description']})"
        return desc

    def should_confirm_execute(self, args: dict) -> ConfirmationDetails:
        return ConfirmationDetails(
            kind="exec",
            title="Confirm Shell Command",
            description=args.get("description") or args["command"],
            tool_name=self.name,
            command=args["command"],
        )

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        command = args["command"]
        directory = args.get("directory")
        cwd = str(safe_resolve(directory or ".", self.base_dir))
        timeout = max(1, min(args.get("timeout") or self.default_timeout, MAX_TIMEOUT))
        deadline = _Deadline(cancel, timeout)

        result = self.executor.execute(
            command, cwd, cancel=deadline, on_output=on_output, on_debug=logger.debug
        )

        output = result.output
        if len(output.encode("utf-8")) > MAX_INLINE_OUTPUT:
            output = save_large_output(output, self.base_dir)
        content = format_shell_result(command, directory, result, output)

        if result.final_cwd and Path(result.final_cwd).resolve() != Path(cwd).resolve():
            content += (
                f"\nNote: the command changed directory to {result.final_cwd}; "
                "the change does not persist to later commands."
            )

        if result.aborted:
            if cancel is not None and cancel.is_set():
                raise ToolCancelled(
                    "Command was cancelled by user before it could complete.\n" + content,
                    display="Command cancelled.",
                )
            raise ToolError(
                f"Command timed out after {timeout}s.\n" + content,
                display=f"Command timed out after {timeout}s.",
            )
        if result.error is not None:
            raise ToolError(content, display=f"Command failed to start: {result.error}")
        if result.signal is not None or result.exit_code != 0:
            reason = (
                f"Command terminated by {result.signal}."
                if result.signal
                else f"Command exited with code {result.exit_code}."
            )
            raise ToolError(content, display=(result.output + "\n" + reason).lstrip())
        return ToolOutput(content, result.output or "(no output)")


# --- discovered tools -----------------------------------------------------------


class DiscoveredTool(Tool):
    """A project tool reported by ``tool_discovery_command``.

    Called as ``<call_command> <name>`` with the JSON arguments on stdin.
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        call_command: str,
        base_dir: str,
        executor: ShellExecutor,
    ):
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}
        self.call_command = call_command
        self.base_dir = base_dir
        self.executor = executor

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        command = f"{self.call_command} {escape_argument(self.name)}"
        payload = json.dumps(args).encode("utf-8")
        result = self.executor.execute(
            command, self.base_dir, cancel=cancel, input=payload
        )
        if result.aborted:
            raise ToolCancelled(f"Tool {self.name!r} was cancelled.")
        if result.error is None and result.signal is None and result.exit_code == 0:
            return ToolOutput(result.output, result.output)
        content = "\n".join(
            [
                f"Output: {result.output or '(empty)'}",
                f"Error: {_or_none(result.error)}",
                f"Exit Code: {_or_none(result.exit_code)}",
                f"Signal: {_or_none(result.signal)}",
            ]
        )
        raise ToolError(content)


def _declarations(data) -> list[dict]:
    if not isinstance(data, list):
        raise ToolError("Tool discovery output must be a JSON array.")
    decls: list[dict] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        if isinstance(entry.get("function_declarations"), list):
            decls.extend(d for d in entry["function_declarations"] if isinstance(d, dict))
        elif "name" in entry:
            decls.append(entry)
    return decls


def discover_tools(
    discovery_command: str,
    call_command: str,
    base_dir: str,
    executor: ShellExecutor,
) -> list[DiscoveredTool]:
    """Run the project's discovery command and build tools from its output.

    Raises:
        ToolError: If either command is rejected, discovery fails, or its
            output is not a JSON array of function declarations.
    """
    for label, command in (("discovery", discovery_command), ("call", call_command)):
        reason = validate_tool_command(command)
        if reason is not None:
            raise ToolError(f"Tool {label} command rejected: {reason}")

    result = executor.execute(discovery_command, base_dir)
    if result.error is not None or result.exit_code != 0:
        raise ToolError(
            f"Tool discovery command failed (exit code {result.exit_code}, "
            f"error {result.error}): {result.output.strip()}"
        )
    try:
        data = json.loads(result.output)
    except json.JSONDecodeError as exc:
        raise ToolError(f"Tool discovery output is not valid JSON: {exc}") from exc

    tools = []
    for decl in _declarations(data):
        name = decl.get("name")
        reason = validate_tool_name(name)
        if reason is not None:
            logger.warning("skipping discovered tool %r: %s", name, reason)
            continue
        tools.append(
            DiscoveredTool(
                name=name,
                description=decl.get("description", ""),
                parameters=decl.get("parameters") or {},
                call_command=call_command,
                base_dir=base_dir,
                executor=executor,
            )
        )
    logger.info("discovered %d tools via %s", len(tools), split_command(discovery_command)[0])
    return tools


def builtin_tools(
    base_dir: str, executor: ShellExecutor, shell_timeout: int = DEFAULT_TIMEOUT
) -> list[Tool]:
    return [
        ReadFileTool(base_dir),
        ListFilesTool(base_dir),
        GrepTool(base_dir),
        ShellTool(base_dir, executor, default_timeout=shell_timeout),
    ]
