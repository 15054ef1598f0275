"""Static validation, tokenization and escaping of shell command strings.

Everything here is pure: no filesystem access, no subprocesses, and the
same answer on every host OS. The shell tool and tool discovery call
``validate_command`` / ``validate_tool_command`` before anything is handed
to ``sluice.shell``.
"""

import re
import sys
from pathlib import PurePosixPath, PureWindowsPath

EMPTY = "Command cannot be empty."
UNCLOSED_QUOTE = "Unclosed quote in command."
NEWLINE = "Newline characters are not allowed."
SUBSTITUTION = "Command substitution is not allowed."
EXPANSION = "Parameter expansion operators are not allowed."
LOGICAL = "Logical operators (&&, ||) are not allowed."
CHAINING = "Command chaining characters are not allowed."
REDIRECTION = "Redirection operators are not allowed."

# Reported in this order when a command trips more than one category.
_CATEGORY_ORDER = (NEWLINE, SUBSTITUTION, EXPANSION, LOGICAL, CHAINING, REDIRECTION)

DANGEROUS_COMMANDS = frozenset({"eval", "exec", "source", "."})

SENSITIVE_PATHS = (
    "/etc/passwd",
    "/etc/shadow",
    "/etc/sudoers",
    "/etc/hosts",
    "~/.ssh/",
    "~/.aws/",
    "~/.docker/",
    "/root/",
    "/proc/",
    "/sys/",
    "/dev/",
    "C:\\Windows\\System32",
    "C:\\Users\\",
    "%USERPROFILE%",
    "%APPDATA%",
    "%TEMP%",
)

ALLOWED_EXECUTABLES = frozenset(
    {
        # package managers
        "npm",
        "npx",
        "yarn",
        "pnpm",
        "pip",
        "pip3",
        "poetry",
        "uv",
        # version control
        "git",
        # build tools
        "make",
        "cmake",
        "gradle",
        "mvn",
        "ant",
        "cargo",
        "go",
        "rustc",
        # runtimes and linters
        "node",
        "deno",
        "bun",
        "tsc",
        "eslint",
        "prettier",
        "python",
        "python3",
        # POSIX utilities
        "echo",
        "cat",
        "head",
        "tail",
        "grep",
        "find",
        "ls",
        "pwd",
        # containers
        "docker",
        "docker-compose",
        # dev servers
        "serve",
        "http-server",
    }
)

RESERVED_TOOL_NAMES = frozenset(
    {
        "rm",
        "del",
        "format",
        "fdisk",
        "sudo",
        "su",
        "exec",
        "eval",
        "bash",
        "sh",
        "cmd",
        "powershell",
        "python",
        "node",
        "ruby",
    }
)
MAX_TOOL_NAME_LENGTH = 64

_TOOL_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
# Operators inside ${...} that assign, default or fail (:=, :-, :?, :+, =, ...).
_EXPANSION_OP_RE = re.compile(r"[:=?+|-]")
_WINDOWS_SPECIAL_RE = re.compile(r'([&|<>^"%])')


class CommandRejected(ValueError):
    """A command string failed static validation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _find_metacharacters(command: str) -> set[str]:
    """Return the rejection categories present outside single quotes.

    Works on malformed input too: an unterminated quote simply extends to
    the end of the string. Double quotes neutralize chaining and redirection
    but not substitution, since the shell still expands inside them.
    """
    found: set[str] = set()
    if "\n" in command or "\r" in command:
        found.add(NEWLINE)

    quote = None
    i = 0
    n = len(command)
    while i < n:
        c = command[i]
        if quote == "'":
            if c == "'":
                quote = None
            i += 1
            continue
        if c == "\\":
            i += 2
            continue
        if c == "`":
            found.add(SUBSTITUTION)
        elif c == "$" and command.startswith("$(", i):
            found.add(SUBSTITUTION)
        elif c == "$" and command.startswith("${", i):
            end = command.find("}", i)
            body = command[i + 2 : end if end != -1 else n]
            if _EXPANSION_OP_RE.search(body):
                found.add(EXPANSION)
        elif quote == '"':
            if c == '"':
                quote = None
        elif c in "'\"":
            quote = c
        elif c in "&|":
            if command.startswith(c * 2, i):
                found.add(LOGICAL)
                i += 2
                continue
            found.add(CHAINING)
        elif c == ";":
            found.add(CHAINING)
        elif c in "<>":
            found.add(REDIRECTION)
        i += 1
    return found


def split_command(command: str, windows: bool = False) -> list[str]:
    """Tokenize a command line into arguments.

    POSIX rules: single quotes are fully literal, double quotes honour
    backslash escapes of ``" \\ $ ` newline``, and an unquoted backslash
    escapes the next character. With ``windows=True`` only double quotes
    group and ``^`` escapes the next character.

    Raises:
        CommandRejected: If a quote is left open.
    """
    tokens: list[str] = []
    current: list[str] = []
    in_token = False
    quote = None
    i = 0
    n = len(command)

    while i < n:
        c = command[i]
        nxt = command[i + 1] if i + 1 < n else None
        if windows:
            if c == "^" and nxt is not None:
                current.append(nxt)
                in_token = True
                i += 1
            elif c == '"':
                quote = None if quote else '"'
                in_token = True
            elif c.isspace() and not quote:
                if in_token:
                    tokens.append("".join(current))
                    current = []
                    in_token = False
            else:
                current.append(c)
                in_token = True
        elif quote == "'":
            if c == "'":
                quote = None
            else:
                current.append(c)
        elif quote == '"':
            if c == '"':
                quote = None
            elif c == "\\" and nxt is not None and nxt in '"\\$`\n':
                current.append(nxt)
                i += 1
            else:
                current.append(c)
        elif c == "\\":
            current.append(nxt if nxt is not None else c)
            in_token = True
            i += 1
        elif c in "'\"":
            quote = c
            in_token = True
        elif c.isspace():
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        else:
            current.append(c)
            in_token = True
        i += 1

    if quote:
        raise CommandRejected(UNCLOSED_QUOTE)
    if in_token:
        tokens.append("".join(current))
    return tokens


def _base_name(executable: str) -> str:
    # PureWindowsPath splits on both / and \
    name = PureWindowsPath(executable).name or PurePosixPath(executable).name
    name = name.lower()
    if name.endswith(".exe"):
        name = name[: -len(".exe")]
    return name


def validate_command(command: str) -> str | None:
    """Check a shell command for injection patterns.

    Returns the rejection reason, or None when the command may run.
    """
    if not isinstance(command, str) or not command.strip():
        return EMPTY

    found = _find_metacharacters(command)
    for category in _CATEGORY_ORDER:
        if category in found:
            return category

    try:
        tokens = split_command(command)
    except CommandRejected as exc:
        return exc.reason
    if not tokens:
        return EMPTY

    executable = tokens[0].lower()
    if executable in DANGEROUS_COMMANDS or _base_name(executable) in DANGEROUS_COMMANDS:
        return f"Command '{tokens[0]}' can execute arbitrary code and is not allowed."

    for arg in tokens[1:]:
        lowered = arg.lower()
        for path in SENSITIVE_PATHS:
            if path.lower() in lowered:
                return f"Access to sensitive path '{path}' is not allowed."
    return None


def validate_tool_command(command: str) -> str | None:
    """Stricter validation for discovery and tool-call commands.

    On top of ``validate_command``, the executable's base name must be on
    ALLOWED_EXECUTABLES.
    """
    reason = validate_command(command)
    if reason is not None:
        return reason
    executable = split_command(command)[0]
    if _base_name(executable) not in ALLOWED_EXECUTABLES:
        return (
            f"Executable '{executable}' is not in the allowlist of permitted "
            "tool discovery/call commands."
        )
    return None


def validate_tool_name(name: str) -> str | None:
    """Check that a model-supplied tool name is a plain identifier."""
    if not isinstance(name, str) or not name.strip():
        return "Tool name must be a non-empty string."
    name = name.strip()
    if not _TOOL_NAME_RE.match(name):
        return (
            "Tool name must contain only alphanumeric characters, "
            "underscores, and hyphens."
        )
    if len(name) > MAX_TOOL_NAME_LENGTH:
        return f"Tool name is too long (maximum {MAX_TOOL_NAME_LENGTH} characters)."
    if name.lower() in RESERVED_TOOL_NAMES:
        return f"Tool name '{name}' is reserved and not allowed."
    return None


def escape_argument(value: str, windows: bool | None = None) -> str:
    """Quote a single argument for reinsertion into a command line.

    ``split_command(escape_argument(x, w), windows=w)`` always returns
    ``[x]``.
    """
    if windows is None:
        windows = sys.platform == "win32"
    if windows:
        return '"' + _WINDOWS_SPECIAL_RE.sub(r"^\1", value) + '"'
    return "'" + value.replace("'", "'\\''") + "'"
