"""Configuration files for sluice.

Two TOML files are read: ``config.toml`` in the global config directory
and ``sluice.toml`` in the project's base directory. Command-line flags
win over the project file, which wins over the global file, which wins
over the built-in defaults.
"""

import argparse
import json
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

GLOBAL_FILE = "config.toml"
PROJECT_FILE = "sluice.toml"


@dataclass(frozen=True)
class _Setting:
    name: str
    types: type | tuple[type, ...]
    default: Any = None
    minimum: str | None = None  # "positive" or "non-negative"
    sample: str | None = None  # template value when there is no default
    note: str = ""


_SECTIONS: tuple[tuple[str, tuple[_Setting, ...]], ...] = (
    (
        "Provider / model",
        (
            _Setting("provider", str, "lmstudio", note='"lmstudio" | "openrouter" | "generic"'),
            _Setting("model", str, sample='"qwen/qwen3-coder-30b"'),
            _Setting("api_key", str, sample='"sk-or-..."', note="prefer env vars; this is a fallback"),
            _Setting("base_url", str, sample='"http://127.0.0.1:1234"'),
        ),
    ),
    (
        "Generation",
        (
            _Setting("max_output_tokens", int, minimum="positive", sample="8192"),
            _Setting("temperature", (int, float), sample="0.2"),
            _Setting("max_turns", int, 50, "positive", note="model rounds per question"),
        ),
    ),
    (
        "Tool confirmation",
        (
            _Setting("yolo", bool, False, note="approve every tool call without asking"),
            _Setting("trust_file", str, sample='"trust.json"', note="remember 'always allow' answers"),
        ),
    ),
    (
        "Shell execution",
        (
            _Setting("shell_timeout", int, 30, "positive", note="default per-command timeout, seconds"),
            _Setting("throttle_interval", (int, float), 1.0, "positive", note="seconds between live output refreshes"),
            _Setting("binary_sniff_bytes", int, 4096, "positive", note="leading bytes checked for binary output"),
            _Setting("kill_grace_period", (int, float), 0.2, "non-negative", note="seconds between SIGTERM and SIGKILL"),
        ),
    ),
    (
        "Project tools",
        (
            _Setting("tool_discovery_command", str, sample='"python3 tools.py discover"'),
            _Setting("tool_call_command", str, sample='"python3 tools.py call"'),
        ),
    ),
    (
        "UI",
        (
            _Setting("color", bool, sample="true", note="true = force color, false = force no-color, absent = auto"),
            _Setting("quiet", bool, False),
            _Setting("verbose", bool, False),
        ),
    ),
)

_SETTINGS = {s.name: s for _, group in _SECTIONS for s in group}

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    name: s.types for name, s in _SETTINGS.items()
}

# Argparse dest -> value used when neither the CLI nor a config file set it
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    **{name: s.default for name, s in _SETTINGS.items()},
    "color": False,
    "no_color": False,
}

# Keys that only shape the terminal, never the Session
_CLI_ONLY = frozenset({"color", "quiet", "verbose"})

_MCP_FIELDS: dict[str, type] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
    "trust": bool,
}

_MCP_TEMPLATE = (
    "# [mcp_servers.filesystem]",
    '# command = "npx"',
    '# args = ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]',
    '# env = { DEBUG = "true" }',
    "# trust = false                  # true: never ask before its tools run",
    "",
    "# [mcp_servers.remote-api]",
    '# url = "https://api.example.com/mcp"',
    '# headers = { Authorization = "Bearer token123" }',
)


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "sluice"
    return Path.home() / ".config" / "sluice"


# --- validation ---


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_value(setting: _Setting, value: Any, source: str) -> None:
    # bool is a subclass of int; only bool settings accept it
    wrong_bool = isinstance(value, bool) and setting.types is not bool
    if wrong_bool or not isinstance(value, setting.types):
        raise ConfigError(
            f"{source}: {setting.name!r} expected {_type_name(setting.types)}, "
            f"got {type(value).__name__}"
        )
    if setting.minimum == "positive" and value <= 0:
        raise ConfigError(f"{source}: {setting.name!r} must be positive, got {value}")
    if setting.minimum == "non-negative" and value < 0:
        raise ConfigError(f"{source}: {setting.name!r} must not be negative, got {value}")


def _check_mcp_server(name: str, table: Any, source: str) -> None:
    from .mcp_client import validate_server_name

    validate_server_name(name)
    where = f"{source}: mcp_servers.{name}"
    if not isinstance(table, dict):
        raise ConfigError(f"{where} must be a table")

    transports = [key for key in ("command", "url") if key in table]
    if not transports:
        raise ConfigError(f"{where} must have 'command' or 'url'")
    if len(transports) > 1:
        raise ConfigError(f"{where} cannot have both 'command' and 'url'")

    for key, value in table.items():
        expected = _MCP_FIELDS.get(key)
        if expected is None:
            print(f"warning: {where}: unknown key {key!r}", file=sys.stderr)
        elif not isinstance(value, expected):
            raise ConfigError(
                f"{where}.{key}: expected {expected.__name__}, got {type(value).__name__}"
            )

    for i, arg in enumerate(table.get("args", [])):
        if not isinstance(arg, str):
            raise ConfigError(
                f"{where}.args[{i}]: expected string, got {type(arg).__name__}"
            )
    for key in ("env", "headers"):
        for item, value in table.get(key, {}).items():
            if not isinstance(value, str):
                raise ConfigError(
                    f"{where}.{key}.{item}: expected string, got {type(value).__name__}"
                )


# --- reading files ---


def _read_toml(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e


def _parse(raw: dict, path: Path) -> tuple[dict, dict]:
    """Validate one file's table and split it into (settings, mcp servers).

    Unknown keys are reported on stderr and dropped. A relative
    ``trust_file`` is resolved against the file's directory.
    """
    source = str(path)
    settings: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "mcp_servers":
            continue
        setting = _SETTINGS.get(key)
        if setting is None:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue
        _check_value(setting, value, source)
        settings[key] = value

    if "trust_file" in settings:
        trust_path = Path(settings["trust_file"]).expanduser()
        if not trust_path.is_absolute():
            trust_path = path.parent / trust_path
        settings["trust_file"] = str(trust_path)

    servers = raw.get("mcp_servers", {})
    if not isinstance(servers, dict):
        raise ConfigError(f"{source}: 'mcp_servers' must be a table")
    for name, table in servers.items():
        _check_mcp_server(name, table, source)
    return settings, servers


def _warn_api_key_in_git(settings: dict, path: Path) -> None:
    if "api_key" not in settings:
        return
    if any((parent / ".git").exists() for parent in path.parents):
        print(
            f"warning: {path}: 'api_key' in a git-tracked project config "
            f"may be committed accidentally. Consider using an environment variable.",
            file=sys.stderr,
        )


# --- public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge the global and project config files.

    Returns only the keys actually set in a file, no defaults. MCP servers
    are returned under ``mcp_servers`` and merge by name, the project file
    winning on collision.

    Raises:
        ConfigError: On invalid TOML, a wrong value type or a bad MCP table.
    """
    merged: dict[str, Any] = {}
    servers: dict[str, dict] = {}
    sources = (
        (global_config_dir() / GLOBAL_FILE, False),
        (Path(base_dir).resolve() / PROJECT_FILE, True),
    )
    for path, is_project in sources:
        raw = _read_toml(path)
        if not raw:
            continue
        settings, file_servers = _parse(raw, path)
        if is_project:
            _warn_api_key_in_git(settings, path)
        merged.update(settings)
        servers.update(file_servers)

    if servers:
        merged["mcp_servers"] = servers
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill CLI options still holding _UNSET from config, then from defaults.

    The single ``color`` key drives the --color/--no-color pair and is
    ignored when either flag was given.
    """

    def _unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config and _unset("color") and _unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key != "color" and _unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Keep only the keys Session accepts."""
    return {k: v for k, v in config.items() if k not in _CLI_ONLY}


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return json.dumps(value)
    return str(value)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config file."""
    location = f"<project>/{PROJECT_FILE}" if project else f"~/.config/sluice/{GLOBAL_FILE}"
    lines = [
        "# sluice configuration file",
        f"# {'Project' if project else 'Global'} config: {location}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
    ]
    for title, settings in _SECTIONS:
        lines += ["", f"# --- {title} ---"]
        for s in settings:
            line = f"# {s.name} = {s.sample or _toml_literal(s.default)}"
            if s.note:
                line = f"{line:<34} # {s.note}"
            lines.append(line)
    lines += ["", "# --- MCP servers ---", *_MCP_TEMPLATE, ""]
    return "\n".join(lines)
