"""Command-line entry point: one-shot questions and the interactive REPL."""

import argparse
import contextlib
import logging
import os
import signal
import sys
import threading
from importlib import metadata
from pathlib import Path

from . import fmt
from .commands import CommandRejected
from .config import (
    _UNSET,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
)
from .errors import AgentError
from .llm import PROVIDERS
from .scheduler import ConfirmationOutcome
from .session import Session
from .tools import ConfirmationDetails

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

_CONFIRM_KEYS = {
    "y": ConfirmationOutcome.APPROVE_ONCE,
    "yes": ConfirmationOutcome.APPROVE_ONCE,
    "a": ConfirmationOutcome.APPROVE_TRUST_TOOL,
    "always": ConfirmationOutcome.APPROVE_TRUST_TOOL,
    "s": ConfirmationOutcome.APPROVE_TRUST_SERVER,
    "n": ConfirmationOutcome.DENY,
    "no": ConfirmationOutcome.DENY,
}


def build_parser():
    """Build and return the argument parser.

    Options that can also come from config files default to the _UNSET
    sentinel so apply_config_to_args() can tell them apart.
    """
    parser = argparse.ArgumentParser(
        prog="sluice",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description=(
            "An interactive agent that lets a model read, search and run "
            "commands in your workspace, behind confirmation and validation."
        ),
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (sluice.toml) template.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Workspace directory for tools and commands (default: current directory).",
    )

    model = parser.add_argument_group("model")
    model.add_argument("--provider", choices=PROVIDERS, default=_UNSET)
    model.add_argument("--model", default=_UNSET, help="Model identifier.")
    model.add_argument("--api-key", default=_UNSET, help="API key (overrides env var).")
    model.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    model.add_argument("--max-output-tokens", type=int, default=_UNSET)
    model.add_argument("--temperature", type=float, default=_UNSET)
    model.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model rounds per question (default: 50).",
    )

    tools = parser.add_argument_group("tools")
    tools.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Run every tool call without asking for confirmation.",
    )
    tools.add_argument(
        "--trust-file",
        default=_UNSET,
        metavar="FILE",
        help="Remember 'always allow' answers in FILE.",
    )
    tools.add_argument(
        "--shell-timeout",
        type=int,
        default=_UNSET,
        help="Default shell command timeout in seconds (default: 30).",
    )
    tools.add_argument("--tool-discovery-command", default=_UNSET)
    tools.add_argument("--tool-call-command", default=_UNSET)

    output = parser.add_argument_group("output")
    color_group = output.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when the output is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when the output is a TTY.",
    )
    output.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Only print the model's answers and errors.",
    )
    output.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=_UNSET,
        help="Log debug diagnostics to stderr.",
    )
    return parser


def setup_logging(verbose: bool) -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
        force=True,
    )
    # litellm and httpx are chatty at DEBUG
    for name in ("LiteLLM", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def confirm_prompt(details: ConfirmationDetails) -> ConfirmationOutcome:
    """Ask the user whether a tool call may run."""
    fmt.confirmation(details)
    if not sys.stdin.isatty():
        fmt.warning("stdin is not a terminal; denying the tool call (use --yolo)")
        return ConfirmationOutcome.DENY

    from prompt_toolkit import prompt
    from prompt_toolkit.formatted_text import FormattedText

    choices = "[y] once  [a] always this tool"
    if details.server:
        choices += f"  [s] always server {details.server}"
    choices += "  [n] no"
    message = FormattedText([("bold fg:ansiyellow", f"  Allow? {choices} > ")])

    while True:
        try:
            answer = prompt(message).strip().lower()
        except (EOFError, KeyboardInterrupt):
            return ConfirmationOutcome.DENY
        outcome = _CONFIRM_KEYS.get(answer)
        if outcome is ConfirmationOutcome.APPROVE_TRUST_SERVER and not details.server:
            outcome = None
        if outcome is not None:
            return outcome
        fmt.warning(f"unrecognized answer {answer!r}")


@contextlib.contextmanager
def cancel_on_interrupt(cancel: threading.Event):
    """Turn the first Ctrl-C into ``cancel.set()``; a second one interrupts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_question(session: Session, question: str) -> int:
    """Run one turn with Ctrl-C cancellation. Returns an exit code."""
    cancel = threading.Event()
    with cancel_on_interrupt(cancel):
        result = session.ask(question, cancel)
    if result.cancelled:
        return EXIT_CANCELLED
    if result.error:
        return EXIT_ERROR
    return EXIT_OK


def run_shell_passthrough(session: Session, command: str) -> int:
    """Run a ``!command`` typed by the user, printing output as it arrives."""
    command = command.strip()
    if not command:
        fmt.warning("Empty shell command.")
        return EXIT_ERROR

    printed = [""]

    def on_output(text: str) -> None:
        if text.startswith(printed[0]):
            fmt.shell_output(text[len(printed[0]) :])
        else:
            # binary progress lines replace rather than extend
            fmt.info(text)
        printed[0] = text

    cancel = threading.Event()
    try:
        with cancel_on_interrupt(cancel):
            result = session.run_shell(command, cancel, on_output=on_output)
    except CommandRejected as exc:
        fmt.error(f"Command rejected: {exc.reason}")
        return EXIT_ERROR

    if result.aborted:
        fmt.info("Shell command cancelled.")
        return EXIT_CANCELLED
    if result.error is not None:
        fmt.error(f"Shell command failed to start: {result.error}")
        return EXIT_ERROR
    if result.signal is not None:
        fmt.warning(f"Shell command terminated by {result.signal}")
        return EXIT_ERROR
    if result.exit_code != 0:
        fmt.warning(f"Shell command exited with code {result.exit_code}")
        return EXIT_ERROR
    return EXIT_OK


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  !<command>   Run a shell command in the workspace\n"
        "  /help        Show this help message\n"
        "  /clear       Reset the conversation\n"
        "  /exit, /quit Exit the REPL"
    )


def repl_loop(session: Session, first_question: str | None = None, verbose: bool = True) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(session.base_dir, ".sluice", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "sluice> ")])

    if verbose:
        fmt.repl_banner()

    if first_question:
        run_question(session, first_question)

    while True:
        try:
            print(file=sys.stderr)
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            _repl_help()
            continue
        if line == "/clear":
            session.reset()
            fmt.info("conversation cleared")
            continue
        if line.startswith("!"):
            run_shell_passthrough(session, line[1:])
            continue

        try:
            run_question(session, line)
        except KeyboardInterrupt:
            fmt.warning("interrupted")
        except AgentError as e:
            fmt.error(str(e))


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("sluice")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    try:
        config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)

    mcp_servers = config.pop("mcp_servers", None)
    apply_config_to_args(args, config)
    fmt.init(color=args.color, no_color=args.no_color)
    setup_logging(args.verbose)

    try:
        code = _run_main(args, mcp_servers)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    sys.exit(code)


def _run_main(args, mcp_servers: dict | None) -> int:
    settings = {
        key: getattr(args, key)
        for key in (
            "provider",
            "model",
            "api_key",
            "base_url",
            "max_turns",
            "max_output_tokens",
            "temperature",
            "yolo",
            "shell_timeout",
            "tool_discovery_command",
            "tool_call_command",
            "trust_file",
        )
    }
    settings.update(
        throttle_interval=args.throttle_interval,
        binary_sniff_bytes=args.binary_sniff_bytes,
        kill_grace_period=args.kill_grace_period,
    )
    session = Session(
        base_dir=args.base_dir,
        mcp_servers=mcp_servers,
        display=fmt.ConsoleDisplay(quiet=args.quiet),
        confirm=confirm_prompt,
        **config_to_session_kwargs(settings),
    )
    with session:
        if args.repl:
            repl_loop(session, args.question, verbose=not args.quiet)
            return EXIT_OK
        return run_question(session, args.question)


if __name__ == "__main__":
    main()
