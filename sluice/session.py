"""Public library API for sluice: Session class and Result dataclass."""

import copy
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .commands import CommandRejected, validate_command
from .errors import ConfigError
from .scheduler import ConfirmationOutcome, Scheduler, ToolCallResult
from .shell import ShellExecutionResult, ShellExecutor
from .tools import (
    ConfirmationDetails,
    ToolError,
    ToolRegistry,
    builtin_tools,
    cleanup_old_cmd_outputs,
    discover_tools,
)
from .trust import TrustStore
from .turn import DisplaySink, RecordingDisplay, TurnProcessor

logger = logging.getLogger(__name__)

_API_KEY_ENV = {"openrouter": "OPENROUTER_API_KEY"}


@dataclass
class Result:
    """Result of an ask call."""

    answer: str
    cancelled: bool
    error: str | None
    messages: list[dict]
    tool_results: list[ToolCallResult] = field(default_factory=list)


class Session:
    """Programmatic interface to the sluice turn loop.

    Owns the long-lived state of a conversation: the shell executor, the
    tool registry, the trust store and the message history. Stores
    configuration as plain attributes; setup happens lazily on first use.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int = 50,
        max_output_tokens: int | None = None,
        temperature: float | None = None,
        yolo: bool = False,
        shell_timeout: int = 30,
        throttle_interval: float = 1.0,
        binary_sniff_bytes: int = 4096,
        kill_grace_period: float = 0.2,
        tool_discovery_command: str | None = None,
        tool_call_command: str | None = None,
        trust_file: str | None = None,
        mcp_servers: dict[str, dict] | None = None,
        system_prompt: str | None = None,
        display: DisplaySink | None = None,
        confirm: Callable[[ConfirmationDetails], ConfirmationOutcome] | None = None,
        model_service=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.yolo = yolo
        self.shell_timeout = shell_timeout
        self.tool_discovery_command = tool_discovery_command
        self.tool_call_command = tool_call_command
        self.trust_file = trust_file
        self.mcp_servers = mcp_servers or {}
        self.system_prompt = system_prompt
        self.display = display if display is not None else RecordingDisplay()
        self.confirm = confirm

        self.executor = ShellExecutor(
            throttle_interval=throttle_interval,
            sniff_bytes=binary_sniff_bytes,
            kill_grace_period=kill_grace_period,
        )
        self.trust = TrustStore(trust_file)
        self.registry = ToolRegistry()
        self.messages: list[dict] = []

        self._model_service = model_service
        self._mcp = None
        self._processor: TurnProcessor | None = None
        self._setup_done = False

    def _setup(self) -> None:
        """One-time setup: model service, tools, MCP servers."""
        if self._setup_done:
            return
        if not Path(self.base_dir).is_dir():
            raise ConfigError(f"base directory is not a directory: {self.base_dir}")

        if self._model_service is None:
            from .llm import LiteLLMService

            if not self.model:
                raise ConfigError(
                    "no model configured: pass --model or set 'model' in the config"
                )
            api_key = self.api_key
            if api_key is None and self.provider in _API_KEY_ENV:
                api_key = os.environ.get(_API_KEY_ENV[self.provider])
                if not api_key:
                    raise ConfigError(
                        f"--api-key or {_API_KEY_ENV[self.provider]} env var "
                        f"required for {self.provider} provider"
                    )
            self._model_service = LiteLLMService(
                self.model,
                provider=self.provider,
                base_url=self.base_url,
                api_key=api_key,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            )

        for tool in builtin_tools(self.base_dir, self.executor, self.shell_timeout):
            self.registry.register(tool)
        self._register_discovered_tools()
        self._start_mcp()

        removed = cleanup_old_cmd_outputs(self.base_dir)
        if removed:
            logger.debug("removed %d stale command output files", removed)

        scheduler = Scheduler(self.registry, self.trust, auto_approve=self.yolo)
        self._processor = TurnProcessor(
            self._model_service,
            scheduler,
            self.display,
            confirm=self.confirm,
            max_rounds=self.max_turns,
        )
        self.messages = self._initial_messages()
        self._setup_done = True

    def _register_discovered_tools(self) -> None:
        if not self.tool_discovery_command:
            return
        if not self.tool_call_command:
            raise ConfigError(
                "'tool_discovery_command' requires 'tool_call_command' to be set"
            )
        try:
            tools = discover_tools(
                self.tool_discovery_command,
                self.tool_call_command,
                self.base_dir,
                self.executor,
            )
        except ToolError as exc:
            from . import fmt

            fmt.warning(f"tool discovery failed: {exc}")
            return
        for tool in tools:
            self.registry.register(tool)

    def _start_mcp(self) -> None:
        if not self.mcp_servers:
            return
        from .mcp_client import McpManager

        self._mcp = McpManager(self.mcp_servers)
        self._mcp.start()
        for tool in self._mcp.tools():
            try:
                self.registry.register(tool)
            except ValueError as exc:
                logger.warning("skipping MCP tool %r: %s", tool.name, exc)

    def _initial_messages(self) -> list[dict]:
        if self.system_prompt:
            return [{"role": "system", "content": self.system_prompt}]
        return []

    def ask(self, question: str, cancel: threading.Event | None = None) -> Result:
        """Run one turn in the ongoing conversation."""
        self._setup()
        turn = self._processor.run_turn(self.messages, question, cancel)
        return Result(
            answer=turn.text,
            cancelled=turn.cancelled,
            error=turn.error,
            messages=copy.deepcopy(self.messages),
            tool_results=turn.tool_results,
        )

    def run_shell(
        self,
        command: str,
        cancel: threading.Event | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> ShellExecutionResult:
        """Validate and run a user-typed shell command in the base directory.

        Raises:
            CommandRejected: If the command fails validation.
        """
        reason = validate_command(command)
        if reason is not None:
            raise CommandRejected(reason)
        return self.executor.execute(
            command, str(Path(self.base_dir).resolve()), cancel, on_output=on_output
        )

    def reset(self) -> None:
        """Clear the conversation, keeping tools and trust."""
        self.messages = self._initial_messages()

    def close(self) -> None:
        if self._mcp is not None:
            self._mcp.close()
            self._mcp = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
