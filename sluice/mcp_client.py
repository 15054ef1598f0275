"""Tools served by MCP (Model Context Protocol) servers.

Every configured server is connected once at session start. Its tools are
registered as ``McpTool`` objects named ``mcp__<server>__<tool>``; each one
keeps its server identity so trust can be granted per server.

The MCP SDK is asyncio based while the turn loop is synchronous, so all
sessions live on one event loop running in a daemon thread.
"""

import asyncio
import atexit
import concurrent.futures
import copy
import json
import logging
import re
import threading
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigError
from .tools import ConfirmationDetails, Tool, ToolCancelled, ToolError, ToolOutput

logger = logging.getLogger(__name__)

CALL_TIMEOUT = 120
CONNECT_TIMEOUT = 30
_POLL_INTERVAL = 0.1

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_-]+")
_UNDERSCORE_RUN_RE = re.compile(r"_{2,}")

# Schema keys some providers refuse in function parameters
_REJECTED_SCHEMA_KEYS = ("$schema", "$id")


class McpShutdownError(Exception):
    """Raised when call_tool() is invoked during or after shutdown."""


@dataclass
class _Server:
    name: str
    config: dict
    session: Any = None
    tools: list = field(default_factory=list)
    degraded: bool = False
    task: asyncio.Task | None = None
    stop: asyncio.Event | None = None

    @property
    def trusted(self) -> bool:
        return bool(self.config.get("trust"))


class _LoopThread:
    """An asyncio event loop on a daemon thread, driven from synchronous code."""

    def __init__(self, name: str):
        self.name = name
        self.loop: asyncio.AbstractEventLoop | None = None
        self.thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self.loop is not None and self.loop.is_running()

    def start(self, timeout: float = 10) -> None:
        self.loop = asyncio.new_event_loop()
        started = threading.Event()

        def _run():
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(started.set)
            self.loop.run_forever()

        self.thread = threading.Thread(target=_run, name=self.name, daemon=True)
        self.thread.start()
        if not started.wait(timeout):
            raise McpShutdownError("MCP event loop failed to start")

    def run(self, coro, timeout: float, cancel: threading.Event | None = None):
        """Run ``coro`` on the loop and block for its result.

        The wait is polled so that a set ``cancel`` event abandons the call
        promptly.

        Raises:
            ToolCancelled: If ``cancel`` fires first.
            TimeoutError: If ``timeout`` seconds pass first.
            McpShutdownError: If the loop is gone or the call was cancelled by shutdown.
        """
        if not self.running:
            coro.close()
            raise McpShutdownError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        deadline = time.monotonic() + timeout
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    future.cancel()
                    raise ToolCancelled("MCP tool call cancelled.")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise TimeoutError(f"no answer after {timeout}s")
                try:
                    return future.result(timeout=min(remaining, _POLL_INTERVAL))
                except concurrent.futures.TimeoutError:
                    if future.done():
                        raise
        except concurrent.futures.CancelledError:
            raise McpShutdownError("operation cancelled during shutdown") from None

    def stop(self, timeout: float = 10) -> None:
        if self.running:
            self.loop.call_soon_threadsafe(self.loop.stop)
        if self.thread is not None and self.thread.is_alive():
            self.thread.join(timeout)
            if self.thread.is_alive():
                logger.warning("MCP event loop thread %s did not stop", self.thread.name)


def _transport(config: dict):
    """Return the async context manager yielding (read, write) streams for a server."""
    import mcp

    if "url" in config:
        from mcp.client.sse import sse_client

        return sse_client(
            url=config["url"],
            headers=config.get("headers"),
            timeout=10,
            sse_read_timeout=300,
        )
    params = mcp.StdioServerParameters(
        command=config["command"],
        args=config.get("args", []),
        env=config.get("env"),
    )
    return mcp.stdio_client(params)


class McpManager:
    """Owns the connections to every configured MCP server.

    ``server_configs`` maps a server name to its table from the config
    file: ``command``/``args``/``env`` for stdio servers or
    ``url``/``headers`` for HTTP (SSE) servers, plus an optional
    ``trust`` flag.

    A server that fails to connect is reported and skipped. A server whose
    tool call fails with a transport error is marked degraded and refuses
    further calls; a cancelled call does not degrade it.
    """

    def __init__(self, server_configs: dict[str, dict]):
        self._servers = {
            name: _Server(name, config) for name, config in server_configs.items()
        }
        self._runner = _LoopThread("sluice-mcp-loop")
        # namespaced tool name -> (server name, MCP tool object)
        self._routes: dict[str, tuple[str, Any]] = {}
        self._closing = False
        self._closed = False

    def start(self) -> None:
        """Start the event loop and connect every server."""
        if self._closed:
            raise McpShutdownError("manager is already closed")
        from . import fmt

        self._runner.start()
        for server in self._servers.values():
            try:
                self._connect(server)
            except Exception as exc:
                server.degraded = True
                fmt.mcp_server_error(server.name, str(exc) or type(exc).__name__)
        self._routes = self._route_tools()
        atexit.register(self.close)

    def tools(self) -> list["McpTool"]:
        return [
            McpTool(self, server_name, tool, trusted=self._servers[server_name].trusted)
            for server_name, tool in self._routes.values()
        ]

    def call_tool(
        self,
        name: str,
        arguments: dict,
        cancel: threading.Event | None = None,
    ) -> tuple[str, bool]:
        """Call a namespaced tool and return ``(text, is_error)``.

        Raises:
            McpShutdownError: If the manager is shutting down.
            ToolCancelled: If ``cancel`` fires before the server answers.
        """
        if self._closing or self._closed:
            raise McpShutdownError("manager is shutting down")
        route = self._routes.get(name)
        if route is None:
            return (f"unknown MCP tool: {name}", True)
        server = self._servers[route[0]]
        if server.degraded:
            return (f"MCP server {server.name!r} is unavailable after an earlier failure", True)
        if server.session is None:
            return (f"MCP server {server.name!r} is not connected", True)

        try:
            result = self._runner.run(
                server.session.call_tool(route[1].name, arguments),
                timeout=CALL_TIMEOUT,
                cancel=cancel,
            )
        except (McpShutdownError, ToolCancelled):
            raise
        except Exception as exc:
            server.degraded = True
            logger.warning("MCP server %r marked degraded: %s", server.name, exc)
            return (f"MCP server {server.name!r} failed: {exc}", True)
        return _normalize_result(result)

    def close(self) -> None:
        """Disconnect every server and stop the loop. Safe to call twice."""
        if self._closed:
            return
        self._closing = True
        if self._runner.running:
            try:
                self._runner.run(self._disconnect_all(), timeout=10)
            except Exception as exc:
                logger.warning("error while closing MCP sessions: %s", exc)
        self._runner.stop()
        self._closed = True
        self._closing = False

    # --- connection lifecycle ---

    def _connect(self, server: _Server) -> None:
        """Start the server's task and wait until it is connected or failed."""
        connected = threading.Event()
        failure: list[BaseException] = []

        async def _launch():
            server.stop = asyncio.Event()
            server.task = asyncio.create_task(
                self._serve(server, connected, failure), name=f"mcp-{server.name}"
            )

        self._runner.run(_launch(), timeout=5)
        if not connected.wait(CONNECT_TIMEOUT):
            self._runner.loop.call_soon_threadsafe(server.task.cancel)
            raise TimeoutError(f"no connection after {CONNECT_TIMEOUT}s")
        if failure:
            raise failure[0]

    async def _serve(
        self,
        server: _Server,
        connected: threading.Event,
        failure: list[BaseException],
    ) -> None:
        """Hold one server's session open until shutdown.

        The MCP transports use anyio cancel scopes, which must be entered
        and exited by the same task, so the exit stack lives here.
        """
        import mcp

        from . import fmt

        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(_transport(server.config))
            session = await stack.enter_async_context(mcp.ClientSession(read, write))
            await session.initialize()
            listing = await session.list_tools()
            server.session = session
            server.tools = list(listing.tools)
            fmt.mcp_server_start(server.name, len(server.tools))
            connected.set()
            await server.stop.wait()
        except Exception as exc:
            failure.append(exc)
            connected.set()
        finally:
            server.session = None
            try:
                await asyncio.wait_for(stack.aclose(), timeout=5)
            except TimeoutError:
                logger.warning("MCP server %r: graceful close timed out", server.name)
            except Exception as exc:
                logger.warning("error closing MCP server %r: %s", server.name, exc)

    async def _disconnect_all(self) -> None:
        tasks = []
        for server in self._servers.values():
            if server.stop is not None:
                server.stop.set()
            if server.task is not None:
                tasks.append(server.task)
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.warning("MCP server task failed during shutdown: %s", outcome)
        for server in self._servers.values():
            server.task = None
            server.stop = None

    def _route_tools(self) -> dict[str, tuple[str, Any]]:
        """Map namespaced names to their server.

        A server with two tools whose names clash after sanitizing
        contributes no tools at all.
        """
        from . import fmt

        routes: dict[str, tuple[str, Any]] = {}
        for server in self._servers.values():
            names = [namespaced_name(server.name, tool.name) for tool in server.tools]
            clashes = sorted({n for n in names if names.count(n) > 1})
            if clashes:
                fmt.mcp_server_error(
                    server.name,
                    "tool names collide after sanitizing, skipping all its tools: "
                    + ", ".join(clashes),
                )
                continue
            for name, tool in zip(names, server.tools):
                routes[name] = (server.name, tool)
        return routes


class McpTool(Tool):
    """A tool served by an MCP server.

    Needs confirmation unless its server is configured with ``trust = true``.
    """

    def __init__(self, manager: McpManager, server: str, tool, trusted: bool = False):
        self.manager = manager
        self.server = server
        self.original_name = tool.name
        self.name = namespaced_name(server, tool.name)
        self.description = tool.description or f"MCP tool from {server}"
        self.parameters = _convert_schema(tool.inputSchema or {})
        self.trusted = trusted

    def get_description(self, args: dict) -> str:
        return f"{self.original_name} ({self.server} MCP server)"

    def should_confirm_execute(self, args: dict) -> ConfirmationDetails | None:
        if self.trusted:
            return None
        return ConfirmationDetails(
            kind="mcp",
            title="Confirm MCP Tool Execution",
            description=f"{self.original_name}({json.dumps(args, ensure_ascii=False)})",
            tool_name=self.name,
            server=self.server,
        )

    def execute(self, args, cancel, on_output=None) -> ToolOutput:
        text, is_error = self.manager.call_tool(self.name, args, cancel=cancel)
        if is_error:
            raise ToolError(text)
        return ToolOutput(text, text)


# --- names and schemas ---


def validate_server_name(name: str) -> None:
    """Raise ConfigError unless ``name`` can be embedded in tool names."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain double underscores"
        )


def _sanitize_tool_name(name: str) -> str:
    cleaned = _UNDERSCORE_RUN_RE.sub("_", _UNSAFE_CHARS_RE.sub("_", name))
    return cleaned.strip("_-")


def namespaced_name(server: str, tool_name: str) -> str:
    return f"mcp__{server}__{_sanitize_tool_name(tool_name)}"


def _convert_schema(input_schema: dict) -> dict:
    """Copy an MCP inputSchema into function-calling parameters."""
    schema = {
        key: copy.deepcopy(value)
        for key, value in input_schema.items()
        if key not in _REJECTED_SCHEMA_KEYS
    }
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    return schema


# --- results ---


def _unwrap_envelope(content) -> tuple[str, bool] | None:
    """Recognize ``{"ok": ..., "result"|"error": ...}`` JSON in a text block."""
    for block in content:
        if getattr(block, "type", None) != "text" or not isinstance(block.text, str):
            continue
        try:
            payload = json.loads(block.text)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or "ok" not in payload:
            continue
        if payload["ok"] is False:
            message = payload.get("error") or payload.get("message")
            stack = payload.get("stack")
            if not message and isinstance(stack, str) and stack:
                message = stack.splitlines()[0]
            return (message or "MCP tool returned an error", True)
        if payload["ok"] is True and "result" in payload:
            return (json.dumps(payload["result"], ensure_ascii=False), False)
    return None


def _describe_block(block) -> str:
    kind = getattr(block, "type", None)
    if kind == "text":
        return block.text
    if kind in ("image", "audio"):
        mime = getattr(block, "mimeType", "unknown")
        return f"[{kind}: {mime}, {len(getattr(block, 'data', ''))} bytes]"
    if kind == "resource":
        resource = getattr(block, "resource", None)
        text = getattr(resource, "text", None)
        if text:
            return text
        return f"[resource: {getattr(resource, 'uri', 'unknown')}]"
    return f"[{kind or 'unknown'}: unsupported content type]"


def _normalize_result(result) -> tuple[str, bool]:
    """Flatten an MCP CallToolResult to ``(text, is_error)``."""
    unwrapped = _unwrap_envelope(result.content)
    if unwrapped is not None:
        return unwrapped
    text = "\n".join(_describe_block(block) for block in result.content)
    if result.isError:
        return (text or "MCP tool returned an error", True)
    return (text or "(empty result)", False)
