"""Memoized confirmation decisions, keyed by tool name and origin server."""

import json
import logging
import threading
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

TRUST_FILE_VERSION = 1


class TrustLevel(Enum):
    NONE = "none"
    THIS_CALL_ONLY = "this_call_only"
    TOOL = "tool"
    SERVER = "server"


class TrustStore:
    """Per-session record of tools and servers the user chose to always allow.

    A TOOL record covers one tool (on its server, if any); a SERVER record
    covers every tool from that server. NONE and THIS_CALL_ONLY are never
    stored. When ``path`` is set, records are loaded from and saved to it.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._tools: set[tuple[str, str | None]] = set()
        self._servers: set[str] = set()
        self._persisted_tools: set[tuple[str, str | None]] = set()
        self._persisted_servers: set[str] = set()
        if self.path is not None:
            self._load()

    def level(self, tool_name: str, server: str | None = None) -> TrustLevel:
        with self._lock:
            if server is not None and server in self._servers:
                return TrustLevel.SERVER
            if (tool_name, server) in self._tools:
                return TrustLevel.TOOL
        return TrustLevel.NONE

    def is_trusted(self, tool_name: str, server: str | None = None) -> bool:
        return self.level(tool_name, server) in (TrustLevel.TOOL, TrustLevel.SERVER)

    def grant(
        self,
        level: TrustLevel,
        tool_name: str,
        server: str | None = None,
        *,
        persist: bool = True,
    ) -> bool:
        """Record a trust upgrade. Returns True if anything was stored."""
        if level in (TrustLevel.NONE, TrustLevel.THIS_CALL_ONLY):
            return False
        with self._lock:
            if level is TrustLevel.SERVER:
                if server is None:
                    raise ValueError(
                        f"tool {tool_name!r} has no server; cannot trust its server"
                    )
                self._servers.add(server)
                if persist:
                    self._persisted_servers.add(server)
            else:
                self._tools.add((tool_name, server))
                if persist:
                    self._persisted_tools.add((tool_name, server))
            logger.info(
                "trust granted: level=%s tool=%s server=%s",
                level.value,
                tool_name,
                server,
            )
            if persist and self.path is not None:
                self._save()
        return True

    def _load(self) -> None:
        if not self.path.is_file():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("ignoring unreadable trust file %s: %s", self.path, exc)
            return
        if not isinstance(data, dict) or data.get("version") != TRUST_FILE_VERSION:
            logger.warning("ignoring trust file %s: unsupported format", self.path)
            return
        for entry in data.get("tools", []):
            if isinstance(entry, dict) and isinstance(entry.get("tool"), str):
                key = (entry["tool"], entry.get("server"))
                self._tools.add(key)
                self._persisted_tools.add(key)
        for server in data.get("servers", []):
            if isinstance(server, str):
                self._servers.add(server)
                self._persisted_servers.add(server)

    def _save(self) -> None:
        data = {
            "version": TRUST_FILE_VERSION,
            "tools": [
                {"tool": tool, "server": server}
                for tool, server in sorted(
                    self._persisted_tools, key=lambda k: (k[0], k[1] or "")
                )
            ],
            "servers": sorted(self._persisted_servers),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("failed to write trust file %s: %s", self.path, exc)
