"""Tests for sluice.trust: trust levels and the persisted trust file."""

import json

import pytest

from sluice.trust import TRUST_FILE_VERSION, TrustLevel, TrustStore


class TestTrustStore:
    def test_default_is_none(self):
        store = TrustStore()
        assert store.level("read_file") is TrustLevel.NONE
        assert not store.is_trusted("read_file")

    def test_tool_trust(self):
        store = TrustStore()
        assert store.grant(TrustLevel.TOOL, "run_shell_command")
        assert store.level("run_shell_command") is TrustLevel.TOOL
        assert store.is_trusted("run_shell_command")
        assert not store.is_trusted("grep")

    def test_tool_trust_is_per_server(self):
        store = TrustStore()
        store.grant(TrustLevel.TOOL, "mcp__a__search", "a")
        assert store.is_trusted("mcp__a__search", "a")
        assert not store.is_trusted("mcp__a__search", "b")

    def test_server_trust_covers_all_its_tools(self):
        store = TrustStore()
        store.grant(TrustLevel.SERVER, "mcp__docs__search", "docs")
        assert store.level("mcp__docs__fetch", "docs") is TrustLevel.SERVER
        assert not store.is_trusted("mcp__other__fetch", "other")
        assert not store.is_trusted("mcp__docs__fetch")

    def test_server_trust_requires_server(self):
        with pytest.raises(ValueError):
            TrustStore().grant(TrustLevel.SERVER, "read_file")

    @pytest.mark.parametrize("level", [TrustLevel.NONE, TrustLevel.THIS_CALL_ONLY])
    def test_non_durable_levels_not_stored(self, level):
        store = TrustStore()
        assert not store.grant(level, "grep")
        assert store.level("grep") is TrustLevel.NONE


class TestTrustPersistence:
    def test_saved_and_reloaded(self, tmp_path):
        path = tmp_path / "nested" / "trust.json"
        store = TrustStore(path)
        store.grant(TrustLevel.TOOL, "run_shell_command")
        store.grant(TrustLevel.SERVER, "mcp__docs__search", "docs")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == TRUST_FILE_VERSION
        assert data["tools"] == [{"tool": "run_shell_command", "server": None}]
        assert data["servers"] == ["docs"]

        reloaded = TrustStore(path)
        assert reloaded.is_trusted("run_shell_command")
        assert reloaded.is_trusted("mcp__docs__anything", "docs")

    def test_session_only_grant_not_written(self, tmp_path):
        path = tmp_path / "trust.json"
        store = TrustStore(path)
        store.grant(TrustLevel.TOOL, "grep", persist=False)
        assert store.is_trusted("grep")
        assert not path.exists()

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "trust.json"
        path.write_text("{not json", encoding="utf-8")
        store = TrustStore(path)
        assert not store.is_trusted("grep")

    def test_unknown_version_ignored(self, tmp_path):
        path = tmp_path / "trust.json"
        path.write_text(
            json.dumps({"version": 99, "tools": [{"tool": "grep", "server": None}]}),
            encoding="utf-8",
        )
        assert not TrustStore(path).is_trusted("grep")
