"""Tests for chief_of_staff.config: server config loading and env overrides."""

from __future__ import annotations

import json

import pytest

from chief_of_staff.config import (
    EngineConfig,
    ToolServerConfig,
    load_server_configs,
    parse_server_configs,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("MCP_CONFIG_PATH", raising=False)
    for name in (
        "COS_MODEL",
        "CLAUDE_MODEL",
        "COS_MAX_TURNS",
        "COS_CONNECT_TIMEOUT",
        "COS_MAX_TOKENS_PER_MINUTE",
        "COS_TOOL_EXECUTION_DELAY",
    ):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Tool server configs
# ---------------------------------------------------------------------------


class TestParseServerConfigs:
    def test_mcp_servers_mapping(self):
        configs = parse_server_configs({
            "mcpServers": {
                "slack": {"command": "npx", "args": ["-y", "slack-mcp"], "env": {"SLACK_TOKEN": "t"}},
                "notes": {"command": "python", "args": ["notes.py"]},
            }
        })
        assert [c.name for c in configs] == ["slack", "notes"]
        assert configs[0].args == ["-y", "slack-mcp"]
        assert configs[0].env == {"SLACK_TOKEN": "t"}

    def test_bare_mapping(self):
        configs = parse_server_configs({"fs": {"command": "fs-server"}})
        assert configs == [ToolServerConfig(name="fs", command="fs-server")]

    def test_skips_entries_without_command(self):
        configs = parse_server_configs({"mcpServers": {"broken": {"args": []}, "ok": {"command": "x"}}})
        assert [c.name for c in configs] == ["ok"]

    def test_config_is_frozen(self):
        cfg = ToolServerConfig(name="a", command="b")
        with pytest.raises(Exception):
            cfg.command = "c"

    def test_launch_env_merges_overrides(self, monkeypatch):
        monkeypatch.setenv("HOME_MARKER", "1")
        env = ToolServerConfig(name="a", command="b", env={"TOKEN": "x"}).launch_env()
        assert env["HOME_MARKER"] == "1"
        assert env["TOKEN"] == "x"


class TestLoadServerConfigs:
    def test_json_file(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({"mcpServers": {"gmail": {"command": "gmail-mcp"}}}))
        assert [c.name for c in load_server_configs(path)] == ["gmail"]

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "mcp.yaml"
        path.write_text("mcpServers:\n  drive:\n    command: drive-mcp\n    args: [--readonly]\n")
        configs = load_server_configs(path)
        assert configs[0].name == "drive"
        assert configs[0].args == ["--readonly"]

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "servers.json"
        path.write_text(json.dumps({"mcpServers": {"a": {"command": "a"}}}))
        monkeypatch.setenv("MCP_CONFIG_PATH", str(path))
        assert len(load_server_configs()) == 1

    def test_explicit_missing_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_server_configs(tmp_path / "nope.json")

    def test_missing_default_is_empty(self, tmp_path, monkeypatch):
        monkeypatch.setattr("chief_of_staff.config.DEFAULT_MCP_CONFIG_PATH", tmp_path / "absent.json")
        assert load_server_configs() == []

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "mcp.toml"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported"):
            load_server_configs(path)


# ---------------------------------------------------------------------------
# EngineConfig.from_env
# ---------------------------------------------------------------------------


class TestEngineConfigFromEnv:
    def test_defaults(self):
        cfg = EngineConfig.from_env()
        assert cfg == EngineConfig()
        assert cfg.rate_limit.max_tokens_per_minute == 400_000
        assert cfg.truncation.max_prompt_tokens == 180_000
        assert cfg.connection.timeout == 30.0

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("COS_MODEL", "gpt-5-mini")
        monkeypatch.setenv("COS_CONNECT_TIMEOUT", "5")
        monkeypatch.setenv("COS_MAX_TOKENS_PER_MINUTE", "1000")
        monkeypatch.setenv("COS_TOOL_EXECUTION_DELAY", "0")
        cfg = EngineConfig.from_env()
        assert cfg.model == "gpt-5-mini"
        assert cfg.connection.timeout == 5.0
        assert cfg.rate_limit.max_tokens_per_minute == 1000
        assert cfg.tool_execution_delay == 0.0

    def test_claude_model_fallback(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_MODEL", "anthropic/claude-opus-4-1")
        assert EngineConfig.from_env().model == "anthropic/claude-opus-4-1"

    def test_invalid_value_falls_back(self, monkeypatch, caplog):
        monkeypatch.setenv("COS_MAX_TOKENS_PER_MINUTE", "lots")
        cfg = EngineConfig.from_env()
        assert cfg.rate_limit.max_tokens_per_minute == 400_000
        assert "COS_MAX_TOKENS_PER_MINUTE" in caplog.text

    def test_max_turns_zero_disables_cap(self, monkeypatch):
        monkeypatch.setenv("COS_MAX_TURNS", "0")
        assert EngineConfig.from_env().max_turns is None
