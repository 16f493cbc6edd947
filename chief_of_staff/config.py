"""Typed runtime configuration for the agent engine.

Everything here is resolved once per process and passed explicitly into the
connection manager, rate limiter, truncator and runner. Nothing reads the
environment after construction.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "COS_"
MCP_CONFIG_PATH_ENV = "MCP_CONFIG_PATH"
DEFAULT_MCP_CONFIG_PATH = (
    Path.home() / "Library" / "Application Support" / "Claude" / "claude_desktop_config.json"
)
DEFAULT_MODEL = "anthropic/claude-sonnet-4-5-20250929"


# ---------------------------------------------------------------------------
# Tool server launch configs
# ---------------------------------------------------------------------------


class ToolServerConfig(BaseModel):
    """How to launch one tool server subprocess. Immutable for a run."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None

    def launch_env(self) -> dict[str, str]:
        """Parent environment with this server's overrides merged on top."""
        merged = dict(os.environ)
        merged.update(self.env)
        return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        import yaml

        data = yaml.safe_load(text)
    elif suffix == ".json" or not suffix:
        data = json.loads(text)
    else:
        raise ValueError(
            f"Unsupported tool server config extension {suffix!r} for {path}. "
            "Use .json, .yaml, or .yml."
        )
    if not isinstance(data, dict):
        raise ValueError(f"Tool server config root must be a mapping. Got: {type(data).__name__}")
    return data


def parse_server_configs(data: dict[str, Any]) -> list[ToolServerConfig]:
    """Build ToolServerConfig list from a ``{"mcpServers": {name: {...}}}`` mapping.

    A bare ``{name: {...}}`` mapping (no ``mcpServers`` key) is accepted too.
    """
    servers = data.get("mcpServers", data)
    if not isinstance(servers, dict):
        raise ValueError("mcpServers must be a mapping of server name to launch config")
    configs: list[ToolServerConfig] = []
    for name, raw in servers.items():
        if not isinstance(raw, dict) or "command" not in raw:
            logger.warning("Skipping tool server %r: missing 'command'", name)
            continue
        configs.append(ToolServerConfig.model_validate({**raw, "name": name}))
    return configs


def load_server_configs(path: str | Path | None = None) -> list[ToolServerConfig]:
    """Load tool server launch configs.

    Resolution order: explicit ``path``, ``$MCP_CONFIG_PATH``, then the Claude
    Desktop config location. A missing or unreadable default file yields an
    empty list (the run simply has no remote tools); an explicit path that
    does not exist raises FileNotFoundError.
    """
    explicit = path is not None or MCP_CONFIG_PATH_ENV in os.environ
    resolved = Path(path or os.environ.get(MCP_CONFIG_PATH_ENV) or DEFAULT_MCP_CONFIG_PATH)
    if not resolved.is_file():
        if explicit:
            raise FileNotFoundError(f"Tool server config not found: {resolved}")
        logger.warning("No tool server config at %s; running without remote tools", resolved)
        return []
    configs = parse_server_configs(_read_config_file(resolved))
    logger.info("Found %d tool servers in %s", len(configs), resolved)
    return configs


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionConfig:
    """Per-server connection policy."""

    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 2.0


@dataclass(frozen=True)
class RateLimitConfig:
    """Token-per-minute ceiling and backoff policy. Durations in seconds."""

    max_tokens_per_minute: int = 400_000
    window: float = 60.0
    min_delay_between_calls: float = 3.0
    high_usage_threshold: float = 0.7
    high_usage_delay: float = 15.0
    target_ratio: float = 0.8
    wait_buffer: float = 2.0
    max_wait: float = 60.0
    clear_window: float = 65.0
    backoff_initial: float = 30.0
    backoff_max: float = 120.0
    consecutive_reset_threshold: int = 2


@dataclass(frozen=True)
class TruncationConfig:
    """Token estimation and history trimming knobs.

    ``chars_per_token`` is a rough proxy, not a tokenizer; 4 is a fair
    average for English prose and JSON.
    """

    chars_per_token: float = 4.0
    tool_overhead: int = 100
    max_prompt_tokens: int = 180_000
    aggressive_prompt_tokens: int = 100_000
    min_recent_messages: int = 4


@dataclass(frozen=True)
class EngineConfig:
    """Runtime policy/config resolved once and passed explicitly through a run."""

    model: str = DEFAULT_MODEL
    max_output_tokens: int = 8192
    llm_timeout: float = 300.0
    max_rate_limit_retries: int = 5
    tool_result_max_chars: int = 50_000
    tool_result_max_items: int = 50
    tool_result_max_field_chars: int = 5_000
    tool_execution_delay: float = 1.0
    max_turns: int | None = 100
    manual_sources_dir: str = "manual_sources"
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    truncation: TruncationConfig = field(default_factory=TruncationConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build typed config from ``COS_*`` environment variables."""
        base = cls()
        connection = ConnectionConfig(
            timeout=_env_float("CONNECT_TIMEOUT", base.connection.timeout),
            max_retries=_env_int("CONNECT_MAX_RETRIES", base.connection.max_retries),
            retry_delay=_env_float("CONNECT_RETRY_DELAY", base.connection.retry_delay),
        )
        rate_limit = RateLimitConfig(
            max_tokens_per_minute=_env_int(
                "MAX_TOKENS_PER_MINUTE", base.rate_limit.max_tokens_per_minute,
            ),
            min_delay_between_calls=_env_float(
                "MIN_DELAY_BETWEEN_CALLS", base.rate_limit.min_delay_between_calls,
            ),
        )
        truncation = TruncationConfig(
            chars_per_token=_env_float("CHARS_PER_TOKEN", base.truncation.chars_per_token),
            max_prompt_tokens=_env_int("MAX_PROMPT_TOKENS", base.truncation.max_prompt_tokens),
            aggressive_prompt_tokens=_env_int(
                "AGGRESSIVE_PROMPT_TOKENS", base.truncation.aggressive_prompt_tokens,
            ),
            min_recent_messages=_env_int(
                "MIN_RECENT_MESSAGES", base.truncation.min_recent_messages,
            ),
        )
        max_turns = _env_int("MAX_TURNS", base.max_turns or 0)
        return cls(
            model=os.environ.get(f"{ENV_PREFIX}MODEL") or os.environ.get("CLAUDE_MODEL") or base.model,
            max_output_tokens=_env_int("MAX_OUTPUT_TOKENS", base.max_output_tokens),
            llm_timeout=_env_float("LLM_TIMEOUT", base.llm_timeout),
            max_rate_limit_retries=_env_int("MAX_RATE_LIMIT_RETRIES", base.max_rate_limit_retries),
            tool_result_max_chars=_env_int("TOOL_RESULT_MAX_CHARS", base.tool_result_max_chars),
            tool_execution_delay=_env_float("TOOL_EXECUTION_DELAY", base.tool_execution_delay),
            max_turns=max_turns if max_turns > 0 else None,
            manual_sources_dir=os.environ.get(f"{ENV_PREFIX}MANUAL_SOURCES_DIR", base.manual_sources_dir),
            connection=connection,
            rate_limit=rate_limit,
            truncation=truncation,
        )


def _env_raw(name: str) -> str | None:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s%s=%r; expected integer. Defaulting to %d.", ENV_PREFIX, name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s%s=%r; expected number. Defaulting to %g.", ENV_PREFIX, name, raw, default)
        return default
