"""Agent execution engine: run natural-language agents against an LLM with MCP tools.

Usage:
    from chief_of_staff import run_agent, load_server_configs

    result = run_agent(
        Path("agents/business-health.md").read_text(),
        {"folder": "Week 1"},
        agent_name="business-health",
        server_configs=load_server_configs("mcp.json"),
    )
    print(result.success, result.output)

    # Several agents on one provider budget
    from chief_of_staff import RateLimiter, arun_agent

    limiter = RateLimiter()
    for name, text in agents.items():
        result = await arun_agent(text, agent_name=name, rate_limiter=limiter)
"""

import logging as _logging
import os as _os
from pathlib import Path as _Path

_DEFAULT_KEYS_FILE = _Path.home() / ".secrets" / "api_keys.env"
_log = _logging.getLogger(__name__)


def _load_api_keys() -> int:
    """Load API keys from env file into os.environ on import.

    Reads from COS_KEYS_FILE env var, or ~/.secrets/api_keys.env.
    Skips comments, empty lines, and keys already set in the environment.
    Returns the number of keys loaded.
    """
    keys_file = _Path(_os.environ.get("COS_KEYS_FILE", str(_DEFAULT_KEYS_FILE)))
    if not keys_file.is_file():
        return 0
    loaded = 0
    for line in keys_file.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in _os.environ:
            _os.environ[key] = value
            loaded += 1
    if loaded:
        _log.debug("chief_of_staff: loaded %d API keys from %s", loaded, keys_file)
    return loaded


_load_api_keys()

from chief_of_staff.config import (
    ConnectionConfig,
    EngineConfig,
    RateLimitConfig,
    ToolServerConfig,
    TruncationConfig,
    load_server_configs,
)
from chief_of_staff.connections import (
    ConnectionManager,
    InitializeResult,
    ServerFailure,
    ToolServerConnection,
)
from chief_of_staff.errors import (
    AgentError,
    ConnectionTimeoutError,
    FatalEngineError,
    PromptTooLongError,
    RateLimitError,
    ToolInvocationError,
    ToolNotFoundError,
    classify_error,
    wrap_error,
)
from chief_of_staff.local_tools import LocalTool, LocalToolbox
from chief_of_staff.messages import Message, TextBlock, ToolRequestBlock, ToolResultBlock
from chief_of_staff.rate_limit import RateLimiter
from chief_of_staff.registry import ToolDescriptor, ToolRegistry
from chief_of_staff.runner import (
    AgentRunner,
    AgentState,
    RunResult,
    ToolCallRecord,
    arun_agent,
    run_agent,
)
from chief_of_staff.truncation import Truncator, estimate_tokens

__all__ = [
    "AgentError",
    "AgentRunner",
    "AgentState",
    "ConnectionConfig",
    "ConnectionManager",
    "ConnectionTimeoutError",
    "EngineConfig",
    "FatalEngineError",
    "InitializeResult",
    "LocalTool",
    "LocalToolbox",
    "Message",
    "PromptTooLongError",
    "RateLimitConfig",
    "RateLimitError",
    "RateLimiter",
    "RunResult",
    "ServerFailure",
    "TextBlock",
    "ToolCallRecord",
    "ToolDescriptor",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolRegistry",
    "ToolRequestBlock",
    "ToolResultBlock",
    "ToolServerConfig",
    "ToolServerConnection",
    "Truncator",
    "TruncationConfig",
    "arun_agent",
    "classify_error",
    "estimate_tokens",
    "load_server_configs",
    "run_agent",
    "wrap_error",
]
