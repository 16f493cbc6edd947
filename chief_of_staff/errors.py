"""Structured error types for the agent engine.

Callers can catch specific error types instead of parsing raw litellm or MCP
exceptions:

    from chief_of_staff.errors import RateLimitError, PromptTooLongError

    try:
        response = await runner.call_model(messages, tools)
    except PromptTooLongError:
        # Truncation could not shrink the conversation any further
        ...
    except RateLimitError:
        # Retries exhausted, the provider is still throttling
        ...

Per-tool-call errors (ToolNotFoundError, ToolInvocationError) never escape the
orchestration loop; they are turned into error payloads the model can read.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base for all engine errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ConnectionTimeoutError(AgentError):
    """A tool server's connect or list-tools step exceeded its deadline."""

    def __init__(self, server: str, step: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s during {step} for tool server {server!r}")
        self.server = server
        self.step = step
        self.timeout = timeout


class ToolNotFoundError(AgentError):
    """The model asked for a tool no connected server provides."""

    def __init__(self, tool: str, available: list[str] | None = None) -> None:
        available = available or []
        listing = ", ".join(available) if available else "none"
        super().__init__(f"Tool {tool} not found. Available tools: {listing}")
        self.tool = tool
        self.available = available


class ToolInvocationError(AgentError):
    """The remote (or local) tool itself reported a failure."""

    def __init__(self, tool: str, message: str, original: Exception | None = None) -> None:
        super().__init__(message, original=original)
        self.tool = tool


class RateLimitError(AgentError):
    """Provider throttling (429), retried with escalating backoff."""


class PromptTooLongError(AgentError):
    """Conversation exceeds the provider's hard context limit."""


class FatalEngineError(AgentError):
    """Anything else (malformed response, auth failure, ...). Not retried."""


# Message fragments indicating the provider refused the prompt for size.
_PROMPT_TOO_LONG_PATTERNS = [
    "prompt is too long",
    "too long",
    "context length",
    "context window",
    "maximum",
]

_RATE_LIMIT_PATTERNS = [
    "rate_limit",
    "rate limit",
    "would exceed the rate limit",
    "too many requests",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def _status_code(error: Exception) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: Exception) -> type[AgentError]:
    """Classify any exception raised by an LLM call into an AgentError subtype.

    Uses litellm exception types when available, falls back to status codes
    and string matching.
    """
    if isinstance(error, AgentError):
        return type(error)

    error_str = str(error).lower()

    try:
        import litellm as _lt

        context_types = _litellm_error_types(_lt, ("ContextWindowExceededError",))
        if context_types and isinstance(error, context_types):
            return PromptTooLongError

        rate_types = _litellm_error_types(_lt, ("RateLimitError",))
        if rate_types and isinstance(error, rate_types):
            return RateLimitError

        bad_request_types = _litellm_error_types(_lt, ("BadRequestError",))
        if bad_request_types and isinstance(error, bad_request_types):
            if any(p in error_str for p in _PROMPT_TOO_LONG_PATTERNS):
                return PromptTooLongError
            return FatalEngineError
    except ImportError:
        pass

    status = _status_code(error)
    if status == 429 or any(p in error_str for p in _RATE_LIMIT_PATTERNS):
        return RateLimitError
    if "prompt is too long" in error_str:
        return PromptTooLongError
    if status in (400, 413) and any(p in error_str for p in _PROMPT_TOO_LONG_PATTERNS):
        return PromptTooLongError

    return FatalEngineError


def wrap_error(error: Exception) -> AgentError:
    """Wrap an exception in the appropriate AgentError subclass.

    If the error is already an AgentError, returns it unchanged.
    """
    if isinstance(error, AgentError):
        return error
    cls = classify_error(error)
    return cls(str(error) or type(error).__name__, original=error)


def error_payload(tool: str, error: Exception) -> dict[str, Any]:
    """Render a per-call tool failure as a payload the model can read."""
    if isinstance(error, ToolNotFoundError):
        error_type = "ToolNotFound"
    elif isinstance(error, ToolInvocationError):
        error_type = "ToolInvocationError"
    elif isinstance(error, ConnectionTimeoutError):
        error_type = "ConnectionTimeout"
    else:
        error_type = "ToolInvocationError"
    return {
        "error": str(error) or type(error).__name__,
        "error_type": error_type,
        "tool": tool,
    }
