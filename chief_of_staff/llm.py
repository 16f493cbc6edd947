"""LLM boundary: one "generate next turn" call via litellm.

Converts the engine's block-structured conversation to OpenAI chat format
(what litellm speaks for every provider) and the response back into blocks.
"""

from __future__ import annotations

import json as _json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import litellm

from chief_of_staff.errors import FatalEngineError
from chief_of_staff.messages import (
    Message,
    TextBlock,
    ToolRequestBlock,
    ToolResultBlock,
)
from chief_of_staff.registry import ToolDescriptor

logger = logging.getLogger(__name__)

TOOL_REQUEST_STOP_REASONS: frozenset[str] = frozenset({"tool_calls", "tool_use", "function_call"})


@dataclass
class ModelTurn:
    """One model response: ordered content blocks plus usage."""

    content: list[TextBlock | ToolRequestBlock] = field(default_factory=list)
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_requests(self) -> list[ToolRequestBlock]:
        return [b for b in self.content if isinstance(b, ToolRequestBlock)]

    @property
    def requests_tools(self) -> bool:
        return self.stop_reason in TOOL_REQUEST_STOP_REASONS


class GenerateTurn(Protocol):
    async def __call__(
        self,
        *,
        model: str,
        system: str,
        tools: Sequence[ToolDescriptor],
        messages: Sequence[Message],
        max_tokens: int,
        timeout: float,
    ) -> ModelTurn: ...


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def _is_claude_model(model: str) -> bool:
    return "claude" in model.lower() or "anthropic" in model.lower()


def tool_to_openai(tool: ToolDescriptor) -> dict[str, Any]:
    """ToolDescriptor -> OpenAI function-calling schema."""
    parameters = dict(tool.input_schema or {})
    parameters.setdefault("type", "object")
    parameters.setdefault("properties", {})
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": parameters,
        },
    }


def to_openai_messages(model: str, system: str, messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Render the conversation as OpenAI chat messages.

    Tool results whose request was truncated away are sent as plain user text,
    since providers reject a tool result with no matching call.
    """
    out: list[dict[str, Any]] = []
    if system:
        if _is_claude_model(model):
            out.append({
                "role": "system",
                "content": [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}],
            })
        else:
            out.append({"role": "system", "content": system})

    open_calls: set[str] = set()
    for message in messages:
        if message.role == "assistant":
            entry: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            requests = message.tool_requests
            if requests:
                entry["tool_calls"] = [
                    {
                        "id": r.id,
                        "type": "function",
                        "function": {"name": r.name, "arguments": _json.dumps(r.input)},
                    }
                    for r in requests
                ]
                open_calls.update(r.id for r in requests)
            out.append(entry)
            continue

        orphaned: list[str] = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                if block.tool_request_id in open_calls:
                    out.append({"role": "tool", "tool_call_id": block.tool_request_id, "content": block.content})
                    open_calls.discard(block.tool_request_id)
                else:
                    orphaned.append(f"[Result of earlier tool call {block.tool_request_id}]\n{block.content}")
        text_parts = orphaned + [b.text for b in message.content if isinstance(b, TextBlock)]
        if text_parts:
            out.append({"role": "user", "content": "\n\n".join(text_parts)})
    return out


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = _json.loads(raw)
    except (TypeError, _json.JSONDecodeError):
        logger.warning("Unparseable tool arguments: %s", str(raw)[:200])
        return {"_raw_arguments": str(raw)}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def turn_from_response(response: Any) -> ModelTurn:
    """Extract content blocks, stop reason and usage from a litellm response."""
    try:
        choice = response.choices[0]
        message = choice.message
    except (AttributeError, IndexError, TypeError) as exc:
        raise FatalEngineError(f"Malformed LLM response: {exc}", original=exc) from exc

    content: list[TextBlock | ToolRequestBlock] = []
    if message.content:
        content.append(TextBlock(text=message.content))
    for tc in getattr(message, "tool_calls", None) or []:
        content.append(ToolRequestBlock(
            id=tc.id,
            name=tc.function.name,
            input=_parse_arguments(tc.function.arguments),
        ))

    usage = getattr(response, "usage", None)
    input_tokens = getattr(usage, "prompt_tokens", 0) or 0
    output_tokens = getattr(usage, "completion_tokens", 0) or 0
    return ModelTurn(
        content=content,
        stop_reason=choice.finish_reason or "",
        input_tokens=int(input_tokens),
        output_tokens=int(output_tokens),
    )


# ---------------------------------------------------------------------------
# Call
# ---------------------------------------------------------------------------


async def generate_turn(
    *,
    model: str,
    system: str,
    tools: Sequence[ToolDescriptor],
    messages: Sequence[Message],
    max_tokens: int,
    timeout: float,
) -> ModelTurn:
    """Ask the model for its next turn. Provider errors propagate unclassified."""
    call_kwargs: dict[str, Any] = {
        "model": model,
        "messages": to_openai_messages(model, system, messages),
        "max_tokens": max_tokens,
        "timeout": timeout,
        "num_retries": 0,
    }
    if tools:
        call_kwargs["tools"] = [tool_to_openai(t) for t in tools]
    response = await litellm.acompletion(**call_kwargs)
    turn = turn_from_response(response)
    logger.debug(
        "LLM turn: model=%s in=%d out=%d stop=%s tool_calls=%d",
        model, turn.input_tokens, turn.output_tokens, turn.stop_reason, len(turn.tool_requests),
    )
    return turn
