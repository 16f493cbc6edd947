"""Tool-use orchestration loop.

Runs one agent (natural-language instructions plus parameters) against the
LLM, letting it call local and remote tools until it produces a final answer:

    result = await arun_agent(
        Path("agents/weekly-summary.md").read_text(),
        {"folder": "Week 1"},
        agent_name="weekly-summary",
    )
    print(result.success, result.output)

The loop:
    1. Build [user: instructions + parameters] and the tool list
       (remote registry + built-in file tools)
    2. AWAITING_MODEL: estimate tokens, wait for rate budget, call the LLM
       (rate-limit errors back off and retry; prompt-too-long truncates, down to
       the first message plus the most recent ones, and retries)
    3. No tool request -> DONE with the response text
    4. EXECUTING_TOOLS: run every requested call concurrently; per-call
       failures become error payloads; oversized results are shrunk
    5. Append assistant(tool requests) + user(tool results), pause briefly,
       truncate if over budget, back to 2
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from chief_of_staff.config import EngineConfig, ToolServerConfig, load_server_configs
from chief_of_staff.connections import ConnectionManager
from chief_of_staff.errors import (
    FatalEngineError,
    PromptTooLongError,
    RateLimitError,
    ToolInvocationError,
    error_payload,
    wrap_error,
)
from chief_of_staff.llm import GenerateTurn, ModelTurn, generate_turn
from chief_of_staff.local_tools import LocalTool, LocalToolbox
from chief_of_staff.messages import Message, ToolRequestBlock, ToolResultBlock
from chief_of_staff.rate_limit import RateLimiter
from chief_of_staff.registry import ToolDescriptor
from chief_of_staff.truncation import Truncator

logger = logging.getLogger(__name__)

EXECUTE_PROMPT = (
    "Please execute the agent's instructions now. Use the available tools to gather the "
    "required data and provide a comprehensive report following the output format "
    "specified in the instructions."
)

FOLDER_PARAMETER_KEYS: tuple[str, ...] = ("manual_sources_folder", "folder")
"""Run parameters that scope the built-in file tools to a subfolder."""


class AgentState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ToolCallRecord:
    """Record of a single tool call during the loop."""

    server: str
    tool: str
    arguments: dict[str, Any]
    error: str | None = None
    result_chars: int = 0
    shrunk: bool = False
    latency_s: float = 0.0


@dataclass
class RunResult:
    """Outcome of one agent run, handed to report generation."""

    agent_name: str
    success: bool
    output: str = ""
    error: str | None = None
    error_type: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    duration_s: float = 0.0
    turns: int = 0
    final_state: AgentState = AgentState.DONE
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    server_failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["final_state"] = self.final_state.value
        return data


@dataclass
class _Run:
    messages: list[Message]
    tools: list[ToolDescriptor]
    toolbox: LocalToolbox | None
    state: AgentState = AgentState.AWAITING_MODEL
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tool dispatch targets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocalTarget:
    tool: LocalTool
    toolbox: LocalToolbox


@dataclass(frozen=True)
class RemoteTarget:
    name: str


ToolTarget = Union[LocalTarget, RemoteTarget]


def resolve_target(name: str, toolbox: LocalToolbox | None) -> ToolTarget:
    """Built-in tools first; every other name is resolved by the remote registry."""
    if toolbox is not None:
        local = LocalTool.lookup(name)
        if local is not None:
            return LocalTarget(local, toolbox)
    return RemoteTarget(name)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_task_message(instructions: str, parameters: dict[str, Any] | None = None) -> Message:
    """The first user message: instructions, rendered parameters, execute prompt."""
    text = instructions.rstrip()
    lines = [
        f"- {key}: {value}"
        for key, value in (parameters or {}).items()
        if value is not None and value != ""
    ]
    if lines:
        text += "\n\n**IMPORTANT: Parameters**\nUse these values for this run:\n" + "\n".join(lines)
    return Message.user_text(f"{text}\n\n{EXECUTE_PROMPT}")


def _dumps(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return _json.dumps(payload, ensure_ascii=False, default=str)


def _truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` including a visible notice."""
    if len(text) <= max_chars:
        return text
    template = "\n... [truncated: showing first {} of %d chars]" % len(text)
    keep = max(0, max_chars - len(template.format(max_chars)))
    return text[:keep] + template.format(keep)


def shrink_tool_result(
    payload: Any,
    *,
    max_chars: int = 50_000,
    max_items: int = 50,
    max_field_chars: int = 5_000,
) -> tuple[str, bool]:
    """Serialize a tool result, abbreviating it when larger than ``max_chars``.

    Arrays keep a prefix annotated with the true item count; objects have long
    string fields cut with a note of how much was removed. Anything still too
    large is cut as text. Returns ``(content, shrunk)``.
    """
    text = _dumps(payload)
    if len(text) <= max_chars:
        return text, False

    if isinstance(payload, list):
        total = len(payload)
        keep = min(max_items, total)
        while True:
            text = _dumps({
                "_summary": f"Array truncated: showing first {keep} of {total} items",
                "_total_items": total,
                "items": payload[:keep],
            })
            if len(text) <= max_chars or keep == 0:
                break
            keep //= 2
    elif isinstance(payload, dict):
        summarized: dict[str, Any] = {"_summary": "Large object values truncated"}
        for key, value in payload.items():
            if isinstance(value, str) and len(value) > max_field_chars:
                cut = len(value) - max_field_chars
                summarized[key] = value[:max_field_chars] + f"... [truncated {cut} more chars]"
            else:
                summarized[key] = value
        text = _dumps(summarized)

    return _truncate_text(text, max_chars), True


def remote_payload(tool: str, result: Any) -> Any:
    """Turn an MCP CallToolResult into plain data (parsed JSON when possible).

    Raises ToolInvocationError when the server flagged the result as an error.
    """
    content = getattr(result, "content", None)
    if content is None:
        return result
    parts = [item.text if hasattr(item, "text") else str(item) for item in content]
    text = "\n".join(parts)
    if getattr(result, "isError", False) is True:
        raise ToolInvocationError(tool, text or f"Tool {tool} reported an error")
    structured = getattr(result, "structuredContent", None)
    if isinstance(structured, dict):
        return structured
    if len(parts) == 1:
        try:
            return _json.loads(text)
        except _json.JSONDecodeError:
            return text
    return text


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class AgentRunner:
    """Drives the tool-use conversation for one agent run at a time.

    Args:
        config: Engine settings.
        connections: An initialized ConnectionManager (the remote registry).
        rate_limiter: Share one instance across runners that draw on the same
            provider budget. A private one is created when omitted.
        truncator: Context window truncator.
        local_tools: Built-in file tools. When omitted, a toolbox rooted at
            ``config.manual_sources_dir`` is built per run, scoped by the
            ``folder`` parameter.
        generate: The LLM call. Defaults to :func:`chief_of_staff.llm.generate_turn`.
        context: System/context text sent with every turn.
        sleep: Awaitable sleep for the post-tool pause.
    """

    def __init__(
        self,
        config: EngineConfig,
        connections: ConnectionManager,
        *,
        rate_limiter: RateLimiter | None = None,
        truncator: Truncator | None = None,
        local_tools: LocalToolbox | None = None,
        generate: GenerateTurn | None = None,
        context: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.connections = connections
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self.truncator = truncator or Truncator(config.truncation)
        self.local_tools = local_tools
        self._generate = generate or generate_turn
        self.context = context
        self._sleep = sleep

    async def run_agent(
        self,
        instructions: str,
        parameters: dict[str, Any] | None = None,
        *,
        agent_name: str = "agent",
    ) -> RunResult:
        """Run to a final answer. Failures are returned, not raised."""
        started = time.monotonic()
        parameters = dict(parameters or {})
        run = _Run(messages=[build_task_message(instructions, parameters)], tools=[], toolbox=None)

        try:
            run.toolbox = self._toolbox_for(parameters)
            run.tools = self._tool_list(run.toolbox)
            logger.info("Running agent %s with %d tools", agent_name, len(run.tools))
            output = await self._drive(run)
        except Exception as exc:
            run.state = AgentState.FAILED
            err = wrap_error(exc)
            logger.error("Error running agent %s: %s", agent_name, err)
            return self._result(run, agent_name, started, success=False, error=err)

        run.state = AgentState.DONE
        result = self._result(run, agent_name, started, success=True, output=output)
        logger.info(
            "Agent %s finished in %.1fs (%d turns, %d tool calls)",
            agent_name, result.duration_s, result.turns, len(result.tool_calls),
        )
        return result

    def _toolbox_for(self, parameters: dict[str, Any]) -> LocalToolbox | None:
        if self.local_tools is not None:
            return self.local_tools
        folder = next((str(parameters[k]) for k in FOLDER_PARAMETER_KEYS if parameters.get(k)), None)
        return LocalToolbox(Path(self.config.manual_sources_dir), folder)

    def _tool_list(self, toolbox: LocalToolbox | None) -> list[ToolDescriptor]:
        """Remote tools followed by the built-in ones; built-in names shadow remote ones."""
        local = toolbox.descriptors() if toolbox is not None else []
        reserved = {d.name for d in local}
        tools = []
        for descriptor in self.connections.registry.descriptors():
            if descriptor.name in reserved:
                entry = self.connections.registry.get(descriptor.name)
                logger.warning(
                    "Skipping tool %s from server %s: name is taken by a built-in tool",
                    descriptor.name, entry.server if entry is not None else "unknown",
                )
                continue
            tools.append(descriptor)
        return tools + local

    def _result(
        self,
        run: _Run,
        agent_name: str,
        started: float,
        *,
        success: bool,
        output: str = "",
        error: Exception | None = None,
    ) -> RunResult:
        return RunResult(
            agent_name=agent_name,
            success=success,
            output=output,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            usage={
                "input_tokens": run.input_tokens,
                "output_tokens": run.output_tokens,
                "total_tokens": run.input_tokens + run.output_tokens,
            },
            duration_s=round(time.monotonic() - started, 3),
            turns=run.turns,
            final_state=run.state,
            tool_calls=run.tool_calls,
        )

    # -- loop ----------------------------------------------------------------

    async def _drive(self, run: _Run) -> str:
        cfg = self.config
        while True:
            if cfg.max_turns is not None and run.turns >= cfg.max_turns:
                raise FatalEngineError(f"Agent exceeded {cfg.max_turns} model turns without a final answer")

            run.state = AgentState.AWAITING_MODEL
            turn = await self.call_model(run.messages, run.tools)
            run.turns += 1
            run.input_tokens += turn.input_tokens
            run.output_tokens += turn.output_tokens

            requests = turn.tool_requests
            if not turn.requests_tools or not requests:
                return turn.text

            run.state = AgentState.EXECUTING_TOOLS
            logger.info(
                "Agent is using %d tool(s): %s",
                len(requests), ", ".join(r.name for r in requests),
            )
            results = await self._execute_tools(run, requests)

            run.messages.append(Message(role="assistant", content=list(turn.content)))
            run.messages.append(Message(role="user", content=results))

            if cfg.tool_execution_delay > 0:
                await self._sleep(cfg.tool_execution_delay)

            estimated = self.truncator.estimate(run.messages, run.tools)
            if estimated > cfg.truncation.max_prompt_tokens:
                logger.info(
                    "Token count (~%dk) exceeds limit, truncating messages",
                    round(estimated / 1000),
                )
                run.messages[:] = self.truncator.truncate(
                    run.messages, cfg.truncation.max_prompt_tokens, run.tools,
                )

    async def call_model(self, messages: list[Message], tools: list[ToolDescriptor]) -> ModelTurn:
        """One model turn with rate limiting, rate-limit retries and size recovery.

        ``messages`` is truncated in place when the provider reports the
        prompt is too long; that retry does not consume a rate-limit retry.
        """
        cfg = self.config
        max_retries = max(1, cfg.max_rate_limit_retries)
        attempt = 0
        while True:
            estimated = self.truncator.estimate(messages, tools)
            await self.rate_limiter.wait_for_budget(estimated)
            try:
                turn = await self._generate(
                    model=cfg.model,
                    system=self.context,
                    tools=tools,
                    messages=list(messages),
                    max_tokens=cfg.max_output_tokens,
                    timeout=cfg.llm_timeout,
                )
            except Exception as exc:
                err = wrap_error(exc)
                if isinstance(err, PromptTooLongError):
                    shrunk = self.truncator.truncate(
                        messages, cfg.truncation.aggressive_prompt_tokens, tools,
                    )
                    if len(shrunk) >= len(messages):
                        # our estimate thinks it fits; the provider disagrees
                        shrunk = self.truncator.trim_to_floor(messages)
                    if len(shrunk) >= len(messages):
                        raise PromptTooLongError(
                            f"Prompt too long and cannot be truncated further "
                            f"({len(messages)} messages, ~{round(estimated / 1000)}k tokens). "
                            "Try fewer data sources or split the work into smaller tasks.",
                            original=exc,
                        ) from exc
                    logger.warning(
                        "Prompt too long; retrying with %d of %d messages",
                        len(shrunk), len(messages),
                    )
                    messages[:] = shrunk
                    continue
                if isinstance(err, RateLimitError):
                    await self.rate_limiter.on_rate_limit_error(attempt, max_retries)
                    attempt += 1
                    if attempt < max_retries:
                        continue
                    raise RateLimitError(
                        f"Rate limit still exceeded after {max_retries} attempts: {err}",
                        original=exc,
                    ) from exc
                if err is exc:
                    raise
                raise err from exc

            self.rate_limiter.record_usage(turn.input_tokens)
            return turn

    # -- tools ---------------------------------------------------------------

    async def _execute_tools(self, run: _Run, requests: list[ToolRequestBlock]) -> list[ToolResultBlock]:
        """Run every request concurrently; wait for all of them to settle."""
        outcomes = await asyncio.gather(
            *(self._execute_one(run.toolbox, r) for r in requests),
            return_exceptions=True,
        )
        results: list[ToolResultBlock] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                content = _dumps(error_payload(request.name, outcome))
                outcome = (
                    ToolResultBlock(tool_request_id=request.id, content=content, is_error=True),
                    ToolCallRecord(server="unknown", tool=request.name, arguments=request.input, error=str(outcome)),
                )
            block, record = outcome
            run.tool_calls.append(record)
            results.append(block)
        return results

    async def _execute_one(
        self,
        toolbox: LocalToolbox | None,
        request: ToolRequestBlock,
    ) -> tuple[ToolResultBlock, ToolCallRecord]:
        target = resolve_target(request.name, toolbox)
        record = ToolCallRecord(
            server=self._server_for(target),
            tool=request.name,
            arguments=dict(request.input),
        )
        t0 = time.monotonic()
        is_error = False
        try:
            if isinstance(target, LocalTarget):
                payload = await target.toolbox.call(target.tool, dict(request.input))
            else:
                raw = await self.connections.call_tool(target.name, dict(request.input))
                payload = remote_payload(target.name, raw)
        except Exception as exc:
            payload = error_payload(request.name, exc)
            record.error = payload["error"]
            is_error = True
            logger.warning("Tool %s failed: %s", request.name, payload["error"])

        cfg = self.config
        content, shrunk = shrink_tool_result(
            payload,
            max_chars=cfg.tool_result_max_chars,
            max_items=cfg.tool_result_max_items,
            max_field_chars=cfg.tool_result_max_field_chars,
        )
        if shrunk:
            logger.warning(
                "Large tool result from %s (%d chars), shrunk to %d chars",
                request.name, len(_dumps(payload)), len(content),
            )
        record.shrunk = shrunk
        record.result_chars = len(content)
        record.latency_s = round(time.monotonic() - t0, 3)
        return ToolResultBlock(tool_request_id=request.id, content=content, is_error=is_error), record

    def _server_for(self, target: ToolTarget) -> str:
        if isinstance(target, LocalTarget):
            return "local"
        entry = self.connections.registry.get(target.name)
        return entry.server if entry is not None else "unknown"


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def arun_agent(
    instructions: str,
    parameters: dict[str, Any] | None = None,
    *,
    agent_name: str = "agent",
    server_configs: list[ToolServerConfig] | None = None,
    config: EngineConfig | None = None,
    context: str = "",
    rate_limiter: RateLimiter | None = None,
    generate: GenerateTurn | None = None,
) -> RunResult:
    """Connect to tool servers, run one agent, disconnect.

    The registry and conversation are built fresh for this run. Pass a shared
    ``rate_limiter`` when sequencing several agents on one provider budget.
    """
    config = config or EngineConfig.from_env()
    if server_configs is None:
        server_configs = load_server_configs()
    async with ConnectionManager(config.connection) as manager:
        outcome = await manager.initialize(server_configs)
        runner = AgentRunner(
            config,
            manager,
            rate_limiter=rate_limiter,
            generate=generate,
            context=context,
        )
        result = await runner.run_agent(instructions, parameters, agent_name=agent_name)
    result.server_failures = [f.name for f in outcome.failures]
    return result


def run_agent(
    instructions: str,
    parameters: dict[str, Any] | None = None,
    **kwargs: Any,
) -> RunResult:
    """Sync wrapper around :func:`arun_agent`."""
    return asyncio.run(arun_agent(instructions, parameters, **kwargs))
