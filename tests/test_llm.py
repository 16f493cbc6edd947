"""Tests for chief_of_staff.llm: message conversion and response parsing. No LLM calls."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from chief_of_staff.errors import FatalEngineError
from chief_of_staff.llm import generate_turn, to_openai_messages, tool_to_openai, turn_from_response
from chief_of_staff.messages import Message, TextBlock, ToolRequestBlock, ToolResultBlock
from chief_of_staff.registry import ToolDescriptor


def _response(content=None, tool_calls=None, finish_reason="stop", prompt_tokens=10, completion_tokens=5):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _tool_call(id: str, name: str, arguments: str):
    return SimpleNamespace(id=id, function=SimpleNamespace(name=name, arguments=arguments))


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestToolToOpenai:
    def test_basic(self):
        tool = ToolDescriptor("search", "Search", {"type": "object", "properties": {"q": {"type": "string"}}})
        result = tool_to_openai(tool)
        assert result["type"] == "function"
        assert result["function"]["name"] == "search"
        assert result["function"]["parameters"]["properties"] == {"q": {"type": "string"}}

    def test_empty_schema_gets_object(self):
        result = tool_to_openai(ToolDescriptor("ping", "", {}))
        assert result["function"]["parameters"] == {"type": "object", "properties": {}}


class TestToOpenaiMessages:
    def test_claude_system_uses_cache_control(self):
        out = to_openai_messages("anthropic/claude-sonnet-4-5", "context", [Message.user_text("hi")])
        assert out[0]["role"] == "system"
        assert out[0]["content"][0]["cache_control"] == {"type": "ephemeral"}
        assert out[1] == {"role": "user", "content": "hi"}

    def test_other_model_plain_system(self):
        out = to_openai_messages("gpt-5-mini", "context", [Message.user_text("hi")])
        assert out[0] == {"role": "system", "content": "context"}

    def test_no_system(self):
        out = to_openai_messages("gpt-5-mini", "", [Message.user_text("hi")])
        assert out == [{"role": "user", "content": "hi"}]

    def test_tool_round_trip(self):
        messages = [
            Message.user_text("go"),
            Message(role="assistant", content=[
                TextBlock(text="Looking"),
                ToolRequestBlock(id="c1", name="search", input={"q": "a"}),
                ToolRequestBlock(id="c2", name="read", input={}),
            ]),
            Message(role="user", content=[
                ToolResultBlock(tool_request_id="c1", content="r1"),
                ToolResultBlock(tool_request_id="c2", content="r2", is_error=True),
            ]),
        ]
        out = to_openai_messages("gpt-5-mini", "", messages)
        assert out[1]["content"] == "Looking"
        assert [c["id"] for c in out[1]["tool_calls"]] == ["c1", "c2"]
        assert out[1]["tool_calls"][0]["function"]["arguments"] == '{"q": "a"}'
        assert out[2] == {"role": "tool", "tool_call_id": "c1", "content": "r1"}
        assert out[3] == {"role": "tool", "tool_call_id": "c2", "content": "r2"}

    def test_orphaned_result_becomes_user_text(self):
        messages = [
            Message.user_text("go"),
            Message(role="user", content=[ToolResultBlock(tool_request_id="gone", content="old data")]),
        ]
        out = to_openai_messages("gpt-5-mini", "", messages)
        assert out[-1]["role"] == "user"
        assert "gone" in out[-1]["content"]
        assert "old data" in out[-1]["content"]


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


class TestTurnFromResponse:
    def test_text_only(self):
        turn = turn_from_response(_response(content="Final report"))
        assert turn.text == "Final report"
        assert not turn.requests_tools
        assert turn.input_tokens == 10
        assert turn.output_tokens == 5

    def test_tool_calls(self):
        turn = turn_from_response(_response(
            tool_calls=[_tool_call("c1", "search", '{"q": "x"}'), _tool_call("c2", "list", "")],
            finish_reason="tool_calls",
        ))
        assert turn.requests_tools
        assert [(r.id, r.name, r.input) for r in turn.tool_requests] == [
            ("c1", "search", {"q": "x"}),
            ("c2", "list", {}),
        ]

    def test_bad_arguments_preserved(self):
        turn = turn_from_response(_response(
            tool_calls=[_tool_call("c1", "search", "{not json")], finish_reason="tool_calls",
        ))
        assert turn.tool_requests[0].input == {"_raw_arguments": "{not json"}

    def test_missing_usage(self):
        response = _response(content="ok")
        response.usage = None
        assert turn_from_response(response).input_tokens == 0

    def test_malformed(self):
        with pytest.raises(FatalEngineError):
            turn_from_response(SimpleNamespace(choices=[]))


class TestGenerateTurn:
    @pytest.mark.asyncio
    async def test_passes_tools_and_disables_retries(self):
        mock = AsyncMock(return_value=_response(content="done"))
        with patch("chief_of_staff.llm.litellm.acompletion", mock):
            turn = await generate_turn(
                model="gpt-5-mini",
                system="",
                tools=[ToolDescriptor("search")],
                messages=[Message.user_text("hi")],
                max_tokens=100,
                timeout=30,
            )
        assert turn.text == "done"
        kwargs = mock.call_args.kwargs
        assert kwargs["num_retries"] == 0
        assert kwargs["tools"][0]["function"]["name"] == "search"
        assert kwargs["max_tokens"] == 100
