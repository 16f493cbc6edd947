"""Tests for chief_of_staff.truncation."""

from __future__ import annotations

from chief_of_staff.config import TruncationConfig
from chief_of_staff.messages import Message, TextBlock, ToolRequestBlock, ToolResultBlock
from chief_of_staff.truncation import Truncator, estimate_tokens


def _text(role: str, chars: int, marker: str = "x") -> Message:
    return Message(role=role, content=[TextBlock(text=marker * chars)])


def _conversation(turns: int, chars: int = 4000) -> list[Message]:
    messages = [Message.user_text("instructions")]
    for i in range(turns):
        messages.append(_text("assistant", chars, marker=str(i % 10)))
        messages.append(_text("user", chars, marker=str(i % 10)))
    return messages


# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------


class TestEstimateTokens:
    def test_chars_over_four(self):
        assert estimate_tokens([_text("user", 400)]) == 100

    def test_rounds_up(self):
        assert estimate_tokens([_text("user", 5)]) == 2

    def test_tool_schema_overhead(self):
        assert estimate_tokens([_text("user", 400)], [object(), object()]) == 300

    def test_counts_every_block_kind(self):
        message = Message(role="assistant", content=[
            TextBlock(text="abcd"),
            ToolRequestBlock(id="1", name="search", input={"q": "ab"}),
        ])
        result = Message(role="user", content=[ToolResultBlock(tool_request_id="1", content="x" * 8)])
        # '{"q": "ab"}' is 11 chars
        assert estimate_tokens([message, result]) == 6

    def test_monotonic_in_content(self):
        base = [_text("user", 100)]
        assert estimate_tokens(base + [_text("assistant", 1)]) >= estimate_tokens(base)
        assert estimate_tokens([_text("user", 101)]) >= estimate_tokens([_text("user", 100)])


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------


class TestTruncate:
    def test_single_message_unchanged(self):
        messages = [_text("user", 1_000_000)]
        assert Truncator().truncate(messages, 10) is messages

    def test_under_budget_unchanged(self):
        messages = _conversation(3, chars=40)
        assert Truncator().truncate(messages, 10_000) == messages

    def test_keeps_first_and_most_recent(self):
        messages = _conversation(10)  # 21 messages, ~1000 tokens each after the first
        truncator = Truncator(TruncationConfig(min_recent_messages=2))
        result = truncator.truncate(messages, 5_500)
        assert result[0] is messages[0]
        assert result[1:] == messages[-5:]
        assert truncator.estimate(result) <= 5_500

    def test_min_recent_kept_even_over_budget(self):
        messages = _conversation(5, chars=40_000)
        result = Truncator(TruncationConfig(min_recent_messages=4)).truncate(messages, 100)
        assert result[0] is messages[0]
        assert result[1:] == messages[-4:]

    def test_idempotent(self):
        truncator = Truncator(TruncationConfig(min_recent_messages=2))
        once = truncator.truncate(_conversation(10), 5_500)
        assert truncator.truncate(once, 5_500) == once

    def test_tool_overhead_counts_against_budget(self):
        messages = _conversation(10)
        truncator = Truncator(TruncationConfig(min_recent_messages=2))
        without = truncator.truncate(messages, 5_500)
        with_tools = truncator.truncate(messages, 5_500, [object()] * 20)
        assert len(with_tools) < len(without)

    def test_default_budget_from_config(self):
        messages = _conversation(10)
        truncator = Truncator(TruncationConfig(max_prompt_tokens=3_500, min_recent_messages=1))
        assert len(truncator.truncate(messages)) == 4

    def test_trim_to_floor(self):
        messages = _conversation(4, chars=4)  # 9 messages
        result = Truncator(TruncationConfig(min_recent_messages=4)).trim_to_floor(messages)
        assert result[0] is messages[0]
        assert result[1:] == messages[-4:]

    def test_trim_to_floor_at_floor_unchanged(self):
        messages = _conversation(2, chars=4)  # 5 messages
        truncator = Truncator(TruncationConfig(min_recent_messages=4))
        assert truncator.trim_to_floor(messages) is messages

    def test_trim_to_floor_zero_recent(self):
        messages = _conversation(2, chars=4)
        result = Truncator(TruncationConfig(min_recent_messages=0)).trim_to_floor(messages)
        assert result == [messages[0]]
