"""Context window estimation and truncation.

The estimate is a character-count proxy (``chars / chars_per_token`` plus a
fixed overhead per tool schema). It is rough but monotonic, and is used
both to size rate-limit waits and to decide when to trim history.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from chief_of_staff.config import TruncationConfig
from chief_of_staff.messages import Message, message_char_length

logger = logging.getLogger(__name__)


def estimate_tokens(
    messages: Sequence[Message],
    tool_schemas: Sequence[object] = (),
    *,
    chars_per_token: float = 4.0,
    tool_overhead: int = 100,
) -> int:
    total_chars = sum(message_char_length(m) for m in messages)
    return math.ceil(total_chars / chars_per_token) + len(tool_schemas) * tool_overhead


class Truncator:
    """Trims a conversation to a token budget, never evicting ``messages[0]``."""

    def __init__(self, config: TruncationConfig | None = None) -> None:
        self.config = config or TruncationConfig()

    def estimate(self, messages: Sequence[Message], tool_schemas: Sequence[object] = ()) -> int:
        return estimate_tokens(
            messages,
            tool_schemas,
            chars_per_token=self.config.chars_per_token,
            tool_overhead=self.config.tool_overhead,
        )

    def truncate(
        self,
        messages: list[Message],
        max_tokens: int | None = None,
        tool_schemas: Sequence[object] = (),
    ) -> list[Message]:
        """Keep the instructions plus as many recent messages as fit.

        At least ``min_recent_messages`` recent messages are kept even when
        that overshoots ``max_tokens``.
        """
        if len(messages) <= 1:
            return messages
        if max_tokens is None:
            max_tokens = self.config.max_prompt_tokens

        first = messages[0]
        cpt = self.config.chars_per_token
        fixed_chars = message_char_length(first)
        overhead = len(tool_schemas) * self.config.tool_overhead

        kept: list[Message] = []
        kept_chars = 0
        for message in reversed(messages[1:]):
            size = message_char_length(message)
            projected = math.ceil((fixed_chars + kept_chars + size) / cpt) + overhead
            if projected > max_tokens and len(kept) >= self.config.min_recent_messages:
                break
            kept.append(message)
            kept_chars += size
        kept.reverse()

        truncated = [first, *kept]
        if len(truncated) < len(messages):
            logger.info(
                "Message truncation: removed %d old message(s), kept %d/%d messages (~%dk tokens, limit %dk)",
                len(messages) - len(truncated),
                len(truncated),
                len(messages),
                round(self.estimate(truncated, tool_schemas) / 1000),
                round(max_tokens / 1000),
            )
        return truncated

    def trim_to_floor(self, messages: list[Message]) -> list[Message]:
        """Drop everything but the instructions and ``min_recent_messages`` recent messages."""
        keep = max(0, self.config.min_recent_messages)
        if len(messages) <= 1 + keep:
            return messages
        trimmed = [messages[0], *messages[len(messages) - keep:]] if keep else [messages[0]]
        logger.info(
            "Message truncation: forced down to %d/%d messages",
            len(trimmed), len(messages),
        )
        return trimmed
