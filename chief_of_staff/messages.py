"""Conversation data model.

A conversation is an append-only list of :class:`Message`. ``messages[0]`` is
always the task instructions; truncation never evicts it.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolRequestBlock(BaseModel):
    """A tool call the model asked for."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_request"] = "tool_request"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Result of one tool call, correlated to its request by ``tool_request_id``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    tool_request_id: str
    content: str
    is_error: bool = False


ContentBlock = Annotated[
    Union[TextBlock, ToolRequestBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: list[ContentBlock]

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role="user", content=[TextBlock(text=text)])

    @property
    def text(self) -> str:
        """Concatenated text blocks, newline-joined."""
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_requests(self) -> list[ToolRequestBlock]:
        return [b for b in self.content if isinstance(b, ToolRequestBlock)]


def block_char_length(block: TextBlock | ToolRequestBlock | ToolResultBlock) -> int:
    """Characters a block contributes to the token estimate."""
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolRequestBlock):
        return len(json.dumps(block.input, ensure_ascii=False, default=str))
    return len(block.content)


def message_char_length(message: Message) -> int:
    return sum(block_char_length(b) for b in message.content)
