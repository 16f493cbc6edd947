"""Tool Registry: unified name -> {connection, descriptor} mapping.

Built once per run by the connection manager (append-only during
construction), read-only afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolDescriptor:
    """Name, description and JSON input schema of one callable tool."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []},
    )

    @classmethod
    def from_mcp(cls, tool: Any, server: str = "") -> "ToolDescriptor":
        """Convert an MCP Tool object, filling in a missing schema/description."""
        schema = tool.inputSchema if isinstance(getattr(tool, "inputSchema", None), dict) else None
        if not schema:
            schema = {"type": "object", "properties": {}, "required": []}
        description = tool.description or (f"Tool from {server} server" if server else "")
        return cls(name=tool.name, description=description, input_schema=dict(schema))


class ToolConnection(Protocol):
    """What the registry needs from a connection: its name and call_tool."""

    name: str

    async def call_tool(self, tool: str, arguments: dict[str, Any]) -> Any: ...


@dataclass(frozen=True)
class RegisteredTool:
    connection: ToolConnection
    descriptor: ToolDescriptor

    @property
    def server(self) -> str:
        return self.connection.name


@dataclass(frozen=True)
class ToolCollision:
    """A duplicate tool name that was skipped at registration."""

    tool: str
    kept_server: str
    skipped_server: str


class ToolRegistry:
    """Mapping of tool name to the connection that owns it.

    On a name collision the first registration wins; the duplicate is logged
    and recorded in :attr:`collisions`.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self.collisions: list[ToolCollision] = []

    def register(self, connection: ToolConnection, descriptor: ToolDescriptor) -> bool:
        existing = self._tools.get(descriptor.name)
        if existing is not None:
            logger.warning(
                "Duplicate tool %r from server %r (already from %r); keeping the first",
                descriptor.name, connection.name, existing.server,
            )
            self.collisions.append(ToolCollision(descriptor.name, existing.server, connection.name))
            return False
        self._tools[descriptor.name] = RegisteredTool(connection, descriptor)
        return True

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [entry.descriptor for entry in self._tools.values()]

    def available_tools(self) -> list[dict[str, Any]]:
        """``[{name, server, descriptor}]`` for every registered tool."""
        return [
            {"name": name, "server": entry.server, "descriptor": entry.descriptor}
            for name, entry in self._tools.items()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)
