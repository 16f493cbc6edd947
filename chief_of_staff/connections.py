"""Multi-server connection manager for MCP tool servers.

Launches every configured tool server as a stdio subprocess, concurrently,
and builds the run's :class:`ToolRegistry` from whatever connects:

    async with ConnectionManager(config.connection) as manager:
        outcome = await manager.initialize(load_server_configs())
        print(outcome.succeeded, outcome.failed)
        result = await manager.call_tool("search_messages", {"query": "roadmap"})

A server that keeps failing is recorded in ``outcome.failures`` and the run
continues with fewer tools; ``initialize`` never raises because one server is
down.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from chief_of_staff.config import ConnectionConfig, ToolServerConfig
from chief_of_staff.errors import (
    ConnectionTimeoutError,
    ToolInvocationError,
    ToolNotFoundError,
)
from chief_of_staff.registry import ToolDescriptor, ToolRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLOSE_TIMEOUT: float = 10.0
"""Seconds to wait for a server subprocess to shut down before abandoning it."""


def _import_mcp() -> tuple[Any, ...]:
    """Lazily import mcp client components.

    Returns:
        (stdio_client, StdioServerParameters, ClientSession)
    """
    try:
        from mcp.client.stdio import (
            StdioServerParameters,
            stdio_client,
        )
        from mcp import ClientSession
    except ImportError:
        raise ImportError(
            "mcp package is required to connect to tool servers. "
            "Install with: pip install mcp"
        ) from None
    return stdio_client, StdioServerParameters, ClientSession


async def _with_deadline(awaitable: Awaitable[T], server: str, step: str, timeout: float) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ConnectionTimeoutError(server, step, timeout) from exc


# ---------------------------------------------------------------------------
# Single connection
# ---------------------------------------------------------------------------


class ToolServerConnection:
    """One tool server subprocess and its MCP client session.

    The stdio transport and session are entered and exited by a single owner
    task: anyio cancel scopes must be left by the task that entered them, and
    ``close()`` is usually called from a different task than ``open()``.
    """

    def __init__(self, config: ToolServerConfig) -> None:
        self.config = config
        self.name = config.name
        self.session: Any = None
        self.connected = False
        self.last_error: str | None = None
        self._owner: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()

    async def open(self, timeout: float) -> list[ToolDescriptor]:
        """Start the server, run the handshake and list its tools.

        ``connect`` and ``list_tools`` are each bounded by ``timeout``.
        On failure the transport is already torn down when this raises.
        """
        ready: asyncio.Future[list[ToolDescriptor]] = asyncio.get_running_loop().create_future()
        self._shutdown = asyncio.Event()
        self._owner = asyncio.create_task(self._own(ready, timeout), name=f"tool-server:{self.name}")
        try:
            return await ready
        except asyncio.CancelledError:
            self._owner.cancel()
            await asyncio.gather(self._owner, return_exceptions=True)
            raise
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            await asyncio.gather(self._owner, return_exceptions=True)
            self._owner = None
            raise

    async def _own(self, ready: asyncio.Future[list[ToolDescriptor]], timeout: float) -> None:
        try:
            stdio_client, StdioServerParameters, ClientSession = _import_mcp()
            params = StdioServerParameters(
                command=self.config.command,
                args=list(self.config.args),
                env=self.config.launch_env(),
                cwd=self.config.cwd,
            )
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(stdio_client(params))
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                await _with_deadline(session.initialize(), self.name, "connect", timeout)
                listed = await _with_deadline(session.list_tools(), self.name, "list_tools", timeout)
                self.session = session
                self.connected = True
                ready.set_result([ToolDescriptor.from_mcp(t, self.name) for t in listed.tools])
                await self._shutdown.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                self.last_error = str(exc) or type(exc).__name__
                logger.warning("Tool server %s exited with error: %s", self.name, exc)
        finally:
            self.session = None
            self.connected = False

    async def call_tool(self, tool: str, arguments: dict[str, Any]) -> Any:
        if self.session is None:
            raise ToolInvocationError(tool, f"Tool server {self.name!r} is not connected")
        return await self.session.call_tool(tool, arguments)

    async def close(self) -> None:
        """Stop the subprocess. Safe to call more than once."""
        owner, self._owner = self._owner, None
        if owner is None:
            return
        self._shutdown.set()
        try:
            await asyncio.wait_for(owner, timeout=CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Tool server %s did not shut down within %.0fs", self.name, CLOSE_TIMEOUT)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass
class ServerFailure:
    name: str
    error: str
    error_type: str


@dataclass
class InitializeResult:
    """Aggregate outcome of connecting to every configured server."""

    registry: ToolRegistry
    succeeded: int = 0
    failed: int = 0
    failures: list[ServerFailure] = field(default_factory=list)


class ConnectionManager:
    """Owns every tool server connection for one run."""

    def __init__(
        self,
        config: ConnectionConfig | None = None,
        *,
        connection_factory: Callable[[ToolServerConfig], Any] = ToolServerConnection,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ConnectionConfig()
        self._factory = connection_factory
        self._sleep = sleep
        self.registry = ToolRegistry()
        self.connections: dict[str, Any] = {}

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def initialize(self, configs: list[ToolServerConfig]) -> InitializeResult:
        """Connect to all servers concurrently and register their tools.

        Waits for every attempt to settle. Tools are registered in config
        order, so on a name collision the earlier server wins.
        """
        logger.info("Connecting to %d tool servers", len(configs))
        outcomes = await asyncio.gather(
            *(self._connect_with_retry(cfg) for cfg in configs),
            return_exceptions=True,
        )

        result = InitializeResult(registry=self.registry)
        for cfg, outcome in zip(configs, outcomes):
            if isinstance(outcome, BaseException):
                result.failed += 1
                result.failures.append(ServerFailure(
                    name=cfg.name,
                    error=str(outcome) or type(outcome).__name__,
                    error_type=_failure_type(outcome),
                ))
                logger.error("Failed to connect to tool server %s: %s", cfg.name, outcome)
                continue
            connection, tools = outcome
            self.connections[cfg.name] = connection
            for descriptor in tools:
                self.registry.register(connection, descriptor)
            result.succeeded += 1
            logger.info("Connected to %s: %d tools available", cfg.name, len(tools))

        logger.info(
            "Successfully connected to %d/%d tool servers (%d tools)",
            result.succeeded, len(configs), len(self.registry),
        )
        return result

    async def _connect_with_retry(self, cfg: ToolServerConfig) -> tuple[Any, list[ToolDescriptor]]:
        attempts = max(1, self.config.max_retries)
        attempt = 1
        while True:
            connection = self._factory(cfg)
            try:
                tools = await connection.open(self.config.timeout)
                return connection, tools
            except Exception as exc:
                await self._discard(connection)
                if attempt >= attempts:
                    raise
                delay = self.config.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Tool server %s attempt %d/%d failed (retrying in %.1fs): %s",
                    cfg.name, attempt, attempts, delay, exc,
                )
                await self._sleep(delay)
            attempt += 1

    async def _discard(self, connection: Any) -> None:
        try:
            await connection.close()
        except Exception as exc:
            logger.debug("Error discarding connection %s: %s", getattr(connection, "name", "?"), exc)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Forward a call to the server that owns ``name``.

        Raises ToolNotFoundError for unknown names; errors from the remote
        tool propagate unmodified.
        """
        entry = self.registry.get(name)
        if entry is None:
            raise ToolNotFoundError(name, self.registry.names())
        return await entry.connection.call_tool(name, arguments)

    async def close(self) -> None:
        """Close every connection; one failing close never blocks the others."""
        connections = list(self.connections.values())
        self.connections = {}
        self.registry = ToolRegistry()
        if not connections:
            return
        outcomes = await asyncio.gather(
            *(conn.close() for conn in connections),
            return_exceptions=True,
        )
        for conn, outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Error closing tool server %s: %s", conn.name, outcome)


def _failure_type(error: BaseException) -> str:
    if isinstance(error, ConnectionTimeoutError):
        return "ConnectionTimeout"
    return type(error).__name__
