"""
MCP Connection Manager - one live client per remote tool server.

Maintains at most one connected MCPClient per server id, caches discovered
tool lists for a fixed time-to-live, classifies failures into a fixed error
taxonomy and exposes a single call_tool entry point. Any failed call tears the
connection down so the next use performs a fresh handshake.
"""

from __future__ import annotations

import asyncio
import time

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from parley.core.constants import MCP_DISCOVERY_TIMEOUT, get_settings
from parley.core.exceptions import MCPNotConnectedError
from parley.integrations.mcp_client import MCPClient
from parley.integrations.mcp_transport import create_transport
from parley.models.mcp_models import (
    ConnectionStatus,
    McpErrorCode,
    McpServerConfig,
    MCPTool,
    ToolCallOutcome,
)
from parley.utils.logger import logger
from parley.utils.single_flight import KeyedSingleFlight

ClientFactory = Callable[[McpServerConfig], Awaitable[MCPClient]]

# Ordered: the first bucket whose markers appear in the error text wins
_ERROR_MARKERS: tuple[tuple[McpErrorCode, tuple[str, ...]], ...] = (
    (McpErrorCode.AUTH, ("401", "403", "Unauthorized", "Forbidden")),
    (McpErrorCode.TIMEOUT, ("timeout", "Timeout", "ETIMEDOUT", "timed out")),
    (McpErrorCode.SERVER_ERROR, ("500", "502", "503", "504")),
    (McpErrorCode.NETWORK, ("Network", "network", "fetch", "ECONNREFUSED", "ENOTFOUND", "ConnectError")),
)


def classify_error(error: BaseException | str) -> McpErrorCode:
    """Bucket an error by inspecting its text."""
    text = error if isinstance(error, str) else f"{type(error).__name__}: {error}"
    for code, markers in _ERROR_MARKERS:
        if any(marker in text for marker in markers):
            return code
    return McpErrorCode.UNKNOWN


async def _connect_client(server: McpServerConfig) -> MCPClient:
    """Default client factory: Streamable HTTP transport plus handshake."""
    client = MCPClient(create_transport(server), server.label)
    return await client.connect()


@dataclass
class ManagedConnection:
    """Connection state for one server."""

    client: MCPClient | None = None
    tools: list[MCPTool] = field(default_factory=list)
    tools_discovered_at: float | None = None
    connected: bool = False


class McpConnectionManager:
    """Manages MCP client connections keyed by server id."""

    def __init__(self, client_factory: ClientFactory | None = None, tools_ttl: float | None = None) -> None:
        self._client_factory = client_factory or _connect_client
        self._tools_ttl = tools_ttl if tools_ttl is not None else get_settings().mcp_tools_ttl
        self._connections: dict[str, ManagedConnection] = {}
        self._connecting: KeyedSingleFlight[str, MCPClient] = KeyedSingleFlight()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def ensure_connected(self, server: McpServerConfig) -> MCPClient:
        """Return a connected client, connecting if needed.

        Concurrent callers for the same server share one handshake.
        """
        connection = self._connections.get(server.id)
        if connection and connection.connected and connection.client is not None:
            return connection.client
        try:
            return await self._connecting.run(server.id, lambda: self._connect(server))
        except asyncio.CancelledError:
            # The shared attempt was aborted by disconnect() while this caller is still live
            current = asyncio.current_task()
            if current is None or current.cancelling():
                raise
            raise MCPNotConnectedError(f"Connection to {server.label} was aborted") from None

    async def _connect(self, server: McpServerConfig) -> MCPClient:
        logger.info(f"Connecting to MCP server {server.label} ({server.url})")
        client = await self._client_factory(server)
        connection = self._connections.setdefault(server.id, ManagedConnection())
        connection.client = client
        connection.connected = True
        logger.info(f"Connected to MCP server {server.label}")
        return client

    async def disconnect(self, server_id: str) -> None:
        """Close and forget the connection for one server."""
        self._connecting.cancel(server_id)
        connection = self._connections.pop(server_id, None)
        if connection is None or connection.client is None:
            return
        try:
            await connection.client.close()
        except Exception as e:
            logger.warning(f"Error disconnecting MCP server {server_id}: {e}")

    async def disconnect_all(self) -> None:
        """Close every connection."""
        server_ids = list(self._connections)
        await asyncio.gather(*(self.disconnect(server_id) for server_id in server_ids))

    async def reset(self) -> None:
        """Disconnect everything and drop all cached state."""
        self._connecting.cancel_all()
        await self.disconnect_all()
        self._connections.clear()

    def is_connected(self, server_id: str) -> bool:
        connection = self._connections.get(server_id)
        return bool(connection and connection.connected)

    def get_connection_status(self, server_id: str) -> ConnectionStatus:
        if self._connecting.is_in_flight(server_id):
            return ConnectionStatus.CONNECTING
        if self.is_connected(server_id):
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.IDLE

    def get_all_connection_statuses(self) -> dict[str, ConnectionStatus]:
        return {server_id: self.get_connection_status(server_id) for server_id in self._connections}

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def discover_tools(self, server: McpServerConfig) -> list[MCPTool]:
        """Return the server's tools, refreshing the cache once it is stale.

        A failed refresh keeps serving the stale list. With no cached list the
        failure propagates.
        """
        connection = self._connections.get(server.id)
        if connection and connection.tools_discovered_at is not None:
            age = time.monotonic() - connection.tools_discovered_at
            if age < self._tools_ttl:
                return connection.tools
            try:
                return await self._refresh_tools(server)
            except Exception as e:
                logger.warning(f"Tool refresh failed for {server.label}, using cached list: {e}")
                return connection.tools

        return await self._refresh_tools(server)

    async def _refresh_tools(self, server: McpServerConfig) -> list[MCPTool]:
        client = await self.ensure_connected(server)
        tools = await client.list_tools()
        connection = self._connections.setdefault(server.id, ManagedConnection())
        connection.tools = tools
        connection.tools_discovered_at = time.monotonic()
        logger.info(f"Discovered {len(tools)} tools on {server.label}")
        return tools

    async def call_tool(self, server: McpServerConfig, tool_name: str, arguments: dict[str, Any]) -> ToolCallOutcome:
        """Call a tool, returning a structured outcome instead of raising."""
        try:
            client = await self.ensure_connected(server)
            result = await client.call_tool(tool_name, arguments)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"MCP call {server.label}/{tool_name} failed: {message}")
            await self.disconnect(server.id)
            return ToolCallOutcome(success=False, error=message, error_code=classify_error(e))

        if result.isError:
            content = result.parts_text
            return ToolCallOutcome(
                success=False,
                content=content,
                error=content or "Tool returned an error",
                error_code=McpErrorCode.SERVER_ERROR,
            )
        return ToolCallOutcome(success=True, content=result.text)

    # ------------------------------------------------------------------
    # Aggregation across servers
    # ------------------------------------------------------------------

    def _eligible(self, servers: list[McpServerConfig], allowed_server_ids: list[str] | None) -> list[McpServerConfig]:
        allowed = set(allowed_server_ids) if allowed_server_ids else None
        return [server for server in servers if server.enabled and (allowed is None or server.id in allowed)]

    async def _discover_quietly(self, server: McpServerConfig) -> list[MCPTool]:
        try:
            tools = await asyncio.wait_for(self.discover_tools(server), timeout=MCP_DISCOVERY_TIMEOUT)
        except Exception as e:
            logger.warning(f"Skipping tools of {server.label}: {e}")
            return []
        return [tool for tool in tools if tool.name not in server.disabled_tools]

    async def get_tool_definitions(
        self, servers: list[McpServerConfig], allowed_server_ids: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """OpenAI function-tool definitions for every eligible server's tools.

        A tool name offered by several servers is listed once.
        """
        eligible = self._eligible(servers, allowed_server_ids)
        discovered = await asyncio.gather(*(self._discover_quietly(server) for server in eligible))

        definitions: list[dict[str, Any]] = []
        seen: set[str] = set()
        for tools in discovered:
            for tool in tools:
                if tool.name in seen:
                    continue
                seen.add(tool.name)
                definitions.append(tool.to_openai_tool())
        return definitions

    async def execute_tool(
        self,
        servers: list[McpServerConfig],
        tool_name: str,
        arguments: dict[str, Any],
        allowed_server_ids: list[str] | None = None,
    ) -> ToolCallOutcome | None:
        """Route a tool call to the first eligible server advertising the tool.

        Returns None if no eligible server offers a tool by that name.
        """
        for server in self._eligible(servers, allowed_server_ids):
            tools = await self._discover_quietly(server)
            if any(tool.name == tool_name for tool in tools):
                return await self.call_tool(server, tool_name, arguments)
        return None


# Module-level state holder to avoid global statement (PLW0603)
_state: dict[str, McpConnectionManager | None] = {"manager": None}


def get_mcp_manager() -> McpConnectionManager:
    """Get the global MCP connection manager instance."""
    manager = _state["manager"]
    if manager is None:
        manager = McpConnectionManager()
        _state["manager"] = manager
    return manager


async def shutdown_mcp_manager() -> None:
    """Disconnect all servers and drop the global manager."""
    manager = _state["manager"]
    if manager is not None:
        await manager.reset()
        _state["manager"] = None
