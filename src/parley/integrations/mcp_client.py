"""MCP client over a message transport.

Performs the MCP handshake and correlates JSON-RPC responses with the
requests that produced them. Responses may arrive on the POST that carried the
request or on the server push channel; the listener drains the transport's
event channel either way and resolves the pending future by id.
"""

from __future__ import annotations

import asyncio
import contextlib

from typing import Any

from parley.core.constants import (
    MCP_CLIENT_NAME,
    MCP_CLIENT_VERSION,
    MCP_PROTOCOL_VERSION,
    get_settings,
)
from parley.core.exceptions import (
    MCPError,
    MCPNotConnectedError,
    MCPRequestError,
    MCPTimeoutError,
)
from parley.integrations.mcp_transport import INITIALIZED_NOTIFICATION, MCPTransport
from parley.models.mcp_models import MCPResult, MCPTool
from parley.utils.logger import logger


class MCPClient:
    """MCP client bound to one server.

    Supports multiplexing: any number of requests may be outstanding, each
    waiting on its own future keyed by JSON-RPC id.
    """

    def __init__(self, transport: MCPTransport, server_name: str):
        """Initialize MCP client.

        Args:
            transport: Unstarted transport to the server
            server_name: Human-readable server name for logging
        """
        self.transport = transport
        self.server_name = server_name
        self.server_info: dict[str, Any] = {}
        self._msg_id = 0
        self._initialized = False

        # Multiplexing state
        self._pending_requests: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._listen_task: asyncio.Task[None] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def connect(self, timeout: float | None = None) -> MCPClient:
        """Start the transport and perform the initialize handshake."""
        settings = get_settings()
        connected = False
        try:
            await self.transport.start()
            self._listen_task = asyncio.create_task(self._listen_loop())

            response = await self._send_request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": MCP_CLIENT_NAME, "version": MCP_CLIENT_VERSION},
                },
                timeout=timeout if timeout is not None else settings.mcp_connect_timeout,
            )
            result = response.get("result", {})
            self.server_info = result.get("serverInfo", {})
            self.transport.set_protocol_version(result.get("protocolVersion") or MCP_PROTOCOL_VERSION)

            await self.transport.send({"jsonrpc": "2.0", "method": INITIALIZED_NOTIFICATION})

            self._initialized = True
            connected = True
            logger.info(f"{self.server_name}: Initialized successfully")
            return self

        except Exception as e:
            logger.error(f"{self.server_name}: Connection failed: {e}")
            raise
        finally:
            # Also runs when the handshake is cancelled
            if not connected:
                await self.close()

    async def close(self) -> None:
        """Close the transport and fail pending requests."""
        self._initialized = False

        await self.transport.close()

        if self._listen_task:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None

        self._fail_pending(MCPNotConnectedError(f"{self.server_name}: connection closed"))

    async def _listen_loop(self) -> None:
        """Drain transport events and dispatch responses to pending requests."""
        async for event in self.transport.events():
            if event.kind == "message" and event.message is not None:
                self._handle_message(event.message)
            elif event.kind == "error":
                logger.debug(f"{self.server_name}: Transport error: {event.error}")
            elif event.kind == "close":
                self._fail_pending(MCPNotConnectedError(f"{self.server_name}: connection closed"))

    def _handle_message(self, data: dict[str, Any]) -> None:
        msg_id = data.get("id")
        if msg_id is None or "method" in data:
            # Notification or server-initiated request; we strictly act as a client
            logger.debug(f"{self.server_name}: Received server message: {data.get('method')}")
            return

        future = self._pending_requests.pop(msg_id, None)
        if future is None:
            logger.debug(f"{self.server_name}: Received message with unknown ID: {msg_id}")
            return
        if future.done():
            return

        if "error" in data:
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            future.set_exception(MCPRequestError(error.get("code"), str(error.get("message", "")), error.get("data")))
        else:
            future.set_result(data)

    def _fail_pending(self, error: MCPError) -> None:
        for future in self._pending_requests.values():
            if not future.done():
                future.set_exception(error)
        self._pending_requests.clear()

    def _next_id(self) -> int:
        """Generate next message ID."""
        self._msg_id += 1
        return self._msg_id

    async def _send_request(self, method: str, params: dict[str, Any], timeout: float) -> dict[str, Any]:
        """Send a JSON-RPC request and wait for the response."""
        msg_id = self._next_id()
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending_requests[msg_id] = future

        request = {"jsonrpc": "2.0", "id": msg_id, "method": method, "params": params}

        async def exchange() -> dict[str, Any]:
            await self.transport.send(request)
            return await future

        try:
            return await asyncio.wait_for(exchange(), timeout=timeout)
        except asyncio.TimeoutError:
            raise MCPTimeoutError(f"Request {method} timed out after {timeout}s") from None
        finally:
            self._pending_requests.pop(msg_id, None)

    async def list_tools(self) -> list[MCPTool]:
        """List available tools from MCP server, following pagination cursors."""
        if not self._initialized:
            raise MCPNotConnectedError("Client not initialized")

        timeout = get_settings().mcp_request_timeout
        tools: list[MCPTool] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            response = await self._send_request("tools/list", params, timeout=timeout)
            result = response.get("result", {})
            tools.extend(MCPTool(**t) for t in result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> MCPResult:
        """Call a tool on the MCP server."""
        if not self._initialized:
            raise MCPNotConnectedError("Client not initialized")

        response = await self._send_request(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=get_settings().mcp_call_tool_timeout,
        )
        return MCPResult(**response.get("result", {}))
