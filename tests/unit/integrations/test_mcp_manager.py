"""Tests for McpConnectionManager."""

from __future__ import annotations

import asyncio

from typing import Any
from unittest.mock import AsyncMock

import pytest

from parley.core.exceptions import MCPTimeoutError, MCPTransportError
from parley.integrations import mcp_manager as mcp_manager_module
from parley.integrations.mcp_manager import McpConnectionManager, classify_error
from parley.models.mcp_models import ConnectionStatus, McpErrorCode, McpServerConfig, MCPResult, MCPTool


class FakeClient:
    """Connected-client double with scripted tool lists and call results."""

    def __init__(self, tools: list[str] | None = None):
        self.tool_names = list(tools or ["echo"])
        self.list_tools = AsyncMock(side_effect=self._list)
        self.call_tool = AsyncMock(
            side_effect=lambda name, args: MCPResult(content=[{"type": "text", "text": f"{name}:{args}"}])
        )
        self.close = AsyncMock()

    async def _list(self) -> list[MCPTool]:
        return [MCPTool(name=name) for name in self.tool_names]


class CountingFactory:
    """Client factory recording how many handshakes were performed."""

    def __init__(self, delay: float = 0.0, tools: list[str] | None = None):
        self.delay = delay
        self.tools = tools
        self.calls = 0
        self.clients: list[FakeClient] = []

    async def __call__(self, server: McpServerConfig) -> Any:
        self.calls += 1
        await asyncio.sleep(self.delay)
        client = FakeClient(self.tools)
        self.clients.append(client)
        return client


@pytest.fixture
def server() -> McpServerConfig:
    return McpServerConfig(id="srv", name="Search", url="https://mcp.test/mcp")


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            ("HTTP 401: Unauthorized", McpErrorCode.AUTH),
            ("HTTP 403", McpErrorCode.AUTH),
            (MCPTimeoutError("Request tools/call timed out after 1s"), McpErrorCode.TIMEOUT),
            ("ETIMEDOUT", McpErrorCode.TIMEOUT),
            (MCPTransportError("HTTP 503: unavailable"), McpErrorCode.SERVER_ERROR),
            ("ECONNREFUSED 127.0.0.1", McpErrorCode.NETWORK),
            ("network unreachable", McpErrorCode.NETWORK),
            ("something odd", McpErrorCode.UNKNOWN),
        ],
    )
    def test_buckets(self, error: Exception | str, expected: McpErrorCode) -> None:
        """Test that errors land in the expected bucket."""
        assert classify_error(error) == expected

    def test_auth_wins_over_server_error(self) -> None:
        """Test that the first matching bucket wins."""
        assert classify_error("401 then 500") == McpErrorCode.AUTH


class TestConnections:
    """Tests for connection lifecycle."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_handshake(self, server: McpServerConfig) -> None:
        """Test that simultaneous ensure_connected calls perform one handshake."""
        factory = CountingFactory(delay=0.02)
        manager = McpConnectionManager(client_factory=factory)

        clients = await asyncio.gather(*(manager.ensure_connected(server) for _ in range(5)))

        assert factory.calls == 1
        assert all(client is clients[0] for client in clients)
        assert manager.get_connection_status("srv") == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_status_while_connecting(self, server: McpServerConfig) -> None:
        """Test that an in-flight handshake reports CONNECTING."""
        manager = McpConnectionManager(client_factory=CountingFactory(delay=0.05))

        task = asyncio.create_task(manager.ensure_connected(server))
        await asyncio.sleep(0)

        assert manager.get_connection_status("srv") == ConnectionStatus.CONNECTING
        await task

    @pytest.mark.asyncio
    async def test_failed_handshake_is_shared_and_retryable(self, server: McpServerConfig) -> None:
        """Test that waiters share a failure and a later call retries."""
        attempts = 0

        async def flaky(config: McpServerConfig) -> Any:
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0.01)
            if attempts == 1:
                raise MCPTransportError("HTTP 502")
            return FakeClient()

        manager = McpConnectionManager(client_factory=flaky)

        results = await asyncio.gather(
            manager.ensure_connected(server), manager.ensure_connected(server), return_exceptions=True
        )
        assert all(isinstance(r, MCPTransportError) for r in results)

        await manager.ensure_connected(server)
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, server: McpServerConfig) -> None:
        """Test that disconnect closes and forgets the client."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory)
        await manager.ensure_connected(server)

        await manager.disconnect("srv")

        factory.clients[0].close.assert_awaited_once()
        assert manager.get_connection_status("srv") == ConnectionStatus.IDLE


class TestToolDiscovery:
    """Tests for the tool cache."""

    @pytest.mark.asyncio
    async def test_cache_within_ttl(self, server: McpServerConfig) -> None:
        """Test that a fresh cache is served without a tools/list request."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory, tools_ttl=60)

        await manager.discover_tools(server)
        await manager.discover_tools(server)

        assert factory.clients[0].list_tools.await_count == 1

    @pytest.mark.asyncio
    async def test_refresh_after_ttl(self, server: McpServerConfig) -> None:
        """Test that an expired cache is refreshed."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory, tools_ttl=0.01)

        await manager.discover_tools(server)
        await asyncio.sleep(0.02)
        await manager.discover_tools(server)

        assert factory.clients[0].list_tools.await_count == 2

    @pytest.mark.asyncio
    async def test_stale_list_served_when_refresh_fails(self, server: McpServerConfig) -> None:
        """Test that a failed refresh falls back to the cached tools."""
        factory = CountingFactory(tools=["echo", "search"])
        manager = McpConnectionManager(client_factory=factory, tools_ttl=0.01)

        await manager.discover_tools(server)
        factory.clients[0].list_tools.side_effect = MCPTransportError("HTTP 500")
        await asyncio.sleep(0.02)
        tools = await manager.discover_tools(server)

        assert [t.name for t in tools] == ["echo", "search"]

    @pytest.mark.asyncio
    async def test_failure_without_cache_propagates(self, server: McpServerConfig) -> None:
        """Test that discovery errors surface when nothing is cached."""

        async def failing(config: McpServerConfig) -> Any:
            raise MCPTransportError("HTTP 401")

        manager = McpConnectionManager(client_factory=failing)

        with pytest.raises(MCPTransportError):
            await manager.discover_tools(server)

    @pytest.mark.asyncio
    async def test_definitions_filter_and_dedupe(self) -> None:
        """Test allow-lists, disabled servers, disabled tools and name dedupe."""
        manager = McpConnectionManager(client_factory=CountingFactory(tools=["echo", "search"]))
        servers = [
            McpServerConfig(id="a", url="https://a.test", disabled_tools=["search"]),
            McpServerConfig(id="b", url="https://b.test"),
            McpServerConfig(id="c", url="https://c.test", enabled=False),
        ]

        definitions = await manager.get_tool_definitions(servers)
        only_a = await manager.get_tool_definitions(servers, allowed_server_ids=["a"])

        assert [d["function"]["name"] for d in definitions] == ["echo", "search"]
        assert [d["function"]["name"] for d in only_a] == ["echo"]
        assert manager.get_connection_status("c") == ConnectionStatus.IDLE

    @pytest.mark.asyncio
    async def test_unreachable_server_skipped(self) -> None:
        """Test that one failing server does not hide the others' tools."""

        async def factory(config: McpServerConfig) -> Any:
            if config.id == "down":
                raise MCPTransportError("ConnectError")
            return FakeClient(["echo"])

        manager = McpConnectionManager(client_factory=factory)
        servers = [McpServerConfig(id="down", url="https://x.test"), McpServerConfig(id="up", url="https://y.test")]

        definitions = await manager.get_tool_definitions(servers)

        assert [d["function"]["name"] for d in definitions] == ["echo"]


class TestCallTool:
    """Tests for call_tool and execute_tool."""

    @pytest.mark.asyncio
    async def test_success(self, server: McpServerConfig) -> None:
        """Test that text content is returned on success."""
        manager = McpConnectionManager(client_factory=CountingFactory())

        outcome = await manager.call_tool(server, "echo", {"x": 1})

        assert outcome.success
        assert outcome.content == "echo:{'x': 1}"

    @pytest.mark.asyncio
    async def test_is_error_result(self, server: McpServerConfig) -> None:
        """Test that isError results become failed outcomes."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory)
        await manager.ensure_connected(server)
        factory.clients[0].call_tool.side_effect = None
        factory.clients[0].call_tool.return_value = MCPResult(
            content=[{"type": "text", "text": "bad input"}], isError=True
        )

        outcome = await manager.call_tool(server, "echo", {})

        assert not outcome.success
        assert outcome.error == "bad input"
        assert outcome.error_code == McpErrorCode.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_non_text_content_is_kept(self, server: McpServerConfig) -> None:
        """Test that image parts reach the model as JSON instead of being dropped."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory)
        await manager.ensure_connected(server)
        factory.clients[0].call_tool.side_effect = None
        factory.clients[0].call_tool.return_value = MCPResult(content=[{"type": "image", "data": "AAA"}])

        outcome = await manager.call_tool(server, "echo", {})

        assert outcome.success
        assert outcome.content == '{"type":"image","data":"AAA"}'

    @pytest.mark.asyncio
    async def test_failure_disconnects(self, server: McpServerConfig) -> None:
        """Test that a failed call tears down the connection and reconnects next time."""
        factory = CountingFactory()
        manager = McpConnectionManager(client_factory=factory)
        await manager.ensure_connected(server)
        factory.clients[0].call_tool.side_effect = MCPTimeoutError("Request tools/call timed out after 1s")

        outcome = await manager.call_tool(server, "echo", {})

        assert not outcome.success
        assert outcome.error_code == McpErrorCode.TIMEOUT
        factory.clients[0].close.assert_awaited_once()
        assert not manager.is_connected("srv")

        await manager.call_tool(server, "echo", {})
        assert factory.calls == 2

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_returns_failed_outcome(self, server: McpServerConfig) -> None:
        """Test that a call waiting on an aborted handshake fails softly instead of raising."""
        factory = CountingFactory(delay=0.05)
        manager = McpConnectionManager(client_factory=factory)

        call = asyncio.create_task(manager.call_tool(server, "echo", {}))
        await asyncio.sleep(0.01)
        await manager.disconnect("srv")
        outcome = await call

        assert not outcome.success
        assert "aborted" in (outcome.error or "")

        retry = await manager.call_tool(server, "echo", {})
        assert retry.success
        assert factory.calls == 2

    @pytest.mark.asyncio
    async def test_caller_cancellation_still_propagates(self, server: McpServerConfig) -> None:
        """Test that cancelling a waiting caller raises CancelledError and leaves the handshake running."""
        factory = CountingFactory(delay=0.05)
        manager = McpConnectionManager(client_factory=factory)

        waiter = asyncio.create_task(manager.ensure_connected(server))
        other = asyncio.create_task(manager.ensure_connected(server))
        await asyncio.sleep(0.01)
        waiter.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert await other is factory.clients[0]
        assert factory.calls == 1

    @pytest.mark.asyncio
    async def test_execute_tool_routes_to_advertising_server(self) -> None:
        """Test that execute_tool picks the server that lists the tool."""

        async def factory(config: McpServerConfig) -> Any:
            return FakeClient(["search"] if config.id == "b" else ["echo"])

        manager = McpConnectionManager(client_factory=factory)
        servers = [McpServerConfig(id="a", url="https://a.test"), McpServerConfig(id="b", url="https://b.test")]

        outcome = await manager.execute_tool(servers, "search", {"q": "x"})
        missing = await manager.execute_tool(servers, "nope", {})

        assert outcome is not None
        assert outcome.content == "search:{'q': 'x'}"
        assert missing is None


class TestGlobalManager:
    """Tests for the module-level manager accessors."""

    @pytest.mark.asyncio
    async def test_get_and_shutdown(self) -> None:
        """Test that the global manager is created once and dropped on shutdown."""
        first = mcp_manager_module.get_mcp_manager()

        assert mcp_manager_module.get_mcp_manager() is first
        await mcp_manager_module.shutdown_mcp_manager()
        assert mcp_manager_module.get_mcp_manager() is not first
        await mcp_manager_module.shutdown_mcp_manager()
