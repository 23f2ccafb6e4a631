"""Tests for the SSE + JSON-RPC MCP client."""

from __future__ import annotations

import asyncio

import pytest

from alcove.errors import McpConnectionError, McpProtocolError, McpRpcError
from alcove.services.mcp_client import (
    PROTOCOL_VERSION,
    McpClient,
    iter_jsonrpc_frames,
    normalize_tool,
    parse_sse_record,
)
from conftest import WEATHER_TOOL, FakeMcpServer

BASE_URL = "http://mcp.test"


async def _connected(server: FakeMcpServer, **kwargs) -> McpClient:
    client = McpClient(BASE_URL, http_client=server.http_client(), **kwargs)
    await client.connect()
    return client


class TestParsing:
    def test_parse_sse_record(self) -> None:
        assert parse_sse_record("event: endpoint\ndata: /messages?x=1") == ("endpoint", "/messages?x=1")

    def test_parse_sse_record_joins_data_lines_and_skips_comments(self) -> None:
        assert parse_sse_record(": keepalive\ndata: a\ndata: b") == (None, "a\nb")

    def test_frames_from_object_and_array(self) -> None:
        assert iter_jsonrpc_frames({"id": 1}) == [{"id": 1}]
        assert iter_jsonrpc_frames([{"id": 1}, 'data: {"id": 2}', "not json"]) == [{"id": 1}, {"id": 2}]

    def test_normalize_tool_accepts_snake_case_schema(self) -> None:
        tool = normalize_tool({"name": "echo", "input_schema": {"type": "object"}})
        assert tool.name == "echo"
        assert tool.input_schema == {"type": "object"}
        assert tool.is_active is True

    def test_normalize_tool_rejects_missing_name(self) -> None:
        with pytest.raises(McpProtocolError):
            normalize_tool({"description": "nameless"})


class TestHandshake:
    @pytest.mark.asyncio()
    async def test_connect_initializes_before_listing(self) -> None:
        server = FakeMcpServer(tools=[WEATHER_TOOL])
        client = await _connected(server)
        try:
            assert client.is_connected
            assert client.endpoint == "http://mcp.test/messages?session_id=abc"
            assert client.server_info == {"name": "fake-mcp", "version": "1.0"}
            assert server.methods() == ["initialize", "notifications/initialized"]
            assert server.requests[0]["params"]["protocolVersion"] == PROTOCOL_VERSION

            tools = await client.list_tools()
            assert [t.name for t in tools] == ["get_weather"]
            assert tools[0].input_schema["required"] == ["city"]
        finally:
            await client.close()

    @pytest.mark.asyncio()
    async def test_auth_token_sent_as_bearer(self) -> None:
        server = FakeMcpServer()
        client = await _connected(server, auth_token="secret")
        try:
            assert server.sse_headers[0]["authorization"] == "Bearer secret"
        finally:
            await client.close()

    @pytest.mark.asyncio()
    async def test_cross_origin_endpoint_rejected(self) -> None:
        server = FakeMcpServer(endpoint="http://evil.test/messages")
        client = McpClient(BASE_URL, http_client=server.http_client())
        with pytest.raises(McpConnectionError, match="origin mismatch"):
            await client.connect()
        assert not client.is_connected
        assert server.requests == []

    @pytest.mark.asyncio()
    async def test_endpoint_timeout(self) -> None:
        server = FakeMcpServer(endpoint=None)
        client = McpClient(BASE_URL, http_client=server.http_client(), endpoint_timeout=0.05)
        with pytest.raises(McpConnectionError, match="Timed out"):
            await client.connect()
        assert not client.is_connected

    @pytest.mark.asyncio()
    async def test_stream_closed_before_endpoint(self) -> None:
        server = FakeMcpServer(endpoint=None)
        server.close_stream()
        client = McpClient(BASE_URL, http_client=server.http_client())
        with pytest.raises(McpConnectionError, match="without receiving endpoint"):
            await client.connect()

    @pytest.mark.asyncio()
    async def test_initialize_error_closes(self) -> None:
        class RefusingServer(FakeMcpServer):
            def _respond(self, message):
                if message.get("method") == "initialize":
                    return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32600, "message": "nope"}}
                return super()._respond(message)

        server = RefusingServer()
        client = McpClient(BASE_URL, http_client=server.http_client())
        with pytest.raises(McpRpcError, match="nope"):
            await client.connect()
        assert not client.is_connected
        assert client.endpoint is None
        assert server.methods() == ["initialize"]

    @pytest.mark.asyncio()
    async def test_sse_http_error(self) -> None:
        server = FakeMcpServer(sse_status=503)
        client = McpClient(BASE_URL, http_client=server.http_client())
        with pytest.raises(McpConnectionError, match="SSE connection failed: 503"):
            await client.connect()


class TestRequests:
    @pytest.mark.asyncio()
    async def test_list_tools_follows_cursor(self) -> None:
        tools = [{**WEATHER_TOOL, "name": f"tool_{i}"} for i in range(5)]
        server = FakeMcpServer(tools=tools, page_size=2)
        client = await _connected(server)
        try:
            listed = await client.list_tools()
        finally:
            await client.close()
        assert [t.name for t in listed] == [f"tool_{i}" for i in range(5)]
        assert server.methods().count("tools/list") == 3

    @pytest.mark.asyncio()
    async def test_list_tools_stops_on_repeated_cursor(self) -> None:
        server = FakeMcpServer(tools=[WEATHER_TOOL], repeat_cursor=True)
        client = await _connected(server)
        try:
            await client.list_tools()
        finally:
            await client.close()
        assert server.methods().count("tools/list") == 2

    @pytest.mark.asyncio()
    async def test_call_tool_returns_result(self) -> None:
        result = {"content": [{"type": "text", "text": "Sunny"}]}
        server = FakeMcpServer(tools=[WEATHER_TOOL], call_results={"get_weather": result})
        client = await _connected(server)
        try:
            assert await client.call_tool("get_weather", {"city": "Oslo"}) == result
        finally:
            await client.close()
        call = server.requests[-1]
        assert call["method"] == "tools/call"
        assert call["params"] == {"name": "get_weather", "arguments": {"city": "Oslo"}}

    @pytest.mark.asyncio()
    async def test_rpc_error_raised(self) -> None:
        server = FakeMcpServer()
        client = await _connected(server)
        try:
            with pytest.raises(McpRpcError) as exc_info:
                await client.call_tool("missing", {})
        finally:
            await client.close()
        assert exc_info.value.code == -32602

    @pytest.mark.asyncio()
    async def test_array_frames_with_data_prefix(self) -> None:
        server = FakeMcpServer(tools=[WEATHER_TOOL], batch_frames=True)
        client = await _connected(server)
        try:
            tools = await client.list_tools()
        finally:
            await client.close()
        assert [t.name for t in tools] == ["get_weather"]

    @pytest.mark.asyncio()
    async def test_reply_in_post_body(self) -> None:
        server = FakeMcpServer(tools=[WEATHER_TOOL], reply_in_body=True)
        client = await _connected(server)
        try:
            tools = await client.list_tools()
        finally:
            await client.close()
        assert len(tools) == 1

    @pytest.mark.asyncio()
    async def test_invalid_tools_list_shape(self) -> None:
        server = FakeMcpServer()
        server.tools = "not a list"  # type: ignore[assignment]
        client = await _connected(server)
        try:
            with pytest.raises(McpProtocolError):
                await client.list_tools()
        finally:
            await client.close()


class TestClose:
    @pytest.mark.asyncio()
    async def test_close_is_idempotent(self) -> None:
        server = FakeMcpServer()
        client = await _connected(server)
        await client.close()
        await client.close()
        assert not client.is_connected
        assert client.endpoint is None

    @pytest.mark.asyncio()
    async def test_request_after_close_fails(self) -> None:
        server = FakeMcpServer()
        client = await _connected(server)
        await client.close()
        with pytest.raises(McpConnectionError):
            await client.list_tools()

    @pytest.mark.asyncio()
    async def test_server_closing_stream_marks_disconnected(self) -> None:
        server = FakeMcpServer()
        client = await _connected(server)
        server.close_stream()
        reader = client._reader
        assert reader is not None
        await reader
        assert not client.is_connected
        await client.close()

    @pytest.mark.asyncio()
    async def test_requests_fail_after_server_drops_stream(self) -> None:
        server = FakeMcpServer(tools=[WEATHER_TOOL])
        client = await _connected(server)
        server.close_stream()
        reader = client._reader
        assert reader is not None
        await reader
        posted = len(server.requests)
        try:
            with pytest.raises(McpConnectionError, match="not connected"):
                await asyncio.wait_for(client.list_tools(), 2)
            with pytest.raises(McpConnectionError, match="not connected"):
                await asyncio.wait_for(client.call_tool("get_weather", {"city": "Oslo"}), 2)
        finally:
            await client.close()
        assert client.endpoint is None
        assert len(server.requests) == posted
