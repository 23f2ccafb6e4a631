"""Shared fakes: an OpenAI-compatible streaming client, an SSE MCP server and an in-memory database."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Iterator

import httpx
import pytest
from openai.types.chat import ChatCompletionChunk

from alcove.config import AIConfig, AppConfig, McpServerConfig, ProviderConfig
from alcove.db import ThreadSafeConnection, connect

TEST_MODEL = "test-model"


def make_chunk(
    content: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
    finish_reason: str | None = None,
) -> ChatCompletionChunk:
    return ChatCompletionChunk.model_validate(
        {
            "id": "chatcmpl-test",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": TEST_MODEL,
            "choices": [
                {
                    "index": 0,
                    "delta": {"role": "assistant", "content": content, "tool_calls": tool_calls},
                    "finish_reason": finish_reason,
                }
            ],
        }
    )


def tool_call_fragment(
    index: int, call_id: str | None = None, name: str | None = None, arguments: str | None = None
) -> dict[str, Any]:
    fragment: dict[str, Any] = {"index": index, "type": "function", "function": {}}
    if call_id is not None:
        fragment["id"] = call_id
    if name is not None:
        fragment["function"]["name"] = name
    if arguments is not None:
        fragment["function"]["arguments"] = arguments
    return fragment


async def _iterate(items: list[Any]):
    for item in items:
        if isinstance(item, BaseException):
            raise item
        yield item


class FakeCompletions:
    """Each create() call consumes the next scripted response.

    A response is a list of chunks (an item that is an exception is raised
    mid-stream) or an exception raised by create() itself.
    """

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            raise AssertionError("Unexpected completion request")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return _iterate(response)


class _FakeModels:
    def __init__(self, ids: list[str]) -> None:
        self.ids = ids

    async def list(self) -> Any:
        return type("ModelPage", (), {"data": [type("Model", (), {"id": i})() for i in self.ids]})()


class _FakeChat:
    def __init__(self, completions: FakeCompletions) -> None:
        self.completions = completions


class FakeOpenAI:
    def __init__(self, responses: list[Any] | None = None, models: list[str] | None = None) -> None:
        self.completions = FakeCompletions(responses or [])
        self.chat = _FakeChat(self.completions)
        self.models = _FakeModels(models or [TEST_MODEL])


def make_config(**ai_overrides: Any) -> AppConfig:
    ai = AIConfig(default_model=TEST_MODEL, system_prompt="You are a test assistant.", **ai_overrides)
    return AppConfig(
        ai=ai,
        providers=[ProviderConfig(id="test", base_url="http://llm.test/v1", api_key="sk-test", models=[TEST_MODEL])],
        mcp_servers=[McpServerConfig(name="tools", url="http://mcp.test")],
    )


@pytest.fixture()
def db() -> Iterator[ThreadSafeConnection]:
    conn = connect(":memory:")
    yield conn
    conn.close()


class FakeMcpServer:
    """SSE + JSON-RPC MCP server served through httpx.MockTransport.

    Replies to POSTed requests are pushed onto the open GET stream, unless
    ``reply_in_body`` is set, in which case they come back as the POST body.
    """

    def __init__(
        self,
        tools: list[dict[str, Any]] | None = None,
        endpoint: str | None = "/messages?session_id=abc",
        page_size: int | None = None,
        repeat_cursor: bool = False,
        reply_in_body: bool = False,
        batch_frames: bool = False,
        sse_status: int = 200,
        call_results: dict[str, Any] | None = None,
    ) -> None:
        self.tools = tools if tools is not None else []
        self.endpoint = endpoint
        self.page_size = page_size
        self.repeat_cursor = repeat_cursor
        self.reply_in_body = reply_in_body
        self.batch_frames = batch_frames
        self.sse_status = sse_status
        self.call_results = call_results or {}
        self.requests: list[dict[str, Any]] = []
        self.sse_headers: list[httpx.Headers] = []
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    def methods(self) -> list[str]:
        return [r["method"] for r in self.requests]

    def close_stream(self) -> None:
        self._queue.put_nowait(None)

    def push(self, text: str) -> None:
        self._queue.put_nowait(text.encode())

    async def _events(self):
        if self.endpoint is not None:
            yield f"event: endpoint\ndata: {self.endpoint}\n\n".encode()
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    def _tools_page(self, cursor: str | None) -> dict[str, Any]:
        if self.repeat_cursor:
            return {"tools": self.tools, "nextCursor": "again"}
        if self.page_size is None:
            return {"tools": self.tools}
        start = int(cursor or 0)
        end = start + self.page_size
        page: dict[str, Any] = {"tools": self.tools[start:end]}
        if end < len(self.tools):
            page["nextCursor"] = str(end)
        return page

    def _respond(self, message: dict[str, Any]) -> dict[str, Any] | None:
        if "id" not in message:
            return None
        method = message["method"]
        params = message.get("params") or {}
        if method == "initialize":
            result: Any = {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-mcp", "version": "1.0"},
            }
        elif method == "tools/list":
            result = self._tools_page(params.get("cursor"))
        elif method == "tools/call":
            name = params.get("name")
            if name not in self.call_results:
                return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32602, "message": f"Unknown tool: {name}"}}
            result = self.call_results[name]
        elif method == "ping":
            result = {}
        else:
            return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "Method not found"}}
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == "/sse":
            self.sse_headers.append(request.headers)
            if self.sse_status >= 400:
                return httpx.Response(self.sse_status, text="unavailable")
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=self._events())

        message = json.loads(request.content)
        self.requests.append(message)
        reply = self._respond(message)
        if reply is None:
            return httpx.Response(202)
        if self.reply_in_body:
            return httpx.Response(200, json=reply)
        frame: Any = ["data: " + json.dumps(reply)] if self.batch_frames else reply
        self.push(f"event: message\ndata: {json.dumps(frame)}\n\n")
        return httpx.Response(202)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Current weather for a city",
    "inputSchema": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
}
