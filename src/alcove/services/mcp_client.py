"""MCP client over a server-sent event stream with JSON-RPC requests POSTed to a side channel.

The server advertises the POST endpoint through an ``endpoint`` event on the
long-lived GET stream; responses to POSTed requests arrive back on that stream
(or, for some servers, directly in the POST response body) and are matched to
their request by JSON-RPC id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import urljoin

import httpx
from mcp.types import Tool
from pydantic import ValidationError

from .. import __version__
from ..errors import McpConnectionError, McpProtocolError, McpRpcError
from ..models import McpTool

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
ENDPOINT_TIMEOUT_SECONDS = 10.0


def _origin(url: str) -> tuple[str, str, int | None]:
    parsed = httpx.URL(url)
    default_port = {"http": 80, "https": 443}.get(parsed.scheme)
    return parsed.scheme, parsed.host.lower(), parsed.port or default_port


def parse_sse_record(record: str) -> tuple[str | None, str]:
    """Split one blank-line-delimited SSE record into its event type and data."""
    event_type: str | None = None
    data_lines: list[str] = []
    for line in record.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event_type = value
        elif field == "data":
            data_lines.append(value)
    return event_type, "\n".join(data_lines)


def iter_jsonrpc_frames(payload: Any) -> list[dict[str, Any]]:
    """Flatten a decoded frame into JSON-RPC messages.

    Frames may be a single object, or an array whose items are objects or
    ``data:``-prefixed strings wrapping one.
    """
    items = payload if isinstance(payload, list) else [payload]
    frames: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, str):
            text = item.strip()
            if text.startswith("data:"):
                text = text[len("data:") :].strip()
            try:
                item = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable SSE-wrapped frame")
                continue
        if isinstance(item, dict):
            frames.append(item)
    return frames


def normalize_tool(entry: Any) -> McpTool:
    """Validate one tools/list entry, accepting either schema key spelling."""
    if not isinstance(entry, dict):
        raise McpProtocolError(f"Invalid tool entry in tools/list response: {entry!r}")
    candidate = {
        "name": entry.get("name"),
        "description": entry.get("description"),
        "inputSchema": entry.get("inputSchema") or entry.get("input_schema") or {},
        "annotations": entry.get("annotations"),
    }
    try:
        tool = Tool.model_validate(candidate)
    except ValidationError as e:
        raise McpProtocolError(f"Invalid tool entry in tools/list response: {e}", original=e)
    return McpTool(
        name=tool.name,
        description=tool.description,
        input_schema=tool.inputSchema,
        annotations=tool.annotations.model_dump(exclude_none=True) if tool.annotations else None,
    )


class McpClient:
    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        client_name: str = "alcove",
        client_version: str = __version__,
        endpoint_timeout: float = ENDPOINT_TIMEOUT_SECONDS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.client_name = client_name
        self.client_version = client_version
        self.endpoint_timeout = endpoint_timeout
        self.server_info: dict[str, Any] | None = None

        self._http = http_client
        self._owns_http = http_client is None
        self._reader: asyncio.Task | None = None
        self._endpoint: str | None = None
        self._endpoint_future: asyncio.Future[str] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._request_id = 0
        self._connected = False
        self._handshaking = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def endpoint(self) -> str | None:
        return self._endpoint

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def connect(self) -> None:
        if self._connected:
            return
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
            self._owns_http = True

        loop = asyncio.get_running_loop()
        self._endpoint_future = loop.create_future()
        self._reader = asyncio.create_task(self._read_stream())

        try:
            endpoint = await asyncio.wait_for(self._endpoint_future, timeout=self.endpoint_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise McpConnectionError(
                f"Timed out after {self.endpoint_timeout:g}s waiting for endpoint event from {self.base_url}/sse"
            )
        except BaseException:
            await self.close()
            raise

        if _origin(endpoint) != _origin(self.base_url):
            await self.close()
            raise McpConnectionError(
                f"Endpoint origin mismatch: server advertised {endpoint}, expected origin of {self.base_url}"
            )
        self._endpoint = endpoint

        self._handshaking = True
        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "clientInfo": {"name": self.client_name, "version": self.client_version},
                },
            )
            await self._notify("notifications/initialized")
        except BaseException:
            await self.close()
            raise
        finally:
            self._handshaking = False

        if self._endpoint is None:
            await self.close()
            raise McpConnectionError(f"SSE stream from {self.base_url} closed during initialization")

        self.server_info = result.get("serverInfo") if isinstance(result, dict) else None
        self._connected = True
        logger.info("MCP client connected to %s (endpoint %s)", self.base_url, endpoint)

    async def list_tools(self) -> list[McpTool]:
        tools: list[McpTool] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else {})
            if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
                raise McpProtocolError(f"Invalid tools/list response from {self.base_url}")
            tools.extend(normalize_tool(entry) for entry in result["tools"])
            cursor = result.get("nextCursor")
            if not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self._request("tools/call", {"name": name, "arguments": arguments})

    async def close(self) -> None:
        self._connected = False
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._fail(McpConnectionError(f"MCP connection to {self.base_url} closed"))
        self._endpoint = None
        self._endpoint_future = None
        if self._owns_http and self._http is not None:
            http, self._http = self._http, None
            await http.aclose()

    # --- transport ---

    async def _read_stream(self) -> None:
        http = self._http
        if http is None:
            self._fail(McpConnectionError("MCP client has no HTTP session"))
            return
        try:
            async with http.stream(
                "GET", f"{self.base_url}/sse", headers=self._headers("text/event-stream")
            ) as response:
                if response.status_code >= 400:
                    raise McpConnectionError(f"SSE connection failed: {response.status_code}")
                buffer = ""
                async for text in response.aiter_text():
                    buffer = (buffer + text).replace("\r\n", "\n")
                    while "\n\n" in buffer:
                        record, buffer = buffer.split("\n\n", 1)
                        self._handle_record(record)
            if self._endpoint_future is not None and not self._endpoint_future.done():
                self._fail(McpConnectionError("SSE stream closed without receiving endpoint event."))
            else:
                self._fail(McpConnectionError(f"SSE stream from {self.base_url} closed"))
        except asyncio.CancelledError:
            raise
        except McpConnectionError as e:
            self._fail(e)
        except Exception as e:
            if self._endpoint_future is not None and not self._endpoint_future.done():
                self._fail(McpConnectionError("SSE connection error before endpoint received", original=e))
            else:
                logger.warning(f"SSE stream from {self.base_url} failed: {e}")
                self._fail(McpConnectionError(f"SSE stream from {self.base_url} failed", original=e))

    def _fail(self, error: McpConnectionError) -> None:
        self._connected = False
        self._endpoint = None
        if self._endpoint_future is not None and not self._endpoint_future.done():
            self._endpoint_future.set_exception(error)
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _handle_record(self, record: str) -> None:
        event_type, data = parse_sse_record(record)
        if event_type == "endpoint":
            self._on_endpoint(data.strip())
        elif event_type in (None, "message"):
            if data:
                self._dispatch_payload(data)
        else:
            logger.debug("Ignoring SSE event type %r", event_type)

    def _on_endpoint(self, data: str) -> None:
        if self._endpoint_future is None or self._endpoint_future.done():
            logger.debug("Ignoring repeated endpoint event: %s", data)
            return
        self._endpoint_future.set_result(urljoin(self.base_url + "/", data))

    def _dispatch_payload(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable JSON-RPC frame from %s", self.base_url)
            return
        for frame in iter_jsonrpc_frames(payload):
            self._dispatch_frame(frame)

    def _dispatch_frame(self, frame: dict[str, Any]) -> None:
        request_id = frame.get("id")
        future = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            # Notifications, server-initiated requests and late responses.
            return
        if future.done():
            return
        error = frame.get("error")
        if error is not None:
            if isinstance(error, dict):
                future.set_exception(McpRpcError(str(error.get("message", "")), error.get("code"), error.get("data")))
            else:
                future.set_exception(McpRpcError(str(error)))
        else:
            future.set_result(frame.get("result"))

    async def _post(self, payload: dict[str, Any]) -> None:
        if self._http is None or self._endpoint is None:
            raise McpConnectionError("MCP client is not connected")
        try:
            response = await self._http.post(
                self._endpoint,
                json=payload,
                headers=self._headers("application/json, text/event-stream"),
            )
        except httpx.HTTPError as e:
            raise McpConnectionError(f"POST failed: {e}", original=e)
        if response.status_code >= 400:
            raise McpConnectionError(f"POST failed: {response.status_code} {response.text}")

        body = response.text.strip()
        if not body:
            return
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            self._dispatch_payload(body)
        elif "text/event-stream" in content_type:
            for record in body.replace("\r\n", "\n").split("\n\n"):
                self._handle_record(record)

    async def _request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        # Only the handshake may post before the connection is marked live.
        if self._endpoint is None or not (self._connected or self._handshaking):
            raise McpConnectionError(f"MCP client for {self.base_url} is not connected")
        self._request_id += 1
        request_id = self._request_id
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._post(message)
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._post(message)
