"""Stateless MCP server checks used when adding or editing a server.

These POST single JSON-RPC messages straight to the server URL and decode
whatever comes back, a JSON body or an event-stream body, without opening
the long-lived stream a full client needs.
"""

from __future__ import annotations

import enum
import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..errors import McpConnectionError, McpProtocolError
from ..models import McpTool
from .mcp_client import PROTOCOL_VERSION, iter_jsonrpc_frames, normalize_tool

logger = logging.getLogger(__name__)

_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_ids = itertools.count(1)


class McpServerStatus(str, enum.Enum):
    INVALID_URL = "invalid_url"
    CONNECTING = "connecting"
    AUTH_TOKEN_MISSING = "auth_token_missing"
    NOT_FOUND = "not_found"
    SUCCESS = "success"


@dataclass
class McpServerDefinitions:
    tools: list[McpTool] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    prompts: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class VerifyMcpServerResult:
    status: McpServerStatus
    server_info: dict[str, Any] | None = None
    definitions: McpServerDefinitions | None = None


class _HttpStatusError(McpConnectionError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP Error: {status_code}. Response body: {body}")
        self.status_code = status_code


async def get_mcp_server_state(
    url: str,
    message: dict[str, Any],
    auth_token: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Any:
    """POST one JSON-RPC message and return the decoded reply (an object or a list of them)."""
    headers = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
    if auth_token:
        headers["Authorization"] = f"Bearer {auth_token}"

    client = http_client or httpx.AsyncClient(timeout=15.0)
    try:
        response = await client.post(url, content=json.dumps(message), headers=headers)
    except httpx.HTTPError as e:
        raise McpConnectionError(f"Failed to get MCP server state: {e}", original=e)
    finally:
        if http_client is None:
            await client.aclose()

    body = response.text
    if response.status_code >= 400:
        raise _HttpStatusError(response.status_code, body)

    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise McpProtocolError(f"JSON Parse error: {e}", original=e)
    if "text/event-stream" in content_type:
        lines = [line for line in body.splitlines() if line.startswith("data:")]
        frames = iter_jsonrpc_frames(lines)
        if len(frames) == 1:
            return frames[0]
        if frames:
            return frames
        return {"result": "success"}
    return {"error": f"Unexpected content-type: {content_type}"}


def _is_pong(reply: Any) -> bool:
    if not isinstance(reply, dict):
        return False
    result = reply.get("result")
    return result in ("pong", "success") or result == {}


async def verify_mcp_server(
    url: str, auth_token: str | None = None, http_client: httpx.AsyncClient | None = None
) -> McpServerStatus:
    if not url or not _HTTP_URL_RE.match(url):
        return McpServerStatus.INVALID_URL
    try:
        reply = await get_mcp_server_state(
            url, {"jsonrpc": "2.0", "method": "ping", "id": next(_ids)}, auth_token, http_client
        )
    except _HttpStatusError as e:
        if e.status_code in (401, 403):
            return McpServerStatus.AUTH_TOKEN_MISSING
        logger.info("MCP server %s answered ping with HTTP %d", url, e.status_code)
        return McpServerStatus.NOT_FOUND
    except (McpConnectionError, McpProtocolError) as e:
        logger.info("MCP server %s is unreachable: %s", url, e)
        return McpServerStatus.NOT_FOUND
    return McpServerStatus.SUCCESS if _is_pong(reply) else McpServerStatus.NOT_FOUND


async def _fetch_paginated(
    url: str, method: str, result_key: str, auth_token: str | None, http_client: httpx.AsyncClient | None
) -> list[Any]:
    out: list[Any] = []
    seen: set[str] = set()
    cursor: str | None = None
    while True:
        reply = await get_mcp_server_state(
            url,
            {"jsonrpc": "2.0", "id": next(_ids), "method": method, "params": {"cursor": cursor} if cursor else {}},
            auth_token,
            http_client,
        )
        next_cursor = None
        for frame in iter_jsonrpc_frames(reply):
            if frame.get("error"):
                continue
            result = frame.get("result")
            if not isinstance(result, dict):
                continue
            page = result.get(result_key)
            if isinstance(page, list):
                out.extend(page)
            if result.get("nextCursor"):
                next_cursor = result["nextCursor"]
        if not next_cursor or next_cursor in seen:
            return out
        seen.add(next_cursor)
        cursor = next_cursor


async def verify_mcp_server_extended(
    url: str,
    auth_token: str | None = None,
    client_name: str = "alcove",
    client_version: str = "1.0.0",
    http_client: httpx.AsyncClient | None = None,
) -> VerifyMcpServerResult:
    """Ping, handshake and list everything the server offers."""
    status = await verify_mcp_server(url, auth_token, http_client)
    if status is not McpServerStatus.SUCCESS:
        return VerifyMcpServerResult(status=status)

    init_reply = await get_mcp_server_state(
        url,
        {
            "jsonrpc": "2.0",
            "id": next(_ids),
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": client_name, "version": client_version},
            },
        },
        auth_token,
        http_client,
    )
    server_info = None
    for frame in iter_jsonrpc_frames(init_reply):
        result = frame.get("result")
        if isinstance(result, dict) and result.get("serverInfo"):
            server_info = result["serverInfo"]
            break

    try:
        await get_mcp_server_state(url, {"jsonrpc": "2.0", "method": "notifications/initialized"}, auth_token, http_client)
    except (McpConnectionError, McpProtocolError):
        logger.debug("initialized notification to %s failed", url, exc_info=True)

    definitions = McpServerDefinitions()
    try:
        for entry in await _fetch_paginated(url, "tools/list", "tools", auth_token, http_client):
            try:
                definitions.tools.append(normalize_tool(entry))
            except McpProtocolError as e:
                logger.warning("Skipping invalid tool from %s: %s", url, e)
    except (McpConnectionError, McpProtocolError) as e:
        logger.warning("tools/list failed for %s: %s", url, e)
    try:
        definitions.resources = await _fetch_paginated(url, "resources/list", "resources", auth_token, http_client)
    except (McpConnectionError, McpProtocolError) as e:
        logger.info("resources/list failed for %s: %s", url, e)
    try:
        definitions.prompts = await _fetch_paginated(url, "prompts/list", "prompts", auth_token, http_client)
    except (McpConnectionError, McpProtocolError) as e:
        logger.info("prompts/list failed for %s: %s", url, e)

    return VerifyMcpServerResult(status=status, server_info=server_info, definitions=definitions)
