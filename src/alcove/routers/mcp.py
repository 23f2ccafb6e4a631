"""MCP server status, tool registry and server verification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from ..config import normalize_mcp_url
from ..models import McpServerStatus, McpTool, VerifyMcpRequest
from ..services.mcp_verifier import verify_mcp_server_extended

router = APIRouter(tags=["mcp"])


@router.get("/mcp/servers")
async def list_servers(request: Request) -> list[McpServerStatus]:
    statuses = request.app.state.mcp_manager.get_server_statuses()
    return [McpServerStatus(**status) for status in statuses.values()]


@router.post("/mcp/servers/{server_name}/connect")
async def connect_server(server_name: str, request: Request) -> list[McpTool]:
    manager = request.app.state.mcp_manager
    if server_name not in manager.server_names():
        raise HTTPException(status_code=404, detail=f"Unknown MCP server: {server_name}")
    try:
        tools = await manager.connect_to_server(server_name)
    except Exception as e:
        raise HTTPException(status_code=502, detail=str(e) or "Connection failed")
    return list(tools)


@router.get("/mcp/tools")
async def list_tools(request: Request) -> dict[str, list[McpTool]]:
    snapshot = request.app.state.tool_store.snapshot()
    return {name: list(tools) for name, tools in snapshot.items()}


@router.post("/mcp/tools/{server_name}/{tool_name}/toggle")
async def toggle_tool(server_name: str, tool_name: str, request: Request) -> McpTool:
    tool = request.app.state.tool_store.toggle_tool_active(server_name, tool_name)
    if tool is None:
        raise HTTPException(status_code=404, detail="Tool not found")
    return tool


@router.post("/mcp/verify")
async def verify_server(body: VerifyMcpRequest) -> dict:
    # Verification talks to the message endpoint directly, not the /sse stream.
    result = await verify_mcp_server_extended(normalize_mcp_url(body.url), body.auth_token)
    definitions = result.definitions
    return {
        "status": result.status.value,
        "server_info": result.server_info,
        "tools": [t.model_dump() for t in definitions.tools] if definitions else [],
        "resources": definitions.resources if definitions else [],
        "prompts": definitions.prompts if definitions else [],
    }
