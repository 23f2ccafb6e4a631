"""Turns model-issued tool calls into tool-role results, for built-in and MCP tools alike.

Every call produces a result record. Failures become error-shaped content
rather than exceptions because the model expects one tool message per
tool_call_id it issued.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..models import ToolCallRequest, ToolCallResult
from ..tools import ToolRegistry
from .mcp_manager import McpManager
from .tool_store import openai_function_name

logger = logging.getLogger(__name__)


def _encode(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


class ToolExecutor:
    def __init__(self, mcp_manager: McpManager | None, local_tools: ToolRegistry) -> None:
        self._mcp_manager = mcp_manager
        self._local_tools = local_tools

    @property
    def mcp_manager(self) -> McpManager | None:
        return self._mcp_manager

    @property
    def local_tools(self) -> ToolRegistry:
        return self._local_tools

    def _local_name(self, name: str) -> str | None:
        if self._local_tools.has_tool(name):
            return name
        wanted = openai_function_name(name)
        for local in self._local_tools.list_tools():
            if openai_function_name(local) == wanted:
                return local
        return None

    async def execute_tool(self, request: ToolCallRequest) -> ToolCallResult:
        def result(content: Any) -> ToolCallResult:
            return ToolCallResult(tool_call_id=request.id, name=request.name, content=_encode(content))

        try:
            arguments = json.loads(request.arguments) if request.arguments.strip() else {}
        except json.JSONDecodeError as e:
            logger.warning("Unparseable arguments for tool '%s': %s", request.name, e)
            return result({"error": "Failed to parse arguments", "details": str(e)})
        if not isinstance(arguments, dict):
            return result({"error": "Failed to parse arguments", "details": "Arguments must be a JSON object"})

        local_name = self._local_name(request.name)
        if local_name is not None:
            try:
                return result(await self._local_tools.call_tool(local_name, arguments))
            except Exception as e:
                logger.warning("Built-in tool '%s' failed: %s", local_name, e)
                return result({"error": f"Execution failed for tool '{request.name}'", "details": str(e)})

        if self._mcp_manager is None:
            return result({"error": f"Tool '{request.name}' not found or is not active."})
        match = self._mcp_manager.tool_store.find_active_server(request.name)
        if match is None:
            return result({"error": f"Tool '{request.name}' not found or is not active."})
        server_name, tool = match

        try:
            client = await self._mcp_manager.get_client(server_name)
            if client is None:
                raise RuntimeError(f"MCP server '{server_name}' is not connected")
            logger.info("Calling tool '%s' on MCP server '%s'", tool.name, server_name)
            return result(await client.call_tool(tool.name, arguments))
        except Exception as e:
            logger.warning("Tool '%s' on MCP server '%s' failed: %s", tool.name, server_name, e)
            return result({"error": f"Execution failed for tool '{request.name}'", "details": str(e)})
