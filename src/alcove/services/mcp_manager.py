"""MCP client lifecycle manager: one client per configured server, tools published to the tool store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..config import McpServerConfig
from ..errors import McpConnectionError
from ..models import McpTool
from .mcp_client import McpClient
from .tool_store import McpToolStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[McpServerConfig], McpClient]


def default_client_factory(config: McpServerConfig) -> McpClient:
    return McpClient(config.url, auth_token=config.auth_token)


@dataclass
class _Connection:
    client: McpClient | None = None
    tools: list[McpTool] | None = None
    task: asyncio.Task | None = None
    is_connecting: bool = False
    error: BaseException | None = None


class McpManager:
    def __init__(
        self,
        server_configs: list[McpServerConfig],
        tool_store: McpToolStore,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self._configs: dict[str, McpServerConfig] = {cfg.name: cfg for cfg in server_configs}
        self._tool_store = tool_store
        self._client_factory = client_factory
        self._connections: dict[str, _Connection] = {}

    @property
    def tool_store(self) -> McpToolStore:
        return self._tool_store

    def server_names(self) -> list[str]:
        return list(self._configs)

    def _reusable(self, conn: _Connection) -> bool:
        if conn.is_connecting:
            return True
        if conn.error is not None:
            return False
        if conn.client is not None and not conn.client.is_connected:
            return False
        return True

    async def connect_to_server(self, name: str) -> list[McpTool]:
        """Connect to a named server (once) and return its discovered tools.

        Concurrent callers share the in-flight attempt. An attempt that ended
        in error, or a client whose stream has since dropped, is replaced by a
        fresh attempt on the next call.
        """
        conn = self._connections.get(name)
        if conn is not None and conn.task is not None and self._reusable(conn):
            return await asyncio.shield(conn.task)

        config = self._configs.get(name)
        if config is None:
            error = McpConnectionError(f"Unknown MCP server: {name}")
            self._connections[name] = _Connection(error=error)
            raise error

        if conn is not None and conn.client is not None:
            stale = conn.client
            try:
                await stale.close()
            except Exception:
                logger.debug(f"Error closing stale client for '{name}'", exc_info=True)

        conn = _Connection(is_connecting=True)
        self._connections[name] = conn
        conn.task = asyncio.create_task(self._connect(name, config, conn))
        return await asyncio.shield(conn.task)

    async def _connect(self, name: str, config: McpServerConfig, conn: _Connection) -> list[McpTool]:
        client = self._client_factory(config)
        conn.client = client
        try:
            await client.connect()
            tools = await client.list_tools()
        except Exception as e:
            conn.error = e
            conn.client = None
            logger.warning(f"Failed to connect to MCP server '{name}': {e}")
            try:
                await client.close()
            except Exception:
                logger.debug(f"Error closing client for '{name}' during cleanup", exc_info=True)
            raise
        finally:
            conn.is_connecting = False

        conn.tools = list(self._tool_store.set_server_tools(name, tools))
        logger.info(f"MCP server '{name}' connected with {len(tools)} tools")
        return conn.tools

    async def initialize_all_connections(self) -> dict[str, BaseException | None]:
        names = list(self._configs)
        results = await asyncio.gather(*(self.connect_to_server(n) for n in names), return_exceptions=True)
        outcome: dict[str, BaseException | None] = {}
        for name, result in zip(names, results):
            outcome[name] = result if isinstance(result, BaseException) else None
        connected = sum(1 for err in outcome.values() if err is None)
        logger.info(f"MCP: {connected} of {len(names)} server(s) connected")
        return outcome

    async def get_tools(self, name: str) -> tuple[McpTool, ...] | None:
        tools = self._tool_store.get_server_tools(name)
        if tools is not None:
            return tools
        try:
            await self.connect_to_server(name)
        except Exception:
            pass  # Failure is recorded on the connection state
        return self._tool_store.get_server_tools(name)

    async def get_client(self, name: str) -> McpClient | None:
        conn = self._connections.get(name)
        if conn is not None and conn.is_connecting and conn.task is not None:
            try:
                await asyncio.shield(conn.task)
            except Exception:
                return None
        elif conn is None or not self._reusable(conn):
            try:
                await self.connect_to_server(name)
            except Exception:
                return None
        conn = self._connections.get(name)
        if conn is None or conn.error is not None:
            return None
        return conn.client

    async def refresh_tools(self, name: str) -> tuple[McpTool, ...] | None:
        """Re-run discovery on a connected server; activation flags follow the store's policy."""
        client = await self.get_client(name)
        if client is None:
            return None
        tools = await client.list_tools()
        published = self._tool_store.set_server_tools(name, tools)
        self._connections[name].tools = list(published)
        return published

    def get_server_statuses(self) -> dict[str, dict[str, Any]]:
        result = {}
        for name, config in self._configs.items():
            conn = self._connections.get(name)
            tools = self._tool_store.get_server_tools(name) or ()
            if conn is None:
                status = {"status": "disconnected", "tool_count": 0}
            elif conn.is_connecting:
                status = {"status": "connecting", "tool_count": 0}
            elif conn.error is not None:
                status = {"status": "error", "tool_count": 0, "error_message": str(conn.error)}
            elif conn.client is not None and conn.client.is_connected:
                status = {"status": "connected", "tool_count": len(tools)}
            else:
                status = {"status": "disconnected", "tool_count": len(tools)}
            result[name] = {"name": name, "url": config.url, **status}
        return result

    async def shutdown(self) -> None:
        pending = [c.task for c in self._connections.values() if c.task is not None and not c.task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for name, conn in list(self._connections.items()):
            if conn.client is not None:
                try:
                    await conn.client.close()
                except Exception:
                    logger.warning(f"Error closing MCP client for '{name}'", exc_info=True)
        self._connections.clear()
