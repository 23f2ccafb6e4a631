"""Shared registry of MCP tools discovered per server.

The connection manager is the only writer of discovered tool lists; the
executor, the completion client and the HTTP layer only ever see immutable
snapshots. Every write replaces a server's whole tuple, including active-flag
toggles, so a reader holding an older snapshot is never affected.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Callable, Iterable

from ..models import McpTool

logger = logging.getLogger(__name__)

_FUNCTION_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")
FUNCTION_NAME_MAX_LENGTH = 64


def openai_function_name(name: str) -> str:
    """Canonical form of a tool name as advertised to, and echoed back by, the model."""
    name = re.sub(r"\s+", "_", name.strip())
    return _FUNCTION_NAME_DISALLOWED.sub("", name)[:FUNCTION_NAME_MAX_LENGTH]


def to_openai_tool(tool: McpTool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": openai_function_name(tool.name),
            "description": tool.description or "",
            "parameters": tool.input_schema or {"type": "object", "properties": {}},
        },
    }


FlagPersister = Callable[[str, dict[str, bool]], None]


class McpToolStore:
    def __init__(self, persist_flags: FlagPersister | None = None) -> None:
        self._tools: dict[str, tuple[McpTool, ...]] = {}
        self._saved_flags: dict[str, dict[str, bool]] = {}
        self._toggled_servers: set[str] = set()
        self._persist_flags = persist_flags
        self._lock = threading.Lock()

    def set_flag_persister(self, persist_flags: FlagPersister | None) -> None:
        self._persist_flags = persist_flags

    def hydrate(self, flags: dict[str, dict[str, bool]]) -> None:
        """Restore flags saved by earlier toggles; they apply on each server's next discovery."""
        with self._lock:
            for server_name, server_flags in flags.items():
                self._saved_flags[server_name] = dict(server_flags)
                self._toggled_servers.add(server_name)
        logger.debug("Restored tool flags for %d MCP server(s)", len(flags))

    def set_server_tools(self, server_name: str, tools: Iterable[McpTool]) -> tuple[McpTool, ...]:
        """Publish a freshly discovered tool list for one server."""
        with self._lock:
            previous = dict(self._saved_flags.get(server_name, {}))
            previous.update((t.name, t.is_active) for t in self._tools.get(server_name, ()))
            keep_flags = server_name in self._toggled_servers
            published = tuple(
                t.model_copy(update={"is_active": previous.get(t.name, True) if keep_flags else True}) for t in tools
            )
            self._tools[server_name] = published
        logger.debug("Published %d tools for MCP server '%s'", len(published), server_name)
        return published

    def get_server_tools(self, server_name: str) -> tuple[McpTool, ...] | None:
        with self._lock:
            return self._tools.get(server_name)

    def has_server(self, server_name: str) -> bool:
        with self._lock:
            return server_name in self._tools

    def remove_server_tools(self, server_name: str) -> None:
        with self._lock:
            self._tools.pop(server_name, None)

    def toggle_tool_active(self, server_name: str, tool_name: str) -> McpTool | None:
        """Flip one tool's active flag, returning the updated tool or None if unknown."""
        with self._lock:
            tools = self._tools.get(server_name)
            if not tools:
                return None
            updated: McpTool | None = None
            replaced = []
            for tool in tools:
                if tool.name == tool_name:
                    tool = tool.model_copy(update={"is_active": not tool.is_active})
                    updated = tool
                replaced.append(tool)
            if updated is None:
                return None
            flags = {**self._saved_flags.get(server_name, {}), **{t.name: t.is_active for t in replaced}}
            # Saved first so a failed write leaves the published list untouched.
            if self._persist_flags is not None:
                self._persist_flags(server_name, flags)
            self._saved_flags[server_name] = flags
            self._tools[server_name] = tuple(replaced)
            self._toggled_servers.add(server_name)
        logger.info(
            "Tool '%s' on MCP server '%s' is now %s",
            tool_name,
            server_name,
            "active" if updated.is_active else "inactive",
        )
        return updated

    def snapshot(self) -> dict[str, tuple[McpTool, ...]]:
        with self._lock:
            return dict(self._tools)

    def active_tools(self, server_name: str) -> list[McpTool]:
        return [t for t in self.get_server_tools(server_name) or () if t.is_active]

    def find_active_server(self, function_name: str) -> tuple[str, McpTool] | None:
        """Find the server advertising an active tool whose canonical name matches."""
        wanted = openai_function_name(function_name)
        for server_name, tools in self.snapshot().items():
            for tool in tools:
                if tool.is_active and openai_function_name(tool.name) == wanted:
                    return server_name, tool
        return None
