"""Conversion between stored messages and the chat completion wire format."""

from __future__ import annotations

import logging
from typing import Any

from ..models import Message, ToolCall

logger = logging.getLogger(__name__)


def _first_text_part(parts: list[dict[str, Any]]) -> str | None:
    for part in parts:
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            return part["text"]
    return None


def to_wire(message: Message) -> dict[str, Any] | None:
    """Map one message to its request shape, or None when it cannot be sent."""
    if message.role == "system":
        if not isinstance(message.content, str):
            return None
        return {"role": "system", "content": message.content}

    if message.role == "user":
        if message.content is None:
            return None
        wire: dict[str, Any] = {"role": "user", "content": message.content}
        if message.name:
            wire["name"] = message.name
        return wire

    if message.role == "assistant":
        content = message.content
        if isinstance(content, list):
            content = _first_text_part(content)
        wire = {"role": "assistant", "content": content}
        if message.tool_calls:
            wire["tool_calls"] = [tc.model_dump() for tc in message.tool_calls]
        return wire

    if message.role == "tool":
        if not message.tool_call_id or not isinstance(message.content, str):
            return None
        wire = {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
        if message.name:
            wire["name"] = message.name
        return wire

    return None


def map_history(history: list[Message]) -> list[dict[str, Any]]:
    mapped = []
    for message in history:
        wire = to_wire(message)
        if wire is None:
            logger.debug("Dropping unmappable %s message %s", message.role, message.id)
            continue
        mapped.append(wire)
    return mapped


def from_wire(wire: dict[str, Any]) -> Message:
    tool_calls = wire.get("tool_calls")
    return Message(
        role=wire["role"],
        content=wire.get("content"),
        name=wire.get("name"),
        tool_calls=[ToolCall.model_validate(tc) for tc in tool_calls] if tool_calls else None,
        tool_call_id=wire.get("tool_call_id"),
    )
