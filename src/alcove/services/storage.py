"""SQLite data access layer for chats, messages and MCP tool flags."""

from __future__ import annotations

import json
import logging
from typing import Any

from ..db import ThreadSafeConnection
from ..models import Message, ToolCall

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50


def make_title(text: str) -> str:
    return text.strip()[:TITLE_MAX_LENGTH]


# --- Chats ---


def add_chat(db: ThreadSafeConnection, title: str, chat_uuid: str) -> dict[str, Any]:
    with db.transaction() as conn:
        cursor = conn.execute("INSERT INTO chats (title, uuid) VALUES (?, ?)", (title, chat_uuid))
        chat_id = cursor.lastrowid
    return {"id": chat_id, "uuid": chat_uuid, "title": title}


def get_chats(db: ThreadSafeConnection) -> list[dict[str, Any]]:
    rows = db.execute_fetchall(
        """
        SELECT c.id, c.uuid, c.title,
               (SELECT MAX(m.timestamp) FROM messages m WHERE m.chat_id = c.id) AS last_message_at
        FROM chats c
        WHERE c.uuid IS NOT NULL
        ORDER BY last_message_at DESC, c.id DESC
        """
    )
    return [dict(r) for r in rows]


def get_chat_integer_id_by_uuid(db: ThreadSafeConnection, chat_uuid: str) -> int | None:
    row = db.execute_fetchone("SELECT id FROM chats WHERE uuid = ?", (chat_uuid,))
    if not row:
        return None
    return row["id"]


def rename_chat(db: ThreadSafeConnection, chat_uuid: str, title: str) -> bool:
    with db.transaction() as conn:
        cursor = conn.execute("UPDATE chats SET title = ? WHERE uuid = ?", (title, chat_uuid))
    return cursor.rowcount > 0


def delete_chat_and_messages_by_uuid(db: ThreadSafeConnection, chat_uuid: str) -> bool:
    with db.transaction() as conn:
        row = conn.execute("SELECT id FROM chats WHERE uuid = ?", (chat_uuid,)).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM messages WHERE chat_id = ?", (row["id"],))
        conn.execute("DELETE FROM chats WHERE id = ?", (row["id"],))
    return True


def delete_all_chats(db: ThreadSafeConnection) -> bool:
    with db.transaction() as conn:
        conn.execute("DELETE FROM messages")
        conn.execute("DELETE FROM chats")
    return True


# --- Messages ---


def _encode_content(content: Any) -> str | None:
    if content is None or isinstance(content, str):
        return content
    return json.dumps(content)


def _decode_content(role: str, raw: str | None) -> Any:
    """Multimodal content is stored as a JSON list of typed parts; anything else is plain text."""
    if raw is None or role == "tool" or not raw.startswith("["):
        return raw
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if isinstance(parsed, list) and parsed and all(isinstance(p, dict) and "type" in p for p in parsed):
        return parsed
    return raw


def _load_json(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable JSON column value")
        return None


def _row_to_message(row: Any) -> Message:
    tool_calls = _load_json(row["tool_calls"])
    return Message(
        id=row["id"],
        chat_id=row["chat_id"],
        model=row["model"],
        role=row["role"],
        content=_decode_content(row["role"], row["content"]),
        name=row["name"],
        tool_calls=[ToolCall.model_validate(tc) for tc in tool_calls] if tool_calls else None,
        tool_call_id=row["tool_call_id"],
        timestamp=row["timestamp"],
        data=_load_json(row["data"]),
        response=_load_json(row["response"]),
        raw_message=_load_json(row["raw_message"]) or {},
        seen=bool(row["seen"]),
    )


_INSERT_MESSAGE = """
INSERT INTO messages (id, chat_id, model, role, content, name, tool_calls, tool_call_id,
                      timestamp, data, response, raw_message, seen)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _message_row(chat_id: int, message: Message) -> tuple:
    tool_calls = [tc.model_dump() for tc in message.tool_calls] if message.tool_calls else None
    return (
        message.id,
        chat_id,
        message.model,
        message.role,
        _encode_content(message.content),
        message.name,
        json.dumps(tool_calls) if tool_calls else None,
        message.tool_call_id,
        message.timestamp,
        json.dumps(message.data) if message.data else None,
        json.dumps(message.response) if message.response else None,
        json.dumps(message.raw_message or {}),
        1 if message.seen else 0,
    )


def add_message(db: ThreadSafeConnection, chat_id: int, message: Message) -> None:
    with db.transaction() as conn:
        conn.execute(_INSERT_MESSAGE, _message_row(chat_id, message))


def add_chat_with_messages(
    db: ThreadSafeConnection, title: str, chat_uuid: str, messages: list[Message]
) -> dict[str, Any]:
    """Create a chat row and its first messages in one transaction."""
    with db.transaction() as conn:
        cursor = conn.execute("INSERT INTO chats (title, uuid) VALUES (?, ?)", (title, chat_uuid))
        chat_id = cursor.lastrowid
        for message in messages:
            conn.execute(_INSERT_MESSAGE, _message_row(chat_id, message))
    return {"id": chat_id, "uuid": chat_uuid, "title": title}


def get_messages(db: ThreadSafeConnection, chat_id: int) -> list[Message]:
    rows = db.execute_fetchall(
        "SELECT * FROM messages WHERE chat_id = ? ORDER BY timestamp ASC, rowid ASC",
        (chat_id,),
    )
    return [_row_to_message(r) for r in rows]


def mark_chat_messages_as_seen(db: ThreadSafeConnection, chat_id: int) -> int:
    with db.transaction() as conn:
        cursor = conn.execute("UPDATE messages SET seen = 1 WHERE chat_id = ? AND seen = 0", (chat_id,))
    return cursor.rowcount


def get_last_message_timestamp(db: ThreadSafeConnection, chat_id: int) -> str | None:
    row = db.execute_fetchone("SELECT MAX(timestamp) AS ts FROM messages WHERE chat_id = ?", (chat_id,))
    return row["ts"] if row else None


# --- MCP tool flags ---


def get_tool_flags(db: ThreadSafeConnection) -> dict[str, dict[str, bool]]:
    """Saved active flags keyed by server, only for servers the user has toggled."""
    rows = db.execute_fetchall("SELECT server_name, tool_name, is_active FROM mcp_tool_flags")
    flags: dict[str, dict[str, bool]] = {}
    for row in rows:
        flags.setdefault(row["server_name"], {})[row["tool_name"]] = bool(row["is_active"])
    return flags


def save_server_tool_flags(db: ThreadSafeConnection, server_name: str, flags: dict[str, bool]) -> None:
    with db.transaction() as conn:
        conn.execute("DELETE FROM mcp_tool_flags WHERE server_name = ?", (server_name,))
        conn.executemany(
            "INSERT INTO mcp_tool_flags (server_name, tool_name, is_active) VALUES (?, ?, ?)",
            [(server_name, name, int(active)) for name, active in flags.items()],
        )
