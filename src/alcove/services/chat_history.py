"""Chat history list: the sidebar view of stored chats, kept in sync by the conversation store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace

from ..db import ThreadSafeConnection
from . import storage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatHistoryItem:
    id: int
    uuid: str
    title: str
    unseen_count: int = 0
    is_active: bool = False
    last_message_at: str | None = None


class ChatHistory:
    def __init__(self) -> None:
        self._items: list[ChatHistoryItem] = []
        self._active: str | None = None

    def items(self) -> list[ChatHistoryItem]:
        return list(self._items)

    def get(self, chat_uuid: str) -> ChatHistoryItem | None:
        for item in self._items:
            if item.uuid == chat_uuid:
                return item
        return None

    async def load(self, db: ThreadSafeConnection) -> None:
        rows = await asyncio.to_thread(storage.get_chats, db)
        self._items = [
            ChatHistoryItem(
                id=row["id"],
                uuid=row["uuid"],
                title=row["title"] or "Untitled Chat",
                is_active=row["uuid"] == self._active,
                last_message_at=row["last_message_at"],
            )
            for row in rows
        ]
        logger.debug("Loaded %d chats into history", len(self._items))

    def add_chat_to_view(self, chat_id: int, chat_uuid: str, title: str) -> None:
        if self.get(chat_uuid) is not None:
            return
        item = ChatHistoryItem(id=chat_id, uuid=chat_uuid, title=title or "Untitled Chat")
        self._items.insert(0, replace(item, is_active=chat_uuid == self._active))

    def remove_chat_from_view(self, chat_uuid: str) -> None:
        self._items = [item for item in self._items if item.uuid != chat_uuid]

    def update_chat_title_in_view(self, chat_uuid: str, title: str) -> None:
        self._update(chat_uuid, title=title)

    def touch(self, chat_uuid: str, timestamp: str) -> None:
        """Record new activity on a chat and move it to the top."""
        item = self.get(chat_uuid)
        if item is None:
            return
        self._items = [replace(item, last_message_at=timestamp)] + [i for i in self._items if i.uuid != chat_uuid]

    def set_unseen_count(self, chat_uuid: str, count: int) -> None:
        self._update(chat_uuid, unseen_count=count)

    async def mark_chat_as_read(self, db: ThreadSafeConnection, chat_uuid: str) -> None:
        item = self.get(chat_uuid)
        if item is None:
            return
        await asyncio.to_thread(storage.mark_chat_messages_as_seen, db, item.id)
        self._update(chat_uuid, unseen_count=0)

    def set_active_chat_in_view(self, chat_uuid: str | None) -> None:
        self._active = chat_uuid
        self._items = [replace(item, is_active=item.uuid == chat_uuid) for item in self._items]

    def clear(self) -> None:
        self._items = []

    def _update(self, chat_uuid: str, **changes) -> None:
        self._items = [replace(item, **changes) if item.uuid == chat_uuid else item for item in self._items]
