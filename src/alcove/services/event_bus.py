"""In-process async event bus used to relay conversation progress to listeners."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"


def chat_channel(chat_uuid: str) -> str:
    return f"chat:{chat_uuid}"


class EventBus:
    """Pub/sub event bus using asyncio.Queue per subscriber.

    Channels follow the pattern:
    - ``chat:{uuid}`` for per-chat events (tokens, tool calls, completion)
    - ``global`` for chat list changes (created, deleted, switched)

    All operations run within the asyncio event loop.
    """

    def __init__(self, max_queue_size: int = 0) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}
        self._max_queue_size = max_queue_size

    def subscribe(self, channel: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        if channel not in self._subscribers:
            self._subscribers[channel] = set()
        self._subscribers[channel].add(queue)
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subs = self._subscribers.get(channel)
        if subs:
            subs.discard(queue)
            if not subs:
                del self._subscribers[channel]

    def publish(self, channel: str, event: dict[str, Any]) -> None:
        subs = self._subscribers.get(channel)
        if not subs:
            return
        for queue in list(subs):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event bus: queue full on channel %s, dropping event", channel)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, set()))
