"""Yes/no questions the model asks through the feedback tool, answered by the user over HTTP.

A question is published as a ``feedback_question`` event on the streaming
chat's channel; the tool call waits until ``resolve`` delivers the answer or
the wait times out, which counts as "no".
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from .event_bus import GLOBAL_CHANNEL, EventBus

logger = logging.getLogger(__name__)

MAX_QUESTION_CHARS = 2_000
ANSWER_TIMEOUT_SECONDS = 300.0


@dataclass
class PendingQuestion:
    fut: asyncio.Future[str]
    question: str
    channel: str
    created_at: float


class FeedbackPrompts:
    def __init__(self, event_bus: EventBus, *, timeout_s: float = ANSWER_TIMEOUT_SECONDS) -> None:
        self._bus = event_bus
        self._timeout_s = timeout_s
        self._pending: dict[str, PendingQuestion] = {}
        self._channel_for: Callable[[], str] = lambda: GLOBAL_CHANNEL

    def set_channel_resolver(self, channel_for: Callable[[], str]) -> None:
        self._channel_for = channel_for

    def pending(self) -> list[dict[str, str]]:
        return [{"id": qid, "question": p.question} for qid, p in self._pending.items() if not p.fut.done()]

    async def ask(self, question: str) -> str | None:
        question_id = secrets.token_urlsafe(16)
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        text = question[:MAX_QUESTION_CHARS]
        channel = self._channel_for()
        self._pending[question_id] = PendingQuestion(fut=fut, question=text, channel=channel, created_at=time.time())
        self._bus.publish(channel, {"type": "feedback_question", "data": {"id": question_id, "question": text}})
        try:
            return await asyncio.wait_for(fut, timeout=self._timeout_s)
        except asyncio.TimeoutError:
            logger.info("Feedback question %s unanswered after %gs", question_id, self._timeout_s)
            return None
        finally:
            self._pending.pop(question_id, None)

    def resolve(self, question_id: str, answer: str | bool) -> bool:
        pending = self._pending.get(question_id)
        if pending is None or pending.fut.done():
            return False
        pending.fut.set_result("yes" if answer is True else "no" if answer is False else answer)
        self._bus.publish(pending.channel, {"type": "feedback_answered", "data": {"id": question_id}})
        return True
