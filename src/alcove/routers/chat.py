"""Send a message to the active chat, stream the completion back over SSE and answer feedback questions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..errors import AlreadyStreamingError
from ..models import FeedbackAnswer, SendMessageRequest
from ..services.chat_store import ConversationStore
from ..services.event_bus import chat_channel

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

_TERMINAL_EVENTS = ("done", "error")


def _sse(event: dict[str, Any]) -> dict[str, str]:
    return {"event": event["type"], "data": json.dumps(event["data"], default=str)}


def _log_send_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, AlreadyStreamingError):
        logger.debug("Send task ended with %s", exc)


@router.post("/chats/current/messages")
async def send_message(body: SendMessageRequest, request: Request) -> EventSourceResponse:
    store: ConversationStore = request.app.state.store
    if store.is_streaming:
        raise HTTPException(status_code=409, detail="A completion is already streaming")
    if not store.current_chat_id:
        store.start_new_chat_session()

    channel = chat_channel(store.current_chat_id)
    queue = store.event_bus.subscribe(channel)
    send_task = asyncio.create_task(store.send_message(body.content, body.name))
    send_task.add_done_callback(_log_send_result)

    async def event_generator():
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, send_task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    event = getter.result()
                    yield _sse(event)
                    if event["type"] in _TERMINAL_EVENTS:
                        return
                    continue

                getter.cancel()
                while not queue.empty():
                    event = queue.get_nowait()
                    yield _sse(event)
                    if event["type"] in _TERMINAL_EVENTS:
                        return
                exc = send_task.exception() if not send_task.cancelled() else None
                if exc is not None:
                    yield {
                        "event": "error",
                        "data": json.dumps({"message": getattr(exc, "user_message", "error.generic"), "details": str(exc)}),
                    }
                return
        finally:
            store.event_bus.unsubscribe(channel, queue)

    return EventSourceResponse(event_generator())


@router.get("/chats/current/feedback")
async def pending_feedback(request: Request) -> list[dict[str, str]]:
    return request.app.state.feedback.pending()


@router.post("/chats/current/feedback")
async def answer_feedback(body: FeedbackAnswer, request: Request) -> dict[str, str]:
    if not request.app.state.feedback.resolve(body.id, body.answer):
        raise HTTPException(status_code=404, detail="No pending question with that id")
    return {"id": body.id, "answer": body.answer}
