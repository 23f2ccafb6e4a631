"""Chat list, switching and deletion."""

from __future__ import annotations

import uuid as uuid_mod

from fastapi import APIRouter, HTTPException, Request

from ..models import ChatSummary, CurrentChat, ModelSelection, SwitchChatRequest
from ..services.chat_store import ConversationStore

router = APIRouter(tags=["chats"])


def _validate_uuid(value: str) -> str:
    try:
        uuid_mod.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return value


def _store(request: Request) -> ConversationStore:
    return request.app.state.store


def _current(store: ConversationStore) -> CurrentChat:
    return CurrentChat(uuid=store.current_chat_id, is_streaming=store.is_streaming, messages=list(store.messages))


@router.get("/chats")
async def list_chats(request: Request) -> list[ChatSummary]:
    history = _store(request).chat_history
    return [
        ChatSummary(id=item.id, uuid=item.uuid, title=item.title, last_message_at=item.last_message_at)
        for item in history.items()
    ]


@router.post("/chats")
async def new_chat(request: Request) -> CurrentChat:
    store = _store(request)
    store.start_new_chat_session()
    return _current(store)


@router.get("/chats/current")
async def current_chat(request: Request) -> CurrentChat:
    return _current(_store(request))


@router.put("/chats/current")
async def switch_chat(body: SwitchChatRequest, request: Request) -> CurrentChat:
    store = _store(request)
    if body.uuid is not None:
        _validate_uuid(body.uuid)
    found = await store.set_current_chat_id(body.uuid)
    if not found and store.current_chat_id != body.uuid:
        raise HTTPException(status_code=404, detail="Chat not found")
    return _current(store)


@router.post("/chats/current/seen")
async def mark_seen(request: Request) -> dict:
    await _store(request).mark_current_chat_seen()
    return {"status": "ok"}


@router.put("/model")
async def select_model(body: ModelSelection, request: Request) -> dict:
    config = request.app.state.config
    if config.provider_for_model(body.model_id) is None:
        raise HTTPException(status_code=400, detail=f"No provider configured for model '{body.model_id}'")
    _store(request).set_selected_model_id(body.model_id)
    return {"model_id": body.model_id}


@router.delete("/chats/{chat_uuid}")
async def delete_chat(chat_uuid: str, request: Request) -> dict:
    _validate_uuid(chat_uuid)
    if not await _store(request).delete_chat_session(chat_uuid):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"status": "deleted"}


@router.delete("/chats")
async def delete_all_chats(request: Request) -> dict:
    if not await _store(request).delete_all_chats():
        raise HTTPException(status_code=500, detail="Could not delete chats")
    return {"status": "deleted"}
