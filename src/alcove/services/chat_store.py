"""Conversation state: the active chat's messages, the streaming flag and chat switching.

Only one completion streams at a time. A completion keeps writing to the chat
it was started in even if the user switches away; its text only lands in the
in-memory message list while that list is still the one it was started on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from ..db import ThreadSafeConnection
from ..errors import AlreadyStreamingError, PersistenceError, handle_app_error
from ..models import Message, MessageContent, ToolCall, now_iso
from . import storage
from .ai_service import AIService
from .chat_history import ChatHistory
from .event_bus import GLOBAL_CHANNEL, EventBus, chat_channel

logger = logging.getLogger(__name__)

DatabaseOpener = Callable[[], ThreadSafeConnection]

NEW_CHAT_TITLE = "New Chat"


def _first_text(content: MessageContent) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                return part["text"]
    return None


def _append_text(message: Message, chunk: str) -> None:
    if isinstance(message.content, list):
        parts = list(message.content)
        if parts and parts[-1].get("type") == "text":
            parts[-1] = {**parts[-1], "text": (parts[-1].get("text") or "") + chunk}
        else:
            parts.append({"type": "text", "text": chunk})
        message.content = parts
    else:
        message.content = (message.content if isinstance(message.content, str) else "") + chunk


@dataclass
class _StreamSession:
    chat_uuid: str
    chat_id: int
    model: str
    view: int
    assistant: Message | None = None
    persisted: list[str] = field(default_factory=list)


class ConversationStore:
    def __init__(
        self,
        open_db: DatabaseOpener,
        ai_service: AIService,
        chat_history: ChatHistory | None = None,
        event_bus: EventBus | None = None,
        *,
        default_system_prompt: str,
        model_id: str = "",
        mcp_server: str | None = None,
    ) -> None:
        self._open_db = open_db
        self._ai = ai_service
        self.chat_history = chat_history or ChatHistory()
        self.event_bus = event_bus or EventBus()
        self.default_system_prompt = default_system_prompt
        self.selected_model_id = model_id
        self.mcp_server = mcp_server

        self.db: ThreadSafeConnection | None = None
        self.is_db_initialized = False
        self.current_chat_id: str | None = None
        self.messages: list[Message] = []
        self.is_streaming = False

        self._latest_request: str | None = None
        self._view = 0
        self._session: _StreamSession | None = None

    @property
    def streaming_chat_uuid(self) -> str | None:
        """The chat the in-flight completion writes to, else the active chat."""
        if self._session is not None:
            return self._session.chat_uuid
        return self.current_chat_id

    # --- helpers ---

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(fn, *args)

    def _require_db(self) -> ThreadSafeConnection:
        if self.db is None or not self.is_db_initialized:
            raise PersistenceError("Database is not initialized", "error.dbConnection")
        return self.db

    def _set_view(self, chat_uuid: str | None, messages: list[Message]) -> None:
        self._view += 1
        self.current_chat_id = chat_uuid
        self.messages = messages
        self.chat_history.set_active_chat_in_view(chat_uuid)

    def _is_live(self, session: _StreamSession) -> bool:
        return session.view == self._view

    def _publish(self, chat_uuid: str | None, event_type: str, data: dict[str, Any]) -> None:
        channel = chat_channel(chat_uuid) if chat_uuid else GLOBAL_CHANNEL
        self.event_bus.publish(channel, {"type": event_type, "data": data})

    def _system_message(self, chat_id: int, timestamp: str, kind: str) -> Message:
        return Message(
            chat_id=chat_id,
            model=self.selected_model_id,
            role="system",
            content=self.default_system_prompt,
            timestamp=timestamp,
            raw_message={"type": kind},
        )

    # --- lifecycle ---

    async def initialize_database(self) -> None:
        try:
            self.db = await self._run(self._open_db)
            self.is_db_initialized = True
            await self.chat_history.load(self.db)
        except Exception as e:
            self.is_db_initialized = False
            self._set_view(None, [])
            raise PersistenceError("Could not open the chat database", "error.dbInitFailed", e)
        self.start_new_chat_session()

    def start_new_chat_session(self, system_prompt: str | None = None) -> str:
        """Make a fresh, unsaved chat active; its row is created on first send."""
        chat_uuid = str(uuid.uuid4())
        system = self._system_message(0, now_iso(), "system_instruction")
        if system_prompt:
            system.content = system_prompt
        self._latest_request = None
        self._set_view(chat_uuid, [system])
        self._publish(None, "chat_switched", {"uuid": chat_uuid, "new": True})
        return chat_uuid

    def set_selected_model_id(self, model_id: str) -> None:
        self.selected_model_id = model_id

    # --- switching ---

    async def load_messages(self, chat_uuid: str, request_id: str) -> bool:
        """Load a stored chat; results are discarded if a newer switch was requested meanwhile."""
        try:
            db = self._require_db()
            chat_id = await self._run(storage.get_chat_integer_id_by_uuid, db, chat_uuid)
            if chat_id is None:
                logger.info("Chat %s not found", chat_uuid)
                return False
            messages = await self._run(storage.get_messages, db, chat_id)
        except Exception as e:
            handle_app_error(e, "error.loadFailed")
            return False

        if not messages:
            messages = [self._system_message(chat_id, now_iso(), "system_instruction_empty_chat")]
        elif messages[0].role != "system":
            first = datetime.fromisoformat(messages[0].timestamp.replace("Z", "+00:00"))
            earlier = (first - timedelta(milliseconds=1)).isoformat()
            messages = [self._system_message(chat_id, earlier, "system_instruction_fallback")] + messages

        if self._latest_request != request_id:
            logger.debug("Discarding stale load for chat %s", chat_uuid)
            return False
        self._set_view(chat_uuid, messages)
        return True

    async def set_current_chat_id(self, chat_uuid: str | None) -> bool:
        request_id = str(uuid.uuid4())
        self._latest_request = request_id
        if chat_uuid is None:
            self.start_new_chat_session()
            return True
        loaded = await self.load_messages(chat_uuid, request_id)
        if self._latest_request != request_id:
            return False
        if loaded:
            self._publish(None, "chat_switched", {"uuid": chat_uuid, "new": False})
        return loaded

    # --- sending ---

    async def send_message(self, content: MessageContent, name: str | None = None) -> None:
        if self.is_streaming:
            raise AlreadyStreamingError()
        self.is_streaming = True

        try:
            if not self.is_db_initialized:
                await self.initialize_database()
            if not self.current_chat_id:
                self.start_new_chat_session()
            session, history = await self._prepare_send(content, name)
        except Exception as e:
            self.is_streaming = False
            notification = handle_app_error(e, "error.sendMessageFailed")
            self._publish(self.current_chat_id, "error", {"message": notification.message, "details": notification.details})
            raise

        self._session = session
        await self._ai.stream_completion_with_tools(
            history,
            lambda chunk, error, finished: self._on_stream(session, chunk, error, finished),
            session.model,
            self.mcp_server,
            on_tool_messages=lambda msgs: self._on_tool_messages(session, msgs),
            on_tool_calls=lambda msg: self._on_tool_calls(session, msg),
        )

    async def _prepare_send(self, content: MessageContent, name: str | None) -> tuple[_StreamSession, list[Message]]:
        db = self._require_db()
        chat_uuid = self.current_chat_id
        if chat_uuid is None:
            raise PersistenceError("No active chat to send the message to", "error.sendMessageFailed")
        view = self._view
        model = self.selected_model_id

        chat_id = await self._run(storage.get_chat_integer_id_by_uuid, db, chat_uuid)
        user_message = Message(
            chat_id=chat_id or 0,
            model=model,
            role="user",
            content=content,
            name=name,
            raw_message={"original_content": content, "sender_name": name},
        )
        placeholder = Message(
            chat_id=chat_id or 0,
            model=model,
            role="assistant",
            content=None,
            raw_message={"status": "placeholder"},
        )
        if view != self._view:
            raise PersistenceError("Active chat changed before the message could be sent", "error.sendMessageFailed")

        history = [*self.messages, user_message]
        self.messages.extend([user_message, placeholder])
        try:
            if chat_id is None:
                system = next((m for m in history if m.role == "system"), None)
                if system is None or not system.content:
                    raise PersistenceError("System message is missing for new chat", "error.createChatFailed")
                title = storage.make_title(_first_text(content) or NEW_CHAT_TITLE) or NEW_CHAT_TITLE
                chat = await self._run(storage.add_chat_with_messages, db, title, chat_uuid, [system, user_message])
                chat_id = chat["id"]
                for message in (system, user_message, placeholder):
                    message.chat_id = chat_id
                self.chat_history.add_chat_to_view(chat_id, chat_uuid, title)
                self._publish(None, "chat_created", {"id": chat_id, "uuid": chat_uuid, "title": title})
                logger.info("Created chat %s (%d)", chat_uuid, chat_id)
            else:
                await self._run(storage.add_message, db, chat_id, user_message)
        except Exception:
            self.messages[:] = [m for m in self.messages if m.id not in (user_message.id, placeholder.id)]
            raise

        self.chat_history.touch(chat_uuid, user_message.timestamp)
        session = _StreamSession(chat_uuid=chat_uuid, chat_id=chat_id, model=model, view=view, assistant=placeholder)
        return session, history

    async def start_new_chat_and_send_message(self, content: MessageContent, name: str | None = None) -> None:
        if self.is_streaming:
            raise AlreadyStreamingError()
        self.start_new_chat_session()
        await self.send_message(content, name)

    async def add_tool_response_message(self, tool_call_id: str, tool_name: str, result: Any) -> None:
        """Record a tool result for the active chat and let the assistant continue from it."""
        if self.is_streaming:
            raise AlreadyStreamingError()
        db = self._require_db()
        chat_uuid = self.current_chat_id
        if not chat_uuid:
            raise PersistenceError("No active chat for tool response", "error.saveFailed")
        self.is_streaming = True
        try:
            chat_id = await self._run(storage.get_chat_integer_id_by_uuid, db, chat_uuid)
            if chat_id is None:
                raise PersistenceError(f"Chat {chat_uuid} is not saved yet", "error.saveFailed")
            content = result if isinstance(result, str) else json.dumps(result)
            tool_message = Message(
                chat_id=chat_id,
                model=self.selected_model_id,
                role="tool",
                tool_call_id=tool_call_id,
                name=tool_name,
                content=content,
                raw_message={"original_tool_result": result},
            )
            await self._run(storage.add_message, db, chat_id, tool_message)
        except Exception as e:
            self.is_streaming = False
            handle_app_error(e, "error.sendMessageFailed")
            raise

        self.messages.append(tool_message)
        history = list(self.messages)
        placeholder = Message(
            chat_id=chat_id,
            model=self.selected_model_id,
            role="assistant",
            content=None,
            raw_message={"status": "placeholder"},
        )
        self.messages.append(placeholder)
        session = _StreamSession(
            chat_uuid=chat_uuid, chat_id=chat_id, model=self.selected_model_id, view=self._view, assistant=placeholder
        )
        self._session = session
        await self._ai.stream_completion_with_tools(
            history,
            lambda chunk, error, finished: self._on_stream(session, chunk, error, finished),
            session.model,
            self.mcp_server,
            on_tool_messages=lambda msgs: self._on_tool_messages(session, msgs),
            on_tool_calls=lambda msg: self._on_tool_calls(session, msg),
        )

    # --- stream callbacks ---

    async def _on_stream(
        self, session: _StreamSession, chunk: str | None, error: BaseException | None, finished: bool
    ) -> None:
        if error is not None:
            self.handle_stream_error(error, session)
            return
        if chunk:
            self.append_stream_chunk(chunk, session)
        if finished:
            await self.handle_stream_end(session)

    def append_stream_chunk(self, chunk: str, session: _StreamSession | None = None) -> None:
        session = session or self._session
        if session is None:
            return
        if session.assistant is None:
            session.assistant = Message(
                chat_id=session.chat_id,
                model=session.model,
                role="assistant",
                content="",
                raw_message={"status": "streaming_placeholder"},
            )
            if self._is_live(session):
                self.messages.append(session.assistant)
        _append_text(session.assistant, chunk)
        self._publish(session.chat_uuid, "token", {"content": chunk})

    def update_last_message_tool_calls(self, tool_calls: list[ToolCall], session: _StreamSession | None = None) -> None:
        session = session or self._session
        if session is None or session.assistant is None:
            return
        session.assistant.tool_calls = [*(session.assistant.tool_calls or []), *tool_calls]

    async def _on_tool_calls(self, session: _StreamSession, request: Message) -> None:
        if session.assistant is None:
            session.assistant = request.model_copy(update={"chat_id": session.chat_id})
            if self._is_live(session):
                self.messages.append(session.assistant)
        else:
            self.update_last_message_tool_calls(request.tool_calls or [], session)
        message = session.assistant
        message.raw_message = {"status": "tool_request"}
        self._publish(
            session.chat_uuid,
            "tool_calls",
            {"message_id": message.id, "tool_calls": [tc.model_dump() for tc in message.tool_calls or []]},
        )
        session.assistant = None
        await self._persist(session, message)

    async def _on_tool_messages(self, session: _StreamSession, tool_messages: list[Message]) -> None:
        for message in tool_messages:
            message.chat_id = session.chat_id
            if self._is_live(session):
                self.messages.append(message)
            self._publish(
                session.chat_uuid,
                "tool_message",
                {"tool_call_id": message.tool_call_id, "name": message.name, "content": message.content},
            )
            await self._persist(session, message)

    async def _persist(self, session: _StreamSession, message: Message) -> bool:
        """Save a streamed message against the chat the stream started in."""
        try:
            db = self._require_db()
            chat_id = await self._run(storage.get_chat_integer_id_by_uuid, db, session.chat_uuid)
            if chat_id is None:
                logger.warning("Chat %s was deleted while streaming; not saving message %s", session.chat_uuid, message.id)
                return False
            message.chat_id = chat_id
            await self._run(storage.add_message, db, chat_id, message)
        except Exception as e:
            handle_app_error(e, "error.saveFailed")
            return False
        session.persisted.append(message.id)
        return True

    async def handle_stream_end(self, session: _StreamSession | None = None) -> None:
        session = session or self._session
        if session is None:
            return
        self.is_streaming = False
        if self._session is session:
            self._session = None

        message = session.assistant
        session.assistant = None
        if message is not None and message.content is None:
            if self._is_live(session) and message in self.messages:
                self.messages.remove(message)
            message = None
        if message is not None:
            status = (message.raw_message or {}).get("status")
            if status in ("placeholder", "streaming_placeholder"):
                message.raw_message = {"streamed_content": message.content}
            message.model = message.model or session.model
            message.timestamp = message.timestamp or now_iso()
            await self._persist(session, message)
            self.chat_history.touch(session.chat_uuid, message.timestamp)

        self._publish(session.chat_uuid, "done", {"message": message.model_dump() if message else None})

    def handle_stream_error(self, error: BaseException, session: _StreamSession | None = None) -> None:
        session = session or self._session
        self.is_streaming = False
        if session is None:
            return
        if self._session is session:
            self._session = None
        message = session.assistant
        session.assistant = None
        if message is not None and message.is_placeholder and self._is_live(session) and message in self.messages:
            self.messages.remove(message)
        details = getattr(error, "details", str(error))
        user_message = getattr(error, "user_message", "error.streamError")
        self._publish(session.chat_uuid, "error", {"message": user_message, "details": details})

    # --- deletion ---

    async def delete_chat_session(self, chat_uuid: str) -> bool:
        try:
            db = self._require_db()
            deleted = await self._run(storage.delete_chat_and_messages_by_uuid, db, chat_uuid)
        except Exception as e:
            handle_app_error(e, "error.deleteChatFailed")
            return False
        if not deleted:
            handle_app_error(PersistenceError(f"Chat {chat_uuid} not found", "error.deleteChatFailed"), "error.deleteChatFailed")
            return False

        self.chat_history.remove_chat_from_view(chat_uuid)
        self._publish(None, "chat_deleted", {"uuid": chat_uuid})
        if self.current_chat_id == chat_uuid:
            self.start_new_chat_session()
        return True

    async def delete_all_chats(self) -> bool:
        try:
            db = self._require_db()
            await self._run(storage.delete_all_chats, db)
        except Exception as e:
            handle_app_error(e, "error.deleteChatFailed")
            return False
        self.chat_history.clear()
        self._publish(None, "chats_cleared", {})
        self.start_new_chat_session()
        return True

    async def mark_current_chat_seen(self) -> None:
        if self.current_chat_id and self.db is not None:
            await self.chat_history.mark_chat_as_read(self.db, self.current_chat_id)
            for message in self.messages:
                message.seen = True
