"""Pydantic models for conversation records and API request/response schemas."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant", "tool"]
MessageContent = Union[str, list[dict[str, Any]], None]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class FunctionCall(BaseModel):
    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    id: str
    type: Literal["function"] = "function"
    function: FunctionCall


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: int = 0
    model: str | None = None
    role: Role
    content: MessageContent = None
    name: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    timestamp: str = Field(default_factory=now_iso)
    raw_message: dict[str, Any] | None = None
    data: dict[str, Any] | None = None
    response: dict[str, Any] | None = None
    seen: bool = False

    @property
    def is_placeholder(self) -> bool:
        status = (self.raw_message or {}).get("status")
        return self.role == "assistant" and status in ("placeholder", "streaming_placeholder")


class McpTool(BaseModel):
    """A tool discovered on an MCP server, plus its local active flag."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = Field(default_factory=dict)
    annotations: dict[str, Any] | None = None
    is_active: bool = True


class ToolCallRequest(BaseModel):
    id: str
    name: str
    arguments: str = ""


class ToolCallResult(BaseModel):
    tool_call_id: str
    role: Literal["tool"] = "tool"
    name: str
    content: str

    def to_message(self, chat_id: int = 0, model: str | None = None) -> Message:
        return Message(
            chat_id=chat_id,
            model=model,
            role="tool",
            name=self.name,
            content=self.content,
            tool_call_id=self.tool_call_id,
        )


class Chat(BaseModel):
    id: int
    uuid: str
    title: str


class ChatSummary(BaseModel):
    id: int
    uuid: str
    title: str
    last_message_at: str | None = None


class CurrentChat(BaseModel):
    uuid: str | None
    is_streaming: bool
    messages: list[Message] = Field(default_factory=list)


class SwitchChatRequest(BaseModel):
    uuid: str | None = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=100000)
    name: str | None = None


class FeedbackAnswer(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    answer: Literal["yes", "no"]


class ModelSelection(BaseModel):
    model_id: str = Field(min_length=1)


class McpServerStatus(BaseModel):
    name: str
    url: str
    status: str  # connected, connecting, error, disconnected
    tool_count: int
    error_message: str | None = None


class VerifyMcpRequest(BaseModel):
    url: str = Field(min_length=1)
    auth_token: str | None = None


class ConnectionValidation(BaseModel):
    valid: bool
    message: str
    models: list[str] = Field(default_factory=list)
