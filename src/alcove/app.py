"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import AppConfig, load_config
from .db import init_db
from .errors import AlreadyStreamingError, AppError
from .services import storage
from .services.ai_service import AIService
from .services.chat_history import ChatHistory
from .services.chat_store import ConversationStore
from .services.event_bus import GLOBAL_CHANNEL, EventBus, chat_channel
from .services.feedback_prompts import FeedbackPrompts
from .services.mcp_manager import McpManager
from .services.tool_executor import ToolExecutor
from .services.tool_store import McpToolStore
from .tools import ToolRegistry, register_default_tools

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, config: AppConfig) -> None:
    """Composition root: one instance of each service per application."""
    db_path = config.app.data_dir / "chat.db"

    event_bus = EventBus()
    feedback = FeedbackPrompts(event_bus)
    tool_store = McpToolStore()
    mcp_manager = McpManager(config.mcp_servers, tool_store)
    tool_registry = ToolRegistry()
    register_default_tools(tool_registry, ask=feedback.ask)
    executor = ToolExecutor(mcp_manager, tool_registry)
    ai_service = AIService(config, executor)
    chat_history = ChatHistory()
    store = ConversationStore(
        lambda: init_db(db_path),
        ai_service,
        chat_history,
        event_bus,
        default_system_prompt=config.ai.system_prompt,
        model_id=config.ai.default_model,
        mcp_server=config.active_mcp_server,
    )

    def feedback_channel() -> str:
        chat_uuid = store.streaming_chat_uuid
        return chat_channel(chat_uuid) if chat_uuid else GLOBAL_CHANNEL

    feedback.set_channel_resolver(feedback_channel)

    app.state.tool_store = tool_store
    app.state.mcp_manager = mcp_manager
    app.state.tool_registry = tool_registry
    app.state.ai_service = ai_service
    app.state.event_bus = event_bus
    app.state.feedback = feedback
    app.state.chat_history = chat_history
    app.state.store = store


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    build_services(app, config)

    await app.state.store.initialize_database()
    db = app.state.store.db
    tool_store: McpToolStore = app.state.tool_store
    tool_store.hydrate(await asyncio.to_thread(storage.get_tool_flags, db))
    tool_store.set_flag_persister(lambda server, flags: storage.save_server_tool_flags(db, server, flags))
    logger.info(f"Built-in tools: {len(app.state.tool_registry.list_tools())} registered")

    if config.mcp_servers:
        outcome = await app.state.mcp_manager.initialize_all_connections()
        for name, error in outcome.items():
            if error is not None:
                logger.warning(f"MCP server '{name}' unavailable at startup: {error}")

    yield

    await app.state.mcp_manager.shutdown()
    if app.state.store.db:
        app.state.store.db.close()


def create_app(config: AppConfig | None = None) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(title="Alcove", version="0.3.0", lifespan=lifespan)
    app.state.config = config

    @app.exception_handler(AlreadyStreamingError)
    async def already_streaming_handler(request: Request, exc: AlreadyStreamingError):
        return JSONResponse(status_code=409, content={"detail": exc.message, "message": exc.user_message})

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.details)
        return JSONResponse(status_code=500, content={"detail": exc.message, "message": exc.user_message})

    from .routers import chat, chats, mcp

    app.include_router(chats.router, prefix="/api")
    app.include_router(chat.router, prefix="/api")
    app.include_router(mcp.router, prefix="/api")

    return app
