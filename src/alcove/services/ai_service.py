"""OpenAI SDK wrapper for streaming chat completions with a tool-call round trip."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable

from openai import AsyncOpenAI

from ..config import AppConfig, ProviderConfig, resolve_api_key
from ..errors import AppError, ConfigurationError, MappingError, StreamError, handle_app_error
from ..models import FunctionCall, Message, ToolCall, ToolCallRequest
from .message_mapping import map_history, to_wire
from .tool_executor import ToolExecutor
from .tool_store import openai_function_name, to_openai_tool

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str | None, BaseException | None, bool], Awaitable[None]]
ToolCallsHook = Callable[[Message], Awaitable[None]]
ToolMessagesHook = Callable[[list[Message]], Awaitable[None]]
ClientFactory = Callable[[str, str], AsyncOpenAI]


def default_client_factory(base_url: str, api_key: str) -> AsyncOpenAI:
    return AsyncOpenAI(base_url=base_url, api_key=api_key)


class ToolCallAccumulator:
    """Index-addressed tool-call fragments collected over one streamed response.

    Arguments are concatenated as raw text and only parsed by the executor,
    once the finish signal says delivery is complete.
    """

    def __init__(self) -> None:
        self._entries: dict[int, dict[str, str]] = {}

    def add(self, fragments: Iterable[Any]) -> None:
        for fragment in fragments:
            index = fragment.index if fragment.index is not None else len(self._entries)
            entry = self._entries.setdefault(index, {"id": "", "type": "function", "name": "", "arguments": ""})
            if fragment.id:
                entry["id"] = fragment.id
            if fragment.type:
                entry["type"] = fragment.type
            function = fragment.function
            if function is not None:
                if function.name:
                    entry["name"] = function.name
                if function.arguments:
                    entry["arguments"] += function.arguments

    def __len__(self) -> int:
        return len(self._entries)

    def is_complete(self) -> bool:
        return bool(self._entries) and all(e["id"] and e["name"] for e in self._entries.values())

    def _ordered(self) -> list[dict[str, str]]:
        return [self._entries[i] for i in sorted(self._entries)]

    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(id=e["id"], function=FunctionCall(name=e["name"], arguments=e["arguments"]))
            for e in self._ordered()
        ]

    def requests(self) -> list[ToolCallRequest]:
        return [ToolCallRequest(id=e["id"], name=e["name"], arguments=e["arguments"]) for e in self._ordered()]


class AIService:
    def __init__(
        self,
        config: AppConfig,
        executor: ToolExecutor,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self.config = config
        self.executor = executor
        self._client_factory = client_factory
        self._client: AsyncOpenAI | None = None
        self._client_key: tuple[str, str] | None = None

    # --- client lifecycle ---

    def _resolve_provider(self, model_id: str) -> tuple[ProviderConfig, str]:
        if not model_id:
            raise ConfigurationError("No model selected", "error.noModelSelected")
        provider = self.config.provider_for_model(model_id)
        if provider is None:
            raise ConfigurationError(f"No provider configured for model '{model_id}'", "error.apiProviderMissing")
        if not provider.base_url:
            raise ConfigurationError(f"Provider '{provider.id}' has no base URL", "error.apiProviderMissing")
        api_key = resolve_api_key(provider)
        if not api_key:
            raise ConfigurationError(
                f"No API key found for provider '{provider.id}' (model {model_id})", "error.apiKeyMissing"
            )
        return provider, api_key

    def get_client(self, model_id: str) -> AsyncOpenAI:
        """Return the cached client, rebuilding it only when endpoint or credential changed."""
        provider, api_key = self._resolve_provider(model_id)
        key = (provider.base_url, api_key)
        if self._client is None or self._client_key != key:
            if self._client is not None:
                logger.info("Provider endpoint or credential changed, rebuilding AI client for %s", provider.id)
            self._client = self._client_factory(provider.base_url, api_key)
            self._client_key = key
        return self._client

    def invalidate_client(self) -> None:
        self._client = None
        self._client_key = None

    # --- request building ---

    def build_system_prompt(self, now: datetime | None = None) -> str:
        ai = self.config.ai
        now = now or datetime.now().astimezone()
        prompt = ai.system_prompt
        prompt += "\n\n--- User & Session Context ---"
        if ai.user_name:
            prompt += f"\nUser's name: {ai.user_name}."
        if ai.user_country:
            prompt += f"\nUser's country: {ai.user_country}."
        if ai.user_language:
            prompt += f"\nUser's preferred language: {ai.user_language}."
        prompt += f"\nCurrent time: {now.strftime('%Y-%m-%d %H:%M %Z').strip()}."
        prompt += "\n" + "-" * 32
        return prompt

    def build_messages(self, history: list[Message]) -> list[dict[str, Any]]:
        mapped = map_history(history)
        if history and not mapped:
            raise MappingError(f"Message mapping failed: none of {len(history)} message(s) could be mapped")
        return [{"role": "system", "content": self.build_system_prompt()}] + mapped

    async def gather_tools(self, server_name: str | None) -> list[dict[str, Any]]:
        """Built-in tools plus the active tools of one MCP server; MCP failures leave it out."""
        tools = self.executor.local_tools.get_openai_tools()
        manager = self.executor.mcp_manager
        if not server_name or manager is None:
            return tools
        try:
            remote = await manager.get_tools(server_name)
        except Exception as e:
            handle_app_error(e, f"MCP Tool Error: {server_name}")
            return tools
        taken = {t["function"]["name"] for t in tools}
        for tool in remote or ():
            if not tool.is_active:
                continue
            name = openai_function_name(tool.name)
            if name in taken:
                logger.warning("Skipping MCP tool '%s' from '%s': name already in use", tool.name, server_name)
                continue
            taken.add(name)
            tools.append(to_openai_tool(tool))
        return tools

    # --- streaming ---

    async def _fail(self, callback: StreamCallback, error: BaseException) -> None:
        if not isinstance(error, AppError):
            logger.exception("AI stream error", exc_info=error)
            error = StreamError(f"Stream error: {error}", original=error)
        handle_app_error(error, "error.streamError")
        await callback(None, error, True)

    async def stream_completion(self, history: list[Message], callback: StreamCallback, model_id: str) -> None:
        try:
            client = self.get_client(model_id)
            stream = await client.chat.completions.create(
                model=model_id,
                messages=self.build_messages(history),
                temperature=self.config.ai.temperature,
                stream=True,
            )
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if choice and choice.delta and choice.delta.content:
                    await callback(choice.delta.content, None, False)
        except Exception as e:
            await self._fail(callback, e)
            return
        await callback(None, None, True)

    async def stream_completion_with_tools(
        self,
        history: list[Message],
        callback: StreamCallback,
        model_id: str,
        server_name: str | None = None,
        on_tool_messages: ToolMessagesHook | None = None,
        on_tool_calls: ToolCallsHook | None = None,
    ) -> None:
        try:
            client = self.get_client(model_id)
            tools = await self.gather_tools(server_name)
            payload: dict[str, Any] = {
                "model": model_id,
                "messages": self.build_messages(history),
                "temperature": self.config.ai.temperature,
                "stream": True,
            }
            if tools:
                payload["tools"] = tools
                payload["tool_choice"] = "auto"

            accumulator = ToolCallAccumulator()
            text = ""
            finish_reason: str | None = None

            stream = await client.chat.completions.create(**payload)
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue
                delta = choice.delta
                if delta and delta.content:
                    text += delta.content
                    await callback(delta.content, None, False)
                if delta and delta.tool_calls:
                    accumulator.add(delta.tool_calls)
                if choice.finish_reason:
                    finish_reason = choice.finish_reason

            if finish_reason == "tool_calls":
                if accumulator.is_complete():
                    await self._run_tool_round(
                        client, payload, accumulator, text, callback, on_tool_messages, on_tool_calls
                    )
                else:
                    logger.warning(
                        "Model signalled tool_calls with %d incomplete call(s); finishing without tools",
                        len(accumulator),
                    )
        except Exception as e:
            await self._fail(callback, e)
            return
        await callback(None, None, True)

    async def _run_tool_round(
        self,
        client: AsyncOpenAI,
        payload: dict[str, Any],
        accumulator: ToolCallAccumulator,
        text: str,
        callback: StreamCallback,
        on_tool_messages: ToolMessagesHook | None,
        on_tool_calls: ToolCallsHook | None,
    ) -> None:
        model_id = payload["model"]
        assistant = Message(
            role="assistant",
            model=model_id,
            content=text or None,
            tool_calls=accumulator.tool_calls(),
        )
        if on_tool_calls is not None:
            try:
                await on_tool_calls(assistant)
            except Exception as e:
                handle_app_error(e, "error.saveFailed")

        requests = accumulator.requests()
        logger.info("Executing %d tool call(s): %s", len(requests), ", ".join(r.name for r in requests))
        results = await asyncio.gather(*(self.executor.execute_tool(r) for r in requests))
        tool_messages = [r.to_message(model=model_id) for r in results]

        if on_tool_messages is not None:
            try:
                await on_tool_messages(tool_messages)
            except Exception as e:
                handle_app_error(e, "error.saveFailed")

        follow_up = {k: v for k, v in payload.items() if k not in ("tools", "tool_choice")}
        follow_up["messages"] = payload["messages"] + [to_wire(assistant)] + [to_wire(m) for m in tool_messages]

        stream = await client.chat.completions.create(**follow_up)
        async for chunk in stream:
            choice = chunk.choices[0] if chunk.choices else None
            if choice and choice.delta and choice.delta.content:
                await callback(choice.delta.content, None, False)

    # --- helpers ---

    async def generate_title(self, user_message: str, model_id: str) -> str:
        try:
            response = await self.get_client(model_id).chat.completions.create(
                model=model_id,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            "Generate a short title (3-6 words) for a conversation that starts"
                            " with the following message. Return only the title, no quotes or punctuation."
                        ),
                    },
                    {"role": "user", "content": user_message},
                ],
                max_tokens=20,
            )
            title = response.choices[0].message.content or "New Chat"
            return title.strip().strip('"').strip("'")
        except Exception:
            return "New Chat"

    async def validate_connection(self, model_id: str) -> tuple[bool, str, list[str]]:
        try:
            models = await self.get_client(model_id).models.list()
            model_ids = [m.id for m in models.data]
            return True, "Connected successfully", model_ids
        except Exception as e:
            logger.error("AI connection validation failed: %s", e)
            return False, "Connection to AI service failed", []
