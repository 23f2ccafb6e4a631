"""Tests for the streaming completion client and its tool-call round trip."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import pytest

from alcove.errors import ConfigurationError, MappingError, StreamError
from alcove.models import McpTool, Message
from alcove.services.ai_service import AIService
from alcove.services.tool_executor import ToolExecutor
from alcove.services.tool_store import McpToolStore
from alcove.tools import ToolRegistry
from conftest import TEST_MODEL, FakeOpenAI, make_chunk, make_config, tool_call_fragment


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str | None, BaseException | None, bool]] = []

    async def __call__(self, chunk: str | None, error: BaseException | None, finished: bool) -> None:
        self.calls.append((chunk, error, finished))

    @property
    def text(self) -> str:
        return "".join(c for c, _, _ in self.calls if c)

    @property
    def terminal(self) -> list[tuple[str | None, BaseException | None, bool]]:
        return [c for c in self.calls if c[2]]


class FakeManager:
    def __init__(self, store: McpToolStore, result: Any = "Sunny", fail_tools: bool = False) -> None:
        self.tool_store = store
        self.result = result
        self.fail_tools = fail_tools
        self.tool_calls: list[tuple[str, dict]] = []

    async def get_tools(self, name: str):
        if self.fail_tools:
            raise RuntimeError("server down")
        return self.tool_store.get_server_tools(name)

    async def get_client(self, name: str):
        return self

    async def call_tool(self, name: str, arguments: dict) -> Any:
        self.tool_calls.append((name, arguments))
        return self.result


HISTORY = [Message(role="system", content="sys"), Message(role="user", content="Hi")]


def _service(responses: list[Any], manager: FakeManager | None = None, **ai: Any) -> tuple[AIService, FakeOpenAI]:
    fake = FakeOpenAI(responses)
    executor = ToolExecutor(manager, ToolRegistry())
    service = AIService(make_config(**ai), executor, client_factory=lambda base_url, api_key: fake)
    return service, fake


def _weather_manager(**kwargs: Any) -> FakeManager:
    store = McpToolStore()
    store.set_server_tools("tools", [McpTool(name="get_weather", input_schema={"type": "object"})])
    return FakeManager(store, **kwargs)


TOOL_TURN = [
    make_chunk(tool_calls=[tool_call_fragment(0, "call_1", "get_weather", '{"city"')]),
    make_chunk(tool_calls=[tool_call_fragment(0, arguments=': "Oslo"}')]),
    make_chunk(finish_reason="tool_calls"),
]


class TestPlainStreaming:
    @pytest.mark.asyncio()
    async def test_text_then_single_terminal(self) -> None:
        service, fake = _service([[make_chunk("Hel"), make_chunk("lo"), make_chunk(finish_reason="stop")]])
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL)

        assert callback.text == "Hello"
        assert callback.terminal == [(None, None, True)]
        assert callback.calls[-1] == (None, None, True)
        payload = fake.completions.calls[0]
        assert payload["stream"] is True
        assert payload["messages"][0]["role"] == "system"
        assert "tools" not in payload

    @pytest.mark.asyncio()
    async def test_stream_completion_without_tools(self) -> None:
        service, fake = _service([[make_chunk("Hi there")]])
        callback = Recorder()
        await service.stream_completion(HISTORY, callback, TEST_MODEL)
        assert callback.calls == [("Hi there", None, False), (None, None, True)]
        assert fake.completions.calls[0]["temperature"] == 0.7

    @pytest.mark.asyncio()
    async def test_dynamic_system_prompt_prepended(self) -> None:
        service, fake = _service([[make_chunk("ok")]], user_name="Ada", user_language="English")
        await service.stream_completion(HISTORY, Recorder(), TEST_MODEL)
        messages = fake.completions.calls[0]["messages"]
        assert messages[0]["role"] == "system"
        assert "User's name: Ada." in messages[0]["content"]
        assert messages[1] == {"role": "system", "content": "sys"}
        assert messages[2] == {"role": "user", "content": "Hi"}

    def test_system_prompt_block(self) -> None:
        service, _ = _service([], user_name="Ada", user_country="Norway")
        prompt = service.build_system_prompt(datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))
        assert prompt.startswith("You are a test assistant.\n\n--- User & Session Context ---")
        assert "User's country: Norway." in prompt
        assert "Current time: 2024-05-01 12:30 UTC." in prompt
        assert prompt.endswith("-" * 32)


class TestToolRound:
    @pytest.mark.asyncio()
    async def test_tool_call_then_follow_up(self) -> None:
        manager = _weather_manager(result="Sunny, 18C")
        service, fake = _service([TOOL_TURN, [make_chunk("It is sunny.")]], manager)
        callback = Recorder()
        seen_requests: list[Message] = []
        seen_results: list[list[Message]] = []

        async def on_tool_calls(message: Message) -> None:
            seen_requests.append(message)

        async def on_tool_messages(messages: list[Message]) -> None:
            seen_results.append(messages)

        await service.stream_completion_with_tools(
            HISTORY, callback, TEST_MODEL, "tools", on_tool_messages=on_tool_messages, on_tool_calls=on_tool_calls
        )

        assert manager.tool_calls == [("get_weather", {"city": "Oslo"})]
        assert callback.text == "It is sunny."
        assert callback.terminal == [(None, None, True)]

        first, second = fake.completions.calls
        assert first["tools"][0]["function"]["name"] == "get_weather"
        assert first["tool_choice"] == "auto"
        assert "tools" not in second
        assert "tool_choice" not in second

        assistant, tool = second["messages"][-2:]
        assert assistant["role"] == "assistant"
        assert assistant["tool_calls"][0]["id"] == "call_1"
        assert assistant["tool_calls"][0]["function"]["arguments"] == '{"city": "Oslo"}'
        assert tool == {"role": "tool", "tool_call_id": "call_1", "content": "Sunny, 18C", "name": "get_weather"}
        assert second["messages"][: len(first["messages"])] == first["messages"]

        assert seen_requests[0].tool_calls[0].id == "call_1"
        assert [m.tool_call_id for m in seen_results[0]] == ["call_1"]

    @pytest.mark.asyncio()
    async def test_invalid_arguments_still_follow_up(self) -> None:
        manager = _weather_manager()
        turn = [
            make_chunk(tool_calls=[tool_call_fragment(0, "call_1", "get_weather", "{oops")]),
            make_chunk(finish_reason="tool_calls"),
        ]
        service, fake = _service([turn, [make_chunk("Sorry.")]], manager)
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL, "tools")

        assert manager.tool_calls == []
        tool_message = fake.completions.calls[1]["messages"][-1]
        assert tool_message["tool_call_id"] == "call_1"
        assert json.loads(tool_message["content"])["error"] == "Failed to parse arguments"
        assert callback.terminal == [(None, None, True)]

    @pytest.mark.asyncio()
    async def test_incomplete_tool_call_finishes_without_execution(self) -> None:
        manager = _weather_manager()
        turn = [
            make_chunk(tool_calls=[tool_call_fragment(0, None, "get_weather", "{}")]),
            make_chunk(finish_reason="tool_calls"),
        ]
        service, fake = _service([turn], manager)
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL, "tools")

        assert manager.tool_calls == []
        assert len(fake.completions.calls) == 1
        assert callback.terminal == [(None, None, True)]

    @pytest.mark.asyncio()
    async def test_multiple_calls_answered_in_order(self) -> None:
        manager = _weather_manager()
        turn = [
            make_chunk(
                tool_calls=[
                    tool_call_fragment(0, "call_a", "get_weather", '{"city": "A"}'),
                    tool_call_fragment(1, "call_b", "get_weather", '{"city": "B"}'),
                ]
            ),
            make_chunk(finish_reason="tool_calls"),
        ]
        service, fake = _service([turn, [make_chunk("Both.")]], manager)
        await service.stream_completion_with_tools(HISTORY, Recorder(), TEST_MODEL, "tools")
        tools = [m for m in fake.completions.calls[1]["messages"] if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tools] == ["call_a", "call_b"]

    @pytest.mark.asyncio()
    async def test_inactive_tools_not_advertised(self) -> None:
        manager = _weather_manager()
        manager.tool_store.toggle_tool_active("tools", "get_weather")
        service, fake = _service([[make_chunk("ok")]], manager)
        await service.stream_completion_with_tools(HISTORY, Recorder(), TEST_MODEL, "tools")
        assert "tools" not in fake.completions.calls[0]

    @pytest.mark.asyncio()
    async def test_tool_discovery_failure_continues_without_tools(self) -> None:
        manager = _weather_manager(fail_tools=True)
        service, fake = _service([[make_chunk("ok")]], manager)
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL, "tools")
        assert "tools" not in fake.completions.calls[0]
        assert callback.terminal == [(None, None, True)]


class TestErrors:
    @pytest.mark.asyncio()
    async def test_request_failure_reports_once(self) -> None:
        service, _ = _service([RuntimeError("connection reset")])
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL)
        [(chunk, error, finished)] = callback.calls
        assert chunk is None and finished
        assert isinstance(error, StreamError)
        assert "connection reset" in error.details

    @pytest.mark.asyncio()
    async def test_mid_stream_failure_reports_once(self) -> None:
        service, _ = _service([[make_chunk("Par"), RuntimeError("dropped")]])
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL)
        assert callback.calls[0] == ("Par", None, False)
        assert len(callback.terminal) == 1
        assert isinstance(callback.terminal[0][1], StreamError)

    @pytest.mark.asyncio()
    async def test_follow_up_failure_reports_once(self) -> None:
        service, _ = _service([TOOL_TURN, RuntimeError("second call failed")], _weather_manager())
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, TEST_MODEL, "tools")
        assert len(callback.terminal) == 1
        assert callback.terminal[0][1] is not None

    @pytest.mark.asyncio()
    async def test_missing_provider(self) -> None:
        service, fake = _service([])
        callback = Recorder()
        await service.stream_completion_with_tools(HISTORY, callback, "unknown-model")
        [(_, error, finished)] = callback.calls
        assert isinstance(error, ConfigurationError)
        assert error.user_message == "error.apiProviderMissing"
        assert fake.completions.calls == []

    @pytest.mark.asyncio()
    async def test_missing_api_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_API_KEY", raising=False)
        service, _ = _service([])
        service.config.providers[0].api_key = None
        callback = Recorder()
        await service.stream_completion(HISTORY, callback, TEST_MODEL)
        assert callback.calls[0][1].user_message == "error.apiKeyMissing"

    @pytest.mark.asyncio()
    async def test_unmappable_history(self) -> None:
        service, fake = _service([])
        callback = Recorder()
        await service.stream_completion(
            [Message(role="tool", content="orphan")], callback, TEST_MODEL
        )
        assert isinstance(callback.calls[0][1], MappingError)
        assert fake.completions.calls == []


class TestClientCache:
    def test_client_reused_until_credentials_change(self) -> None:
        created: list[tuple[str, str]] = []

        def factory(base_url: str, api_key: str) -> object:
            created.append((base_url, api_key))
            return object()

        service = AIService(make_config(), ToolExecutor(None, ToolRegistry()), client_factory=factory)
        first = service.get_client(TEST_MODEL)
        assert service.get_client(TEST_MODEL) is first

        service.config.providers[0].api_key = "sk-rotated"
        assert service.get_client(TEST_MODEL) is not first
        assert created == [("http://llm.test/v1", "sk-test"), ("http://llm.test/v1", "sk-rotated")]

    def test_api_key_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_API_KEY", "sk-env")
        seen: list[str] = []
        service = AIService(
            make_config(),
            ToolExecutor(None, ToolRegistry()),
            client_factory=lambda base_url, api_key: seen.append(api_key) or object(),
        )
        service.config.providers[0].api_key = None
        service.get_client(TEST_MODEL)
        assert seen == ["sk-env"]


class TestHelpers:
    @pytest.mark.asyncio()
    async def test_validate_connection(self) -> None:
        service, _ = _service([])
        valid, message, models = await service.validate_connection(TEST_MODEL)
        assert valid
        assert models == [TEST_MODEL]

    @pytest.mark.asyncio()
    async def test_validate_connection_without_provider(self) -> None:
        service, _ = _service([])
        valid, _, models = await service.validate_connection("unknown-model")
        assert not valid
        assert models == []

    @pytest.mark.asyncio()
    async def test_generate_title_falls_back(self) -> None:
        service, _ = _service([RuntimeError("no")])
        assert await service.generate_title("Plan a trip", TEST_MODEL) == "New Chat"
