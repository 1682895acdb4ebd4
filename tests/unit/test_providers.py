import json

import httpx
import pytest

from orion.config import get_settings
from orion.providers.anthropic import AnthropicProvider
from orion.providers.factory import build_fallback_provider, build_primary_provider
from orion.providers.openai_compat import OpenAICompatProvider


@pytest.mark.asyncio
async def test_anthropic_generate_maps_system_tools_and_tool_use(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    get_settings.cache_clear()

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content.decode("utf-8"))
        assert body["system"] == "You are concise."
        assert body["messages"][0] == {"role": "user", "content": "hi\n\nmore"}
        assert body["messages"][1]["role"] == "assistant"
        assert body["tools"][0]["name"] == "search__web_search"
        assert body["tools"][0]["input_schema"]["type"] == "object"
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Let me look."},
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "search__web_search",
                        "input": {"q": "x"},
                    },
                ],
                "stop_reason": "tool_use",
                "usage": {"input_tokens": 12, "output_tokens": 7},
            },
        )

    provider = AnthropicProvider("claude-test", transport=httpx.MockTransport(handler))
    response = await provider.generate(
        [
            {"role": "system", "content": "You are concise."},
            {"role": "user", "content": "hi"},
            {"role": "user", "content": "more"},
            {"role": "assistant", "content": "ok"},
        ],
        tools=[
            {
                "name": "search__web_search",
                "description": "Search",
                "parameters": {"type": "object", "properties": {}},
            }
        ],
    )

    assert response.text == "Let me look."
    assert response.stop_reason == "tool_use"
    assert response.tool_calls == [
        {"id": "toolu_1", "name": "search__web_search", "arguments": {"q": "x"}}
    ]
    assert response.usage.input_tokens == 12
    assert response.wants_tools is True


def test_anthropic_conversation_must_start_with_user() -> None:
    system, messages = AnthropicProvider._split_system(
        [{"role": "assistant", "content": "summary"}, {"role": "user", "content": "q"}]
    )
    assert system == ""
    assert messages[0]["role"] == "user"
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]


@pytest.mark.asyncio
async def test_anthropic_http_error_raises() -> None:
    provider = AnthropicProvider(
        "claude-test",
        transport=httpx.MockTransport(lambda request: httpx.Response(529, text="overloaded")),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await provider.generate([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_openai_compat_tool_call_arguments_and_finish_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/chat/completions")
        body = json.loads(request.content.decode("utf-8"))
        assert body["tools"][0]["type"] == "function"
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "finish_reason": "tool_calls",
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_9",
                                    "type": "function",
                                    "function": {
                                        "name": "fs__read_file",
                                        "arguments": '{"path": "/tmp/a"}',
                                    },
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 3},
            },
        )

    provider = OpenAICompatProvider("gpt-test", transport=httpx.MockTransport(handler))
    response = await provider.generate(
        [{"role": "user", "content": "read it"}],
        tools=[{"name": "fs__read_file", "description": "Read", "parameters": {}}],
    )
    assert response.text == ""
    assert response.tool_calls[0]["arguments"] == {"path": "/tmp/a"}
    assert response.stop_reason == "tool_use"
    assert response.usage.output_tokens == 3


@pytest.mark.asyncio
async def test_openai_compat_length_finish_is_max_tokens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"choices": [{"finish_reason": "length", "message": {"content": "partial"}}]},
        )

    provider = OpenAICompatProvider("gpt-test", transport=httpx.MockTransport(handler))
    response = await provider.generate([{"role": "user", "content": "x"}])
    assert response.stop_reason == "max_tokens"
    assert response.text == "partial"


def test_provider_factory_defaults_to_anthropic_with_openai_fallback() -> None:
    settings = get_settings()
    assert isinstance(build_primary_provider(settings), AnthropicProvider)
    assert isinstance(build_fallback_provider(settings), OpenAICompatProvider)


def test_provider_factory_openai_primary_without_anthropic_key(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PRIMARY_PROVIDER", "openai")
    get_settings.cache_clear()
    settings = get_settings()
    assert isinstance(build_primary_provider(settings), OpenAICompatProvider)
    assert build_fallback_provider(settings) is None
