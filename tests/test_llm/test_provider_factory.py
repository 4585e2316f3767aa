from types import SimpleNamespace

import pytest

import navreach.llm as llm_module
from navreach.exceptions import LLMAPIError, UnsupportedProviderError
from navreach.llm import (
    LiteLLMProvider,
    LLMResponse,
    Message,
    ToolCall,
    ToolDefinition,
    create_provider,
    flatten_content,
)


def test_create_provider_supports_chatgpt_alias():
    provider = create_provider(provider="chatgpt", model="gpt-4o-mini")
    assert isinstance(provider, LiteLLMProvider)
    assert provider.provider == "openai"
    assert provider.model == "openai/gpt-4o-mini"


def test_create_provider_supports_claude_alias():
    provider = create_provider(provider="claude", model="claude-3-5-sonnet-latest")
    assert provider.provider == "anthropic"
    assert provider.model == "anthropic/claude-3-5-sonnet-latest"


def test_create_provider_openrouter_defaults_base_url():
    provider = create_provider(provider="openrouter", model="openai/gpt-4o-mini")
    assert provider.model == "openrouter/openai/gpt-4o-mini"
    assert provider.base_url == "https://openrouter.ai/api/v1"


def test_create_provider_preserves_prefixed_model():
    provider = create_provider(provider="openai", model="openai/gpt-4o-mini")
    assert provider.model == "openai/gpt-4o-mini"


def test_create_provider_uses_env_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    provider = create_provider(provider="openai", model="gpt-4o-mini")
    assert provider.api_key == "test-openai-key"


def test_create_provider_custom_requires_base_url():
    with pytest.raises(UnsupportedProviderError):
        create_provider(provider="custom", model="local-model")

    provider = create_provider(provider="openai-compatible", model="local-model", base_url="http://localhost:8000/v1/")
    assert provider.model == "openai/local-model"
    assert provider.base_url == "http://localhost:8000/v1"


def test_create_provider_rejects_unknown_type():
    with pytest.raises(UnsupportedProviderError) as exc_info:
        create_provider(provider="carrier-pigeon", model="x")
    assert str(exc_info.value) == "Unsupported provider type: carrier-pigeon"


def test_request_kwargs_reasoning_toggle():
    messages = [Message(role="user", content="hi")]
    with_reasoning = create_provider(provider="openai", model="o3-mini", reasoning_effort="low")
    without = create_provider(provider="openai", model="o3-mini", reasoning=False, reasoning_effort="low")

    assert with_reasoning._request_kwargs(messages)["reasoning_effort"] == "low"
    kwargs = without._request_kwargs(messages)
    assert "reasoning_effort" not in kwargs
    assert kwargs["drop_params"] is True


def test_convert_messages_keeps_tool_call_pairing():
    call = ToolCall(id="c1", name="browser_navigate", arguments={"url": "https://example.com"})
    assistant = LiteLLMProvider._convert_message(Message(role="assistant", content="", tool_calls=[call]))
    tool = LiteLLMProvider._convert_message(
        Message(role="tool", content='{"success": true}', tool_call_id="c1", tool_name="browser_navigate")
    )

    assert assistant["tool_calls"][0]["id"] == "c1"
    assert assistant["tool_calls"][0]["function"]["arguments"] == '{"url": "https://example.com"}'
    assert tool["tool_call_id"] == "c1"
    assert tool["name"] == "browser_navigate"


@pytest.mark.asyncio
async def test_complete_parses_tool_calls_and_reasoning(monkeypatch: pytest.MonkeyPatch):
    captured = {}

    async def fake_acompletion(**kwargs):
        captured.update(kwargs)
        message = SimpleNamespace(
            content="Opening the page.",
            reasoning_content="Need to open the site first.",
            tool_calls=[
                SimpleNamespace(
                    id="call_1",
                    function=SimpleNamespace(name="browser_navigate", arguments='{"url": "https://example.com"}'),
                ),
                SimpleNamespace(
                    id="call_2",
                    function=SimpleNamespace(name="browser_type", arguments="not json"),
                ),
            ],
        )
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message)],
            model="openai/gpt-4o-mini",
            usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )

    monkeypatch.setattr(llm_module.litellm, "acompletion", fake_acompletion)
    provider = create_provider(provider="openai", model="gpt-4o-mini", api_key="sk-test")
    tools = [ToolDefinition(name="browser_navigate", description="nav", parameters={"type": "object"})]

    response = await provider.complete([Message(role="user", content="go")], tools=tools)

    assert captured["tool_choice"] == "auto"
    assert captured["api_key"] == "sk-test"
    assert response.tool_calls[0] == ToolCall(
        id="call_1", name="browser_navigate", arguments={"url": "https://example.com"}
    )
    assert response.tool_calls[1].arguments == {"raw": "not json"}
    assert response.reasoning_content == "Need to open the site first."
    assert response.usage["total_tokens"] == 15


@pytest.mark.asyncio
async def test_complete_wraps_library_errors(monkeypatch: pytest.MonkeyPatch):
    class RateLimited(Exception):
        status_code = 429

    async def fake_acompletion(**kwargs):
        raise RateLimited("slow down")

    monkeypatch.setattr(llm_module.litellm, "acompletion", fake_acompletion)
    provider = create_provider(provider="openai", model="gpt-4o-mini")

    with pytest.raises(LLMAPIError) as exc_info:
        await provider.complete([Message(role="user", content="go")])
    assert exc_info.value.status_code == 429


def test_flatten_content_and_empty_response():
    assert flatten_content([{"type": "text", "text": "a"}, "b", {"type": "image_url"}]) == "a b"
    assert LLMResponse(content="  ").is_empty() is True
    assert LLMResponse(content="", tool_calls=[ToolCall(id="c", name="x")]).is_empty() is False


def test_strip_images_replaces_image_parts():
    message = Message(
        role="tool",
        content=[{"type": "text", "text": "snapshot"}, {"type": "image_url", "image_url": {"url": "data:image/png;base64,A"}}],
    )
    assert message.strip_images() is True
    assert message.content == "snapshot\n[image removed: model does not accept image input]"
    assert message.strip_images() is False
