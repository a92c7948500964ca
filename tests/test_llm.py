"""Tests for LLM providers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatdigest.llm import get_provider_for_task
from chatdigest.llm.anthropic_provider import AnthropicProvider
from chatdigest.llm.base import LLMResponse
from chatdigest.llm.openai_compat import OpenAICompatibleProvider


@pytest.fixture
def openai_provider():
    return OpenAICompatibleProvider(
        api_key="test-key",
        base_url="http://localhost:9999",
        default_model="test-model",
    )


def _mock_openai_response(content="test response", model="test-model"):
    return {
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 20},
        "model": model,
    }


def _mock_client(mock_client_cls, data):
    mock_resp = MagicMock()
    mock_resp.json.return_value = data
    mock_resp.raise_for_status = MagicMock()

    mock_client = AsyncMock()
    mock_client.post.return_value = mock_resp
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client_cls.return_value = mock_client
    return mock_client


@pytest.mark.asyncio
@patch("chatdigest.llm.openai_compat.httpx.AsyncClient")
async def test_openai_compat_complete(mock_client_cls, openai_provider):
    """OpenAI-compatible provider makes correct API call."""
    mock_client = _mock_client(mock_client_cls, _mock_openai_response("hello world"))

    with patch.object(openai_provider, "_track_usage"):
        response = await openai_provider.complete("test prompt", system="sys")

    assert response.text == "hello world"
    assert response.input_tokens == 10
    assert response.output_tokens == 20

    call_args = mock_client.post.call_args
    assert call_args.args[0] == "http://localhost:9999/chat/completions"
    assert call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"
    payload = call_args.kwargs["json"]
    assert payload["model"] == "test-model"
    assert len(payload["messages"]) == 2
    assert payload["messages"][0]["role"] == "system"
    assert payload["messages"][1]["content"] == "test prompt"
    assert "response_format" not in payload


@pytest.mark.asyncio
@patch("chatdigest.llm.openai_compat.httpx.AsyncClient")
async def test_openai_compat_no_system(mock_client_cls, openai_provider):
    """System message is omitted when empty."""
    mock_client = _mock_client(mock_client_cls, _mock_openai_response())

    with patch.object(openai_provider, "_track_usage"):
        await openai_provider.complete("prompt only", model="other-model")

    payload = mock_client.post.call_args.kwargs["json"]
    assert len(payload["messages"]) == 1
    assert payload["messages"][0]["role"] == "user"
    assert payload["model"] == "other-model"


@pytest.mark.asyncio
@patch("chatdigest.llm.openai_compat.httpx.AsyncClient")
async def test_openai_compat_json_mode(mock_client_cls):
    provider = OpenAICompatibleProvider(
        api_key="", base_url="http://localhost:9999/", default_model="m", json_mode=True,
    )
    mock_client = _mock_client(mock_client_cls, {"choices": [{"message": {"content": None}}]})

    response = await provider.complete("prompt")

    assert response.text == ""
    assert response.model == "m"
    call_args = mock_client.post.call_args
    assert call_args.kwargs["json"]["response_format"] == {"type": "json_object"}
    assert "Authorization" not in call_args.kwargs["headers"]


@pytest.mark.asyncio
async def test_usage_is_tracked(openai_provider):
    with patch.object(openai_provider, "_do_complete", AsyncMock(return_value=LLMResponse("ok", 3, 4, "m"))), \
            patch.object(openai_provider, "_track_usage") as track:
        await openai_provider.complete("prompt")
    track.assert_called_once()


@pytest.mark.asyncio
@patch("chatdigest.llm.anthropic_provider.anthropic.AsyncAnthropic")
async def test_anthropic_complete(mock_client_cls):
    message = MagicMock(
        content=[MagicMock(type="text", text="hello "), MagicMock(type="text", text="there")],
        usage=MagicMock(input_tokens=5, output_tokens=7),
    )
    mock_client = MagicMock()
    mock_client.messages.create = AsyncMock(return_value=message)
    mock_client_cls.return_value = mock_client

    provider = AnthropicProvider(api_key="k", base_url="", default_model="claude-test")
    with patch.object(provider, "_track_usage"):
        response = await provider.complete("prompt", system="sys")

    assert response.text == "hello there"
    assert response.input_tokens == 5
    kwargs = mock_client.messages.create.call_args.kwargs
    assert kwargs["system"] == "sys"
    assert kwargs["model"] == "claude-test"
    assert "base_url" not in mock_client_cls.call_args.kwargs


def test_provider_routing(sample_config):
    provider, model = get_provider_for_task(sample_config, "summarize")
    assert isinstance(provider, OpenAICompatibleProvider)
    assert model == "test-model"
    assert provider.max_retries == 0

    tiered, tiered_model = get_provider_for_task(sample_config, "summarize_tiered")
    assert tiered is provider
    assert tiered_model == "big-model"


def test_unknown_provider_type(sample_config):
    sample_config["llm"]["providers"]["mock"]["type"] = "carrier-pigeon"
    with pytest.raises(ValueError):
        get_provider_for_task(sample_config, "summarize")
