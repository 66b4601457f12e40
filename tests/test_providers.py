"""Tests for consensus/providers with the SDK clients mocked out."""

import asyncio
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from config.config_loader import ModelConfig
from consensus.errors import ErrorCategory
from consensus.providers.anthropic import AnthropicProvider
from consensus.providers.base import ProviderError
from consensus.providers.factory import build_provider
from consensus.providers.openai_provider import OpenAICompatibleProvider, OpenAIProvider


def _config(name: str, sdk: str, base_url: str | None = None, key_env: str = "TEST_PROVIDER_KEY") -> ModelConfig:
    return ModelConfig(
        name=name, sdk=sdk, model=f"{name}-model", api_key_env=key_env,
        timeout_sec=5, max_tokens=256, base_url=base_url,
    )


def _chat_response(content: str | None, total_tokens: int = 12):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


@pytest.fixture
def provider_key(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")


def test_build_provider_picks_class_by_sdk(provider_key):
    assert isinstance(build_provider(_config("openai", "openai")), OpenAIProvider)
    assert isinstance(build_provider(_config("claude", "anthropic")), AnthropicProvider)
    grok = build_provider(_config("grok", "xai", base_url="https://api.x.ai/v1"))
    assert isinstance(grok, OpenAICompatibleProvider)
    assert grok.name() == "grok"
    assert grok.model_string() == "grok-model"


def test_build_provider_unknown_sdk():
    with pytest.raises(ProviderError, match="Unknown sdk 'mistral'"):
        build_provider(_config("mistral", "mistral"))


def test_missing_api_key_is_authentication_error(monkeypatch):
    monkeypatch.delenv("TEST_PROVIDER_KEY", raising=False)
    with pytest.raises(ProviderError) as exc_info:
        build_provider(_config("openai", "openai"))
    assert exc_info.value.category is ErrorCategory.AUTHENTICATION


def test_compatible_provider_requires_base_url(provider_key):
    with pytest.raises(ProviderError, match="base_url is required"):
        build_provider(_config("deepseek", "deepseek"))


def test_local_provider_needs_no_key(monkeypatch):
    monkeypatch.delenv("TEST_PROVIDER_KEY", raising=False)
    provider = build_provider(_config("llama", "ollama", base_url="http://localhost:11434/v1", key_env=""))
    assert provider.name() == "llama"


async def test_openai_generate_requests_json_mode(provider_key):
    provider = OpenAIProvider(_config("openai", "openai"))
    create = AsyncMock(return_value=_chat_response('{"answer": "Paris"}'))
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    reply = await provider.generate("prompt", "generate q1")

    assert reply.content == '{"answer": "Paris"}'
    assert reply.provider == "openai"
    assert reply.token_count == 12
    assert create.call_args.kwargs["response_format"] == {"type": "json_object"}


async def test_compatible_provider_skips_json_mode(provider_key):
    provider = OpenAICompatibleProvider(_config("grok", "xai", base_url="https://api.x.ai/v1"))
    create = AsyncMock(return_value=_chat_response('{"answer": "Paris"}'))
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    await provider.generate("prompt", "generate q1")

    assert "response_format" not in create.call_args.kwargs


async def test_empty_content_is_parse_error(provider_key):
    provider = OpenAIProvider(_config("openai", "openai"))
    create = AsyncMock(return_value=_chat_response(None))
    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt", "generate q1")
    assert exc_info.value.category is ErrorCategory.PARSE_ERROR


async def test_slow_call_is_timeout_error(provider_key):
    provider = OpenAIProvider(replace(_config("openai", "openai"), timeout_sec=0.01))

    async def hang(**kwargs):
        await asyncio.sleep(3600)

    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=hang)))

    with pytest.raises(ProviderError) as exc_info:
        await provider.generate("prompt", "generate q1")
    assert exc_info.value.category is ErrorCategory.TIMEOUT
    assert exc_info.value.retryable


async def test_anthropic_generate_joins_text_blocks(provider_key):
    provider = AnthropicProvider(_config("claude", "anthropic"))
    response = SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text='{"answer":'),
            SimpleNamespace(type="tool_use", text="ignored"),
            SimpleNamespace(type="text", text=' "Paris"}'),
        ],
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    )
    provider._client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(return_value=response)))

    reply = await provider.generate("prompt", "generate q1")

    assert reply.content == '{"answer":\n "Paris"}'
    assert reply.token_count == 15


async def test_timeout_override_applies_to_one_call(provider_key):
    provider = OpenAIProvider(_config("openai", "openai"))

    async def hang(**kwargs):
        await asyncio.sleep(3600)

    provider._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=hang)))

    with pytest.raises(ProviderError, match="timed out after 0.01s"):
        await provider.generate("prompt", "generate q1", timeout_sec=0.01)
    assert provider.timeout_sec() == 5
