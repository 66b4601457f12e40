"""OpenAI provider and OpenAI-compatible endpoints (xAI, DeepSeek, Ollama) via the openai SDK."""

import os

import openai
from openai import AsyncOpenAI

from config.config_loader import LOCAL_SDKS, ModelConfig
from consensus.errors import ErrorCategory
from consensus.providers.base import AIProvider, ProviderError, require_api_key

# Ollama ignores the key but the SDK insists on one
_LOCAL_PLACEHOLDER_KEY = "ollama"


class OpenAIProvider(AIProvider):
    """OpenAI chat completions provider, JSON output mode."""

    display_name = "OpenAI"
    _json_mode = True

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = AsyncOpenAI(api_key=self._api_key(config), base_url=config.base_url)

    def _api_key(self, config: ModelConfig) -> str:
        return require_api_key(config)

    async def _complete(self, prompt: str) -> tuple[str, int | None]:
        request: dict = {
            "model": self._config.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self._config.max_tokens,
        }
        if self._json_mode:
            request["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**request)
        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content", ErrorCategory.PARSE_ERROR)

        token_count = response.usage.total_tokens if response.usage else None
        return choice.message.content, token_count

    def _sdk_error(self, exc: Exception) -> ProviderError | None:
        if isinstance(exc, openai.RateLimitError):
            return ProviderError(self._config.name, f"Rate limited: {exc}", ErrorCategory.RATE_LIMIT)
        if isinstance(exc, openai.AuthenticationError):
            return ProviderError(self._config.name, f"Authentication failed: {exc}", ErrorCategory.AUTHENTICATION)
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(self._config.name, f"Connection failed: {exc}", ErrorCategory.NETWORK)
        return None


class OpenAICompatibleProvider(OpenAIProvider):
    """Any endpoint speaking the OpenAI chat API: xAI Grok, DeepSeek, local Ollama."""

    _json_mode = False

    def __init__(self, config: ModelConfig) -> None:
        if not config.base_url:
            raise ProviderError(config.name, f"base_url is required for {config.sdk} provider")
        self.display_name = config.sdk
        super().__init__(config)

    def _api_key(self, config: ModelConfig) -> str:
        if config.sdk in LOCAL_SDKS:
            key = os.environ.get(config.api_key_env, "").strip() if config.api_key_env else ""
            return key or _LOCAL_PLACEHOLDER_KEY
        return super()._api_key(config)
