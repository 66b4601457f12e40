"""Anthropic Claude provider using anthropic SDK with native async."""

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from consensus.errors import ErrorCategory
from consensus.providers.base import AIProvider, ProviderError, require_api_key

_SYSTEM_PROMPT = "You answer strictly with a single JSON object and no surrounding prose."


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    display_name = "Anthropic"

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=require_api_key(config))

    async def _complete(self, prompt: str) -> tuple[str, int | None]:
        response = await self._client.messages.create(
            model=self._config.model,
            max_tokens=self._config.max_tokens,
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        text_blocks = [b.text for b in response.content or [] if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response", ErrorCategory.PARSE_ERROR)

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens
        return "\n".join(text_blocks), token_count

    def _sdk_error(self, exc: Exception) -> ProviderError | None:
        if isinstance(exc, anthropic_sdk.RateLimitError):
            return ProviderError(self._config.name, f"Rate limited: {exc}", ErrorCategory.RATE_LIMIT)
        if isinstance(exc, anthropic_sdk.AuthenticationError):
            return ProviderError(self._config.name, f"Authentication failed: {exc}", ErrorCategory.AUTHENTICATION)
        if isinstance(exc, anthropic_sdk.APIConnectionError):
            return ProviderError(self._config.name, f"Connection failed: {exc}", ErrorCategory.NETWORK)
        return None
