"""Gemini provider using google-genai SDK with native async."""

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from consensus.errors import ErrorCategory
from consensus.providers.base import AIProvider, ProviderError, require_api_key


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK, JSON response mime type."""

    display_name = "Gemini"

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(config)
        self._client = genai.Client(api_key=require_api_key(config))

    async def _complete(self, prompt: str) -> tuple[str, int | None]:
        response = await self._client.aio.models.generate_content(
            model=self._config.model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                max_output_tokens=self._config.max_tokens,
                response_mime_type="application/json",
            ),
        )
        if not response.text:
            raise ProviderError(self._config.name, "Empty response text", ErrorCategory.PARSE_ERROR)

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count
        return response.text, token_count
