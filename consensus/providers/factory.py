"""Map registry sdk names to provider classes."""

from config.config_loader import ModelConfig
from consensus.providers.anthropic import AnthropicProvider
from consensus.providers.base import AIProvider, ProviderError
from consensus.providers.gemini import GeminiProvider
from consensus.providers.openai_provider import OpenAICompatibleProvider, OpenAIProvider

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "xai": OpenAICompatibleProvider,
    "deepseek": OpenAICompatibleProvider,
    "ollama": OpenAICompatibleProvider,
}


def build_provider(model_config: ModelConfig) -> AIProvider:
    """Instantiate the provider for a registry entry.

    Raises:
        ProviderError: Unknown sdk, missing API key, or missing base_url.
    """
    provider_cls = PROVIDER_CLASSES.get(model_config.sdk)
    if provider_cls is None:
        raise ProviderError(model_config.name, f"Unknown sdk '{model_config.sdk}'")
    return provider_cls(model_config)
