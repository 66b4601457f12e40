"""Abstract base for all AI model providers."""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod

from config.config_loader import ModelConfig
from consensus.errors import RETRYABLE_CATEGORIES, ErrorCategory, categorize_error
from consensus.models import ProviderReply

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(
        self,
        provider_name: str,
        message: str,
        category: ErrorCategory | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.category = category if category is not None else categorize_error(message)
        super().__init__(f"[{provider_name}] {message}")

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES


def require_api_key(config: ModelConfig) -> str:
    """Read the model's API key from the environment.

    Raises:
        ProviderError: AUTHENTICATION when the variable is unset or blank.
    """
    api_key = os.environ.get(config.api_key_env, "").strip() if config.api_key_env else ""
    if not api_key:
        raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", ErrorCategory.AUTHENTICATION)
    return api_key


class AIProvider(ABC):
    """Abstract base for all AI model providers.

    Subclasses build their SDK client and implement `_complete`; the timeout,
    latency measurement and error translation live here.
    """

    display_name = "Provider"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config

    def name(self) -> str:
        """Return the registry name (e.g. 'gemini', 'claude')."""
        return self._config.name

    def model_string(self) -> str:
        """Return the actual model identifier string."""
        return self._config.model

    def timeout_sec(self) -> float:
        """Return the configured per-request timeout."""
        return self._config.timeout_sec

    @abstractmethod
    async def _complete(self, prompt: str) -> tuple[str, int | None]:
        """Send one prompt and return (text content, total token count)."""
        ...

    def _sdk_error(self, exc: Exception) -> ProviderError | None:
        """Translate an SDK exception with a known category, or None."""
        return None

    async def generate(self, prompt: str, label: str, timeout_sec: float | None = None) -> ProviderReply:
        """Generate a completion for the given prompt.

        Args:
            prompt: The full prompt text to send.
            label: Short description of the call for log lines
                (e.g. "generate q1", "re-evaluate q1 round 2").
            timeout_sec: Timeout for this request only; defaults to the
                configured timeout_sec.

        Returns:
            ProviderReply with the raw text content and metadata.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        timeout = self._config.timeout_sec if timeout_sec is None else timeout_sec
        start = time.monotonic()
        try:
            content, token_count = await asyncio.wait_for(self._complete(prompt), timeout=timeout)
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name,
                f"Request timed out after {timeout:g}s",
                ErrorCategory.TIMEOUT,
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            translated = self._sdk_error(exc)
            if translated is not None:
                raise translated from exc
            # other SDK errors carry the HTTP status in the message
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start
        logger.info("%s %s: %.2fs, %s tokens", self.display_name, label, latency, token_count)

        return ProviderReply(
            provider=self._config.name,
            model=self._config.model,
            content=content,
            latency_sec=latency,
            token_count=token_count,
        )
