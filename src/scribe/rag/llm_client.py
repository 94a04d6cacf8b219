"""LiteLLM-backed embedding and completion providers, plus API key validation.

All model calls in the pipeline go through the provider protocols defined
here, so tests and alternative backends can substitute their own objects.
LiteLLM's built-in retry is used for transport-level failures
(``num_retries``); the embedding batcher adds its own bounded retry on top.
"""

from __future__ import annotations

import logging
import os
from typing import AsyncIterator, Protocol

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required (e.g. ollama), or provider unknown to us

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Provider protocols
# ------------------------------------------------------------------


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]: ...


class CompletionProvider(Protocol):
    async def complete(
        self, messages: list[dict], max_tokens: int, temperature: float
    ) -> str: ...

    def stream(
        self, messages: list[dict], max_tokens: int, temperature: float
    ) -> AsyncIterator[str]: ...


# ------------------------------------------------------------------
# LiteLLM implementations
# ------------------------------------------------------------------


class LiteLLMEmbeddingProvider:
    """Embeds a batch of texts with one ``litellm.aembedding()`` call."""

    def __init__(self, model: str, num_retries: int = 0) -> None:
        self.model = model
        self.num_retries = num_retries

    async def embed(self, texts: list[str]) -> list[list[float]]:
        response = await litellm.aembedding(
            model=self.model,
            input=texts,
            num_retries=self.num_retries,
        )
        return [item["embedding"] for item in response.data]


class LiteLLMCompletionProvider:
    """Chat completions through ``litellm.acompletion()``.

    Args:
        model: LiteLLM model string (provider/model format).
        num_retries: Retries on transient errors (exponential backoff).
    """

    def __init__(self, model: str, num_retries: int = 3) -> None:
        self.model = model
        self.num_retries = num_retries

    async def complete(
        self, messages: list[dict], max_tokens: int = 2048, temperature: float = 0.7
    ) -> str:
        response = await litellm.acompletion(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=self.num_retries,
        )
        return response.choices[0].message.content or ""

    async def stream(
        self, messages: list[dict], max_tokens: int = 2048, temperature: float = 0.7
    ) -> AsyncIterator[str]:
        """Yield content deltas as they arrive.

        Closing the generator (``aclose()``) closes the underlying response.
        """
        response = await litellm.acompletion(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            num_retries=self.num_retries,
            stream=True,
        )
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            aclose = getattr(response, "aclose", None)
            if aclose is not None:
                await aclose()
