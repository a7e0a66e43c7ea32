"""Factory function for creating LLM clients.

This module provides a factory function that instantiates the correct LLM
client based on configuration. Every client it returns implements both
BaseLLMClient (synchronous chat) and StreamingLLMClient (token streaming).
"""

from __future__ import annotations

import os
from typing import Optional

from .base import StreamingLLMClient


# Supported provider names
PROVIDERS = frozenset({"openai", "anthropic", "ollama"})

DEFAULT_PROVIDER = "openai"

PROVIDER_INFO = {
    "openai": {
        "env": ["OPENAI_API_KEY", "OPENAI_MODEL", "OPENAI_API_URL"],
        "framing": "blank-line separated `data:` events ending with [DONE]",
    },
    "anthropic": {
        "env": ["ANTHROPIC_API_KEY", "ANTHROPIC_MODEL", "ANTHROPIC_API_URL"],
        "framing": "`event:`/`data:` pairs",
    },
    "ollama": {
        "env": ["OLLAMA_BASE_URL", "OLLAMA_MODEL"],
        "framing": "one JSON object per line",
    },
}


class ProviderError(Exception):
    """Error related to LLM provider configuration."""

    pass


def create_llm_client(provider: Optional[str] = None) -> StreamingLLMClient:
    """Create an LLM client based on the specified provider.

    If no provider is specified, it reads from the LLM_PROVIDER environment
    variable, defaulting to 'openai'.

    Args:
        provider: Provider name. One of: openai, anthropic, ollama.
                  If None, reads from LLM_PROVIDER env var (default: openai).

    Returns:
        An LLM client implementing the StreamingLLMClient protocol.

    Raises:
        ProviderError: If the provider is unknown or configuration is invalid.

    Examples:
        # Use default provider (from env or 'openai')
        client = create_llm_client()

        # Stream tokens
        async for token in create_llm_client("ollama").stream_generate("Hi"):
            print(token, end="")
    """
    provider = provider or os.getenv("LLM_PROVIDER", DEFAULT_PROVIDER)
    provider = provider.lower().strip()

    if provider not in PROVIDERS:
        raise ProviderError(
            f"Unknown LLM provider: '{provider}'. "
            f"Supported providers: {', '.join(sorted(PROVIDERS))}"
        )

    try:
        if provider == "openai":
            return _create_openai_client()
        elif provider == "anthropic":
            return _create_anthropic_client()
        elif provider == "ollama":
            return _create_ollama_client()
        else:
            raise ProviderError(f"Provider '{provider}' is not implemented")
    except ValueError as e:
        raise ProviderError(f"Failed to configure {provider} provider: {e}") from e


def _create_openai_client() -> StreamingLLMClient:
    """Create an OpenAI client."""
    from .providers.openai_client import OpenAIClient

    return OpenAIClient()


def _create_anthropic_client() -> StreamingLLMClient:
    """Create an Anthropic client."""
    from .providers.anthropic_client import AnthropicClient

    return AnthropicClient()


def _create_ollama_client() -> StreamingLLMClient:
    """Create an Ollama client."""
    from .providers.ollama_client import OllamaClient

    return OllamaClient()


def get_available_providers() -> list[str]:
    """Get list of available provider names.

    Returns:
        Sorted list of provider names.
    """
    return sorted(PROVIDERS)


def get_provider_info(provider: str) -> dict:
    """Describe a provider's configuration variables and stream framing.

    Raises:
        ProviderError: If the provider is unknown.
    """
    info = PROVIDER_INFO.get(provider.lower().strip())
    if info is None:
        raise ProviderError(f"Unknown LLM provider: '{provider}'")
    return {"name": provider.lower().strip(), **info}
