"""Unit tests for the LLM client factory."""
from __future__ import annotations

import pytest

from generation import (
    ProviderError,
    StreamingLLMClient,
    create_llm_client,
    get_available_providers,
    get_provider_info,
)
from generation.providers import AnthropicClient, OllamaClient, OpenAIClient


class TestCreateClient:
    """Tests for provider selection."""

    def test_available_providers(self):
        """Providers are listed in sorted order."""
        assert get_available_providers() == ["anthropic", "ollama", "openai"]

    def test_openai_from_env(self, monkeypatch):
        """The OpenAI client reads its key and model from the environment."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setenv("OPENAI_MODEL", "gpt-4o-mini")
        client = create_llm_client("openai")
        assert isinstance(client, OpenAIClient)
        assert client.config.model == "gpt-4o-mini"

    def test_default_provider(self, monkeypatch):
        """LLM_PROVIDER picks the provider when none is given."""
        monkeypatch.setenv("LLM_PROVIDER", " Ollama ")
        assert isinstance(create_llm_client(), OllamaClient)

    def test_anthropic(self, monkeypatch):
        """Provider names are case-insensitive."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak")
        assert isinstance(create_llm_client("ANTHROPIC"), AnthropicClient)

    def test_missing_key(self, monkeypatch):
        """A missing API key is a configuration error."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
            create_llm_client("openai")

    def test_unknown_provider(self):
        """Unknown providers are rejected with the supported list."""
        with pytest.raises(ProviderError, match="Supported providers"):
            create_llm_client("palm")

    @pytest.mark.parametrize("provider", ["openai", "anthropic", "ollama"])
    def test_clients_stream(self, monkeypatch, provider):
        """Every client the factory returns can stream tokens."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ak")
        assert isinstance(create_llm_client(provider), StreamingLLMClient)


class TestProviderInfo:
    """Tests for provider descriptions."""

    def test_known_provider(self):
        """Info names the provider's environment variables."""
        info = get_provider_info("Ollama")
        assert info["name"] == "ollama"
        assert "OLLAMA_BASE_URL" in info["env"]

    def test_unknown_provider(self):
        """Unknown providers raise ProviderError."""
        with pytest.raises(ProviderError):
            get_provider_info("nope")
