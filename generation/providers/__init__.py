"""LLM provider implementations.

This package contains client implementations for various LLM providers:
- OpenAI (GPT-4, GPT-4o, etc.) and Azure OpenAI
- Anthropic (Claude)
- Ollama (local/offline models)
- Cohere, TogetherAI and HuggingFace text generation
- Google generate content (Gemini)

Every provider module exposes module-level functions at three levels of
streaming granularity (raw bytes, parsed chunks, text tokens) plus a
non-streaming call. OpenAI, Anthropic and Ollama also provide client classes
implementing the protocols defined in generation.base.
"""

from .anthropic_client import AnthropicClient, AnthropicConfig
from .ollama_client import OllamaClient, OllamaConfig
from .openai_client import OpenAIClient, OpenAIConfig

__all__ = [
    "OpenAIClient",
    "OpenAIConfig",
    "AnthropicClient",
    "AnthropicConfig",
    "OllamaClient",
    "OllamaConfig",
]
