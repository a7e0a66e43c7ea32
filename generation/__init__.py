"""Generation module for RAG response generation.

This module provides LLM clients and the RAG chain for document-based Q&A.
Responses can be fetched whole or streamed token by token; streamed RAG
answers are serialized as newline-delimited JSON for downstream clients.

Providers:
    - openai: OpenAI API (GPT-4, GPT-4o, etc.)
    - anthropic: Anthropic API (Claude)
    - ollama: Local Ollama server

Usage:
    # Use factory to get client based on LLM_PROVIDER env var
    from generation import create_llm_client, RAGChain
    client = create_llm_client()
    rag = RAGChain(client)

    # Or explicitly specify provider
    client = create_llm_client("openai")
"""

from .base import (
    BaseLLMClient,
    LLMClientError,
    LLMResponse,
    Message,
    StreamingLLMClient,
)
from .factory import ProviderError, create_llm_client, get_available_providers, get_provider_info
from .http import HttpError
from .rag_chain import RAGChain, RAGConfig, RAGResponse

__all__ = [
    # Core types
    "LLMResponse",
    "LLMClientError",
    "HttpError",
    "Message",
    # Protocols
    "BaseLLMClient",
    "StreamingLLMClient",
    # Factory
    "create_llm_client",
    "get_available_providers",
    "get_provider_info",
    "ProviderError",
    # RAG
    "RAGChain",
    "RAGConfig",
    "RAGResponse",
]
