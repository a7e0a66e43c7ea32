"""Ollama LLM client implementation for local/offline use.

Ollama streams one JSON object per line. The final object of a response has
`done` set and carries timing statistics instead of text.

See: https://github.com/ollama/ollama/blob/main/docs/api.md
"""

from __future__ import annotations

import json
import os
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx
import requests

from streaming import (
    CancellationToken,
    decode_frames,
    is_line_boundary,
    map_chunks,
    parse_json_line,
)

from ..base import LLMClientError, LLMResponse, Message, build_messages
from ..http import stream_post

OLLAMA_BASE_URL = "http://localhost:11434"


def parse_chunk(line: str) -> Optional[dict]:
    return parse_json_line(line, provider="Ollama")


def generation_chunk_to_token(chunk: dict) -> str:
    """Text of a /api/generate chunk; the final `done` chunk gives ""."""
    if chunk.get("done"):
        return ""
    return chunk.get("response") or ""


def chat_chunk_to_token(chunk: dict) -> str:
    """Text of a /api/chat chunk; the final `done` chunk gives ""."""
    if chunk.get("done"):
        return ""
    message = chunk.get("message") or {}
    return message.get("content") or ""


async def stream_bytes(
    request: dict,
    *,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    """Stream a generation from /api/generate as raw bytes."""
    return await stream_post(
        api_url or f"{OLLAMA_BASE_URL}/api/generate",
        headers or {},
        {**request, "stream": True},
        client=client,
        cancel_token=cancel_token,
    )


async def stream(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[dict]:
    """Stream a generation from /api/generate as parsed chunks."""
    byte_stream = await stream_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_line_boundary, parse_chunk, cancel_token)


async def stream_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    """Stream a generation from /api/generate as text tokens."""
    chunks = await stream(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, generation_chunk_to_token)


async def stream_chat_tokens(
    request: dict,
    *,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[str]:
    """Stream a chat response from /api/chat as text tokens."""
    byte_stream = await stream_post(
        api_url or f"{OLLAMA_BASE_URL}/api/chat",
        headers or {},
        {**request, "stream": True},
        client=client,
        cancel_token=cancel_token,
    )
    chunks = decode_frames(byte_stream, is_line_boundary, parse_chunk, cancel_token)
    return map_chunks(chunks, chat_chunk_to_token)


@dataclass
class OllamaConfig:
    """Configuration for Ollama API client."""

    base_url: str = OLLAMA_BASE_URL
    model: str = "llama3.2"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: int = 120  # Longer timeout for local models

    @classmethod
    def from_env(cls) -> "OllamaConfig":
        """Create config from environment variables."""
        return cls(
            base_url=os.getenv("OLLAMA_BASE_URL", OLLAMA_BASE_URL),
            model=os.getenv("OLLAMA_MODEL", "llama3.2"),
        )


class OllamaClient:
    """Ollama API client implementing the StreamingLLMClient protocol.

    Ollama is a local LLM server for running models offline.
    See: https://ollama.ai/
    """

    def __init__(
        self,
        config: Optional[OllamaConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the Ollama client.

        Args:
            config: Ollama configuration. If None, loads from environment.
            http_client: Optional shared async client used for streaming.
        """
        self.config = config or OllamaConfig.from_env()
        self.http_client = http_client

    def _build_request(
        self,
        messages: list[Message],
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> dict:
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "options": {
                "num_predict": max_tokens or self.config.max_tokens,
                "temperature": temperature if temperature is not None else self.config.temperature,
            },
        }

    def chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Send a chat request to Ollama API.

        Args:
            messages: List of chat messages.
            max_tokens: Override default max tokens (maps to num_predict).
            temperature: Override default temperature.

        Returns:
            LLM response.

        Raises:
            LLMClientError: If the API request fails.
        """
        url = f"{self.config.base_url}/api/chat"
        request_body = {**self._build_request(messages, max_tokens, temperature), "stream": False}

        try:
            response = requests.post(
                url,
                json=request_body,
                timeout=self.config.timeout,
            )
        except requests.ConnectionError as e:
            raise LLMClientError(
                f"Could not connect to Ollama at {self.config.base_url}. "
                "Make sure Ollama is running: ollama serve"
            ) from e
        except requests.RequestException as e:
            raise LLMClientError(f"Ollama API request failed: {e}") from e

        if response.status_code != 200:
            raise LLMClientError(
                f"Ollama API returned status code {response.status_code}: {response.text}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise LLMClientError(f"Invalid JSON response from Ollama: {e}") from e

        try:
            content = data["message"]["content"]
        except KeyError as e:
            raise LLMClientError(f"Unexpected Ollama response format: {e}") from e

        # Extract usage info if available
        usage = None
        if "eval_count" in data or "prompt_eval_count" in data:
            usage = {
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
                "total_tokens": data.get("prompt_eval_count", 0) + data.get("eval_count", 0),
            }

        return LLMResponse(
            content=content,
            model=data.get("model"),
            usage=usage,
            raw_response=data,
        )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Simple generation interface."""
        messages = build_messages(prompt, system_prompt)
        response = self.chat(messages, max_tokens=max_tokens, temperature=temperature)
        return response.content

    async def stream_chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat response as text tokens."""
        tokens = await stream_chat_tokens(
            self._build_request(messages, max_tokens, temperature),
            api_url=f"{self.config.base_url}/api/chat",
            client=self.http_client,
            cancel_token=cancel_token,
        )
        async with aclosing(tokens):
            async for token in tokens:
                yield token

    async def stream_generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        messages = build_messages(prompt, system_prompt)
        async for token in self.stream_chat(
            messages, max_tokens=max_tokens, temperature=temperature, cancel_token=cancel_token
        ):
            yield token

    def is_available(self) -> bool:
        """Check if Ollama server is running and accessible.

        Returns:
            True if Ollama is available, False otherwise.
        """
        try:
            response = requests.get(
                f"{self.config.base_url}/api/tags",
                timeout=5,
            )
            return response.status_code == 200
        except requests.RequestException:
            return False

    def list_models(self) -> list[str]:
        """List available models on the Ollama server.

        Returns:
            List of model names.

        Raises:
            LLMClientError: If the request fails.
        """
        try:
            response = requests.get(
                f"{self.config.base_url}/api/tags",
                timeout=10,
            )
        except requests.RequestException as e:
            raise LLMClientError(f"Failed to list Ollama models: {e}") from e

        if response.status_code != 200:
            raise LLMClientError(f"Failed to list models: {response.text}")

        data = response.json()
        return [model["name"] for model in data.get("models", [])]
