"""OpenAI LLM client implementation.

Synchronous chat goes through the official `openai` SDK. Streaming goes
through the raw HTTP API so the byte stream can be decoded incrementally;
module-level functions expose it at three levels:

    stream_chat_bytes   -> raw bytes from the API
    stream_chat         -> parsed chunk dicts
    stream_chat_tokens  -> plain text tokens

and the same for the legacy completions endpoint.
"""

from __future__ import annotations

import os
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from streaming import (
    CancellationToken,
    decode_frames,
    is_blank_line_boundary,
    map_chunks,
    parse_sse_data,
)

from ..base import LLMClientError, LLMResponse, Message, build_messages
from ..http import bearer_headers, post_json, stream_post

OPENAI_CHAT_COMPLETIONS_API_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_COMPLETIONS_API_URL = "https://api.openai.com/v1/completions"


def parse_chunk(frame: str) -> Optional[dict]:
    """Parse one `data: ...` frame. `[DONE]` and blank frames give None."""
    return parse_sse_data(frame, provider="OpenAI")


def _first_choice(chunk: dict) -> dict:
    choices = chunk.get("choices") or []
    return choices[0] if choices else {}


def chat_chunk_to_token(chunk: dict) -> str:
    """Text delta of a chat chunk. Role-only deltas and empty choices give ""."""
    delta = _first_choice(chunk).get("delta") or {}
    return delta.get("content") or ""


def completion_chunk_to_token(chunk: dict) -> str:
    return _first_choice(chunk).get("text") or ""


def run_chat(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
) -> dict:
    """Run a non-streaming chat completion and return the response JSON."""
    return post_json(
        api_url or OPENAI_CHAT_COMPLETIONS_API_URL,
        bearer_headers(api_key, headers),
        {**request, "stream": False},
    )


async def stream_chat_bytes(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    """Run a streaming chat completion and return the raw response bytes."""
    return await stream_post(
        api_url or OPENAI_CHAT_COMPLETIONS_API_URL,
        bearer_headers(api_key, headers),
        {**request, "stream": True},
        client=client,
        cancel_token=cancel_token,
    )


async def stream_chat(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[dict]:
    """Run a streaming chat completion and return the parsed chunks."""
    byte_stream = await stream_chat_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_blank_line_boundary, parse_chunk, cancel_token)


async def stream_chat_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    """Run a streaming chat completion and return only the text tokens."""
    chunks = await stream_chat(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, chat_chunk_to_token)


def run_completion(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
) -> dict:
    """Run a non-streaming completion and return the response JSON."""
    return post_json(
        api_url or OPENAI_COMPLETIONS_API_URL,
        bearer_headers(api_key, headers),
        {**request, "stream": False},
    )


async def stream_completion_bytes(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    return await stream_post(
        api_url or OPENAI_COMPLETIONS_API_URL,
        bearer_headers(api_key, headers),
        {**request, "stream": True},
        client=client,
        cancel_token=cancel_token,
    )


async def stream_completion(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[dict]:
    byte_stream = await stream_completion_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_blank_line_boundary, parse_chunk, cancel_token)


async def stream_completion_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    chunks = await stream_completion(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, completion_chunk_to_token)


@dataclass
class OpenAIConfig:
    """Configuration for OpenAI API client."""

    api_key: str
    model: str = "gpt-4o"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: int = 60
    api_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        """Create config from environment variables."""
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        return cls(
            api_key=api_key,
            model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            api_url=os.getenv("OPENAI_API_URL") or None,
        )


class OpenAIClient:
    """OpenAI API client implementing the StreamingLLMClient protocol."""

    def __init__(
        self,
        config: Optional[OpenAIConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the OpenAI client.

        Args:
            config: OpenAI configuration. If None, loads from environment.
            http_client: Optional shared async client used for streaming.
        """
        self.config = config or OpenAIConfig.from_env()
        self.http_client = http_client
        self._client = None

    def _get_client(self):
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise LLMClientError(
                    "OpenAI package not installed. "
                    "Install with: pip install openai"
                )
            self._client = OpenAI(
                api_key=self.config.api_key,
                timeout=self.config.timeout,
            )
        return self._client

    def _build_request(
        self,
        messages: list[Message],
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> dict:
        return {
            "model": self.config.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature,
        }

    def chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Send a chat request to OpenAI API.

        Args:
            messages: List of chat messages.
            max_tokens: Override default max tokens.
            temperature: Override default temperature.

        Returns:
            LLM response.

        Raises:
            LLMClientError: If the API request fails.
        """
        client = self._get_client()

        try:
            response = client.chat.completions.create(
                **self._build_request(messages, max_tokens, temperature)
            )
        except Exception as e:
            raise LLMClientError(f"OpenAI API request failed: {e}") from e

        content = response.choices[0].message.content or ""

        usage = None
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return LLMResponse(
            content=content,
            model=response.model,
            usage=usage,
            raw_response=response.model_dump() if hasattr(response, "model_dump") else None,
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
        """Stream a chat completion as text tokens."""
        tokens = await stream_chat_tokens(
            self._build_request(messages, max_tokens, temperature),
            api_key=self.config.api_key,
            api_url=self.config.api_url,
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
        """Stream the response to a single prompt as text tokens."""
        messages = build_messages(prompt, system_prompt)
        async for token in self.stream_chat(
            messages, max_tokens=max_tokens, temperature=temperature, cancel_token=cancel_token
        ):
            yield token
