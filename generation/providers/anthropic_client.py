"""Anthropic (Claude) LLM client implementation.

Two streaming endpoints are supported:

- the text completions API (`/v1/complete`), whose events are framed as
  `event: <type>\\r\\ndata: <json>\\r\\n\\r\\n`;
- the messages API (`/v1/messages`), whose events are framed the same way
  but separated by a blank line.

Both carry `ping` heartbeats, which contribute no text, and may carry an
`error` event, which is raised as ProviderStreamError.
"""

from __future__ import annotations

import os
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from streaming import (
    CancellationToken,
    ProviderStreamError,
    decode_frames,
    is_blank_line_boundary,
    is_crlf_event_boundary,
    map_chunks,
    parse_event_pair,
)

from ..base import LLMClientError, LLMResponse, Message, build_messages
from ..http import post_json, stream_post

ANTHROPIC_COMPLETE_API_URL = "https://api.anthropic.com/v1/complete"
ANTHROPIC_MESSAGES_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


def headers(
    api_key: Optional[str] = None,
    version: Optional[str] = None,
    extra: Optional[dict] = None,
) -> dict:
    result = {
        "accept": "application/json",
        "content-type": "application/json",
        **(extra or {}),
        "anthropic-version": version or ANTHROPIC_VERSION,
    }
    if isinstance(api_key, str):
        result["x-api-key"] = api_key
    return result


def parse_chunk(frame: str) -> Optional[dict]:
    """Parse one event frame into {"event": ..., "data": ...}.

    Raises:
        StreamDecodeError: If the frame lacks the event/data pair.
        ProviderStreamError: If the event is an `error` event.
    """
    event = parse_event_pair(frame, provider="Anthropic")
    if event is not None and event["event"] == "error":
        error = event["data"].get("error") or {}
        raise ProviderStreamError(
            error.get("type", "error"),
            error.get("message", "Anthropic reported an error"),
        )
    return event


def completion_chunk_to_token(chunk: dict) -> str:
    """Text of a `completion` event; every other event gives ""."""
    if chunk["event"] != "completion":
        return ""
    return chunk["data"].get("completion") or ""


def message_chunk_to_token(chunk: dict) -> str:
    """Text of a `content_block_delta` text delta; every other event gives ""."""
    if chunk["event"] != "content_block_delta":
        return ""
    delta = chunk["data"].get("delta") or {}
    if delta.get("type") != "text_delta":
        return ""
    return delta.get("text") or ""


def run_completion(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    version: Optional[str] = None,
    headers_: Optional[dict] = None,
) -> dict:
    """Run a non-streaming completion and return the response JSON."""
    return post_json(
        api_url or ANTHROPIC_COMPLETE_API_URL,
        headers(api_key, version, headers_),
        {**request, "stream": False},
    )


async def stream_completion_bytes(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    version: Optional[str] = None,
    headers_: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    """Run a streaming completion and return the raw response bytes."""
    return await stream_post(
        api_url or ANTHROPIC_COMPLETE_API_URL,
        headers(api_key, version, headers_),
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
    """Run a streaming completion and return the parsed events."""
    byte_stream = await stream_completion_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_crlf_event_boundary, parse_chunk, cancel_token)


async def stream_completion_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    """Run a streaming completion and return only the text tokens."""
    events = await stream_completion(request, cancel_token=cancel_token, **options)
    return map_chunks(events, completion_chunk_to_token)


async def stream_messages_bytes(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    version: Optional[str] = None,
    headers_: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    return await stream_post(
        api_url or ANTHROPIC_MESSAGES_API_URL,
        headers(api_key, version, headers_),
        {**request, "stream": True},
        client=client,
        cancel_token=cancel_token,
    )


async def stream_messages(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[dict]:
    byte_stream = await stream_messages_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_blank_line_boundary, parse_chunk, cancel_token)


async def stream_messages_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    events = await stream_messages(request, cancel_token=cancel_token, **options)
    return map_chunks(events, message_chunk_to_token)


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    api_key: str
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: int = 60
    api_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AnthropicConfig":
        """Create config from environment variables."""
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        return cls(
            api_key=api_key,
            model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"),
            api_url=os.getenv("ANTHROPIC_API_URL") or None,
        )


class AnthropicClient:
    """Anthropic API client implementing the StreamingLLMClient protocol."""

    def __init__(
        self,
        config: Optional[AnthropicConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the Anthropic client.

        Args:
            config: Anthropic configuration. If None, loads from environment.
            http_client: Optional shared async client used for streaming.
        """
        self.config = config or AnthropicConfig.from_env()
        self.http_client = http_client
        self._client = None

    def _get_client(self):
        """Lazy initialization of Anthropic client."""
        if self._client is None:
            try:
                from anthropic import Anthropic
            except ImportError:
                raise LLMClientError(
                    "Anthropic package not installed. "
                    "Install with: pip install anthropic"
                )
            self._client = Anthropic(
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
        # Anthropic expects system prompt separately
        system_prompt = None
        anthropic_messages = []

        for m in messages:
            if m.role == "system":
                system_prompt = m.content
            else:
                anthropic_messages.append({"role": m.role, "content": m.content})

        request = {
            "model": self.config.model,
            "messages": anthropic_messages,
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature,
        }
        if system_prompt:
            request["system"] = system_prompt
        return request

    def chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Send a chat request to Anthropic API.

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
            response = client.messages.create(
                **self._build_request(messages, max_tokens, temperature)
            )
        except Exception as e:
            raise LLMClientError(f"Anthropic API request failed: {e}") from e

        # Extract content from response
        content = ""
        if response.content:
            content = response.content[0].text

        usage = None
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
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
        """Stream a messages API response as text tokens."""
        tokens = await stream_messages_tokens(
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
        messages = build_messages(prompt, system_prompt)
        async for token in self.stream_chat(
            messages, max_tokens=max_tokens, temperature=temperature, cancel_token=cancel_token
        ):
            yield token
