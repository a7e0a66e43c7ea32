"""Base protocols/interfaces for LLM clients.

This module defines the BaseLLMClient protocol that all LLM providers must
implement, and the StreamingLLMClient protocol for providers that can stream
tokens. Using Python's Protocol for structural subtyping allows existing
classes to be compatible without explicit inheritance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from streaming import CancellationToken


@dataclass
class Message:
    """A chat message."""

    role: str
    content: str


@dataclass
class LLMResponse:
    """Response from any LLM provider."""

    content: str
    model: Optional[str] = None
    usage: Optional[dict] = None
    raw_response: Optional[dict] = field(default=None, repr=False)


class LLMClientError(Exception):
    """Error from an LLM API client."""

    pass


def build_messages(prompt: str, system_prompt: Optional[str] = None) -> list[Message]:
    """Build the message list for a single-turn prompt."""
    messages = []
    if system_prompt:
        messages.append(Message(role="system", content=system_prompt))
    messages.append(Message(role="user", content=prompt))
    return messages


@runtime_checkable
class BaseLLMClient(Protocol):
    """Protocol defining the interface for LLM clients.

    All LLM provider implementations must support these methods.
    Uses structural subtyping - any class with matching methods is compatible.
    """

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Generate a response from a prompt.

        Args:
            prompt: The user prompt/question.
            system_prompt: Optional system instructions.
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature (0.0-1.0).

        Returns:
            Generated text content.
        """
        ...

    def chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> LLMResponse:
        """Send a chat request with multiple messages.

        Args:
            messages: List of chat messages with role and content.
            max_tokens: Maximum tokens in response.
            temperature: Sampling temperature (0.0-1.0).

        Returns:
            LLM response with content and metadata.
        """
        ...


@runtime_checkable
class StreamingLLMClient(BaseLLMClient, Protocol):
    """Protocol for clients that can stream plain-text tokens."""

    def stream_chat(
        self,
        messages: list[Message],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> AsyncIterator[str]:
        """Stream the response to a chat request as text tokens.

        Tokens may be empty strings for frames that carry no text.
        """
        ...

    def stream_generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> AsyncIterator[str]:
        """Stream the response to a single prompt as text tokens."""
        ...
