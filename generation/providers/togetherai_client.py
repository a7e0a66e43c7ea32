"""TogetherAI inference API.

Streams `data: <json>` events separated by blank lines and ends with
`data: [DONE]`. Models emit their end-of-sequence marker as an ordinary
token; it is dropped from the token stream.

See: https://docs.together.ai/reference/inference
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import httpx

from streaming import (
    CancellationToken,
    decode_frames,
    is_blank_line_boundary,
    map_chunks,
    parse_sse_data,
)

from ..http import bearer_headers, post_json, stream_post

TOGETHERAI_INFERENCE_ENDPOINT = "https://api.together.xyz/inference"

STOP_TOKENS = frozenset({"</s>"})


def parse_chunk(frame: str) -> Optional[dict]:
    return parse_sse_data(frame, provider="TogetherAI")


def chunk_to_token(chunk: dict) -> str:
    """Text of the first choice, with stop markers and special tokens removed."""
    token = chunk.get("token") or {}
    if token.get("special"):
        return ""

    choices = chunk.get("choices") or []
    text = (choices[0].get("text") if choices else None) or ""
    if text in STOP_TOKENS:
        return ""
    return text


def run(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
) -> dict:
    """Run a non-streaming inference and return the response JSON."""
    return post_json(
        api_url or TOGETHERAI_INFERENCE_ENDPOINT,
        bearer_headers(api_key, headers),
        {**request, "stream_tokens": False},
    )


async def stream_bytes(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    return await stream_post(
        api_url or TOGETHERAI_INFERENCE_ENDPOINT,
        bearer_headers(api_key, headers),
        {**request, "stream_tokens": True},
        client=client,
        cancel_token=cancel_token,
    )


async def stream(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[dict]:
    byte_stream = await stream_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_blank_line_boundary, parse_chunk, cancel_token)


async def stream_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    chunks = await stream(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, chunk_to_token)
