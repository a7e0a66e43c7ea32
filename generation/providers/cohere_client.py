"""Cohere generation API.

Cohere streams one JSON object per line. `is_finished` is a data field on
the last object, not a framing marker; that object carries the full response
and no `text`.

See: https://docs.cohere.com/reference/generate
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional

import httpx

from streaming import (
    CancellationToken,
    decode_frames,
    is_line_boundary,
    map_chunks,
    parse_json_line,
)

from ..http import bearer_headers, post_json, stream_post

COHERE_API_URL = "https://api.cohere.ai/v1/generate"


def parse_chunk(line: str) -> Optional[dict]:
    return parse_json_line(line, provider="Cohere")


def chunk_to_token(chunk: dict) -> str:
    return chunk.get("text") or ""


def run(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
) -> dict:
    """Run a non-streaming generation and return the response JSON."""
    return post_json(
        api_url or COHERE_API_URL,
        bearer_headers(api_key, headers),
        {**request, "stream": False},
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
        api_url or COHERE_API_URL,
        bearer_headers(api_key, headers),
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
    byte_stream = await stream_bytes(request, cancel_token=cancel_token, **options)
    return decode_frames(byte_stream, is_line_boundary, parse_chunk, cancel_token)


async def stream_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    chunks = await stream(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, chunk_to_token)
