"""Google generate content API (Gemini).

Streaming requests ask for `alt=sse` and receive `data: <json>` events
separated by "\\r\\n\\r\\n". There is no end-of-stream sentinel; the stream
simply closes after the last candidate chunk.

See: https://ai.google.dev/api/rest/v1/models/streamGenerateContent
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

import httpx

from streaming import (
    CancellationToken,
    decode_frames,
    is_crlf_event_boundary,
    map_chunks,
    parse_sse_data,
)

from ..http import post_json, stream_post

GOOGLE_GENERATE_CONTENT_API_URL = "https://generativelanguage.googleapis.com/v1"


def create_url(
    model: str,
    stream: bool,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
) -> str:
    """Build the generateContent or streamGenerateContent URL for a model."""
    method = "streamGenerateContent" if stream else "generateContent"
    params = {}
    if api_key:
        params["key"] = api_key
    if stream:
        params["alt"] = "sse"
    query = f"?{urlencode(params)}" if params else ""
    return f"{api_url or GOOGLE_GENERATE_CONTENT_API_URL}/models/{model}:{method}{query}"


def _headers(extra: Optional[dict] = None) -> dict:
    return {"content-type": "application/json", **(extra or {})}


def _split_model(request: dict) -> tuple[str, dict]:
    # The model goes in the URL, not the body
    body = dict(request)
    return body.pop("model"), body


def parse_chunk(frame: str) -> Optional[dict]:
    return parse_sse_data(frame, provider="Google")


def chunk_to_token(chunk: dict) -> str:
    """Text of the first part of the first candidate.

    Chunks without candidates (e.g. prompt feedback only) or without parts
    give "".
    """
    candidates = chunk.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    if not parts:
        return ""
    return parts[0].get("text") or ""


def run(
    request: dict,
    *,
    api_key: Optional[str] = None,
    api_url: Optional[str] = None,
    headers: Optional[dict] = None,
) -> dict:
    """Run a non-streaming generation and return the response JSON."""
    model, body = _split_model(request)
    return post_json(
        create_url(model, stream=False, api_key=api_key, api_url=api_url),
        _headers(headers),
        body,
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
    model, body = _split_model(request)
    return await stream_post(
        create_url(model, stream=True, api_key=api_key, api_url=api_url),
        _headers(headers),
        body,
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
    return decode_frames(byte_stream, is_crlf_event_boundary, parse_chunk, cancel_token)


async def stream_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    chunks = await stream(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, chunk_to_token)
