"""HuggingFace text-generation inference API.

The streaming format is `data: <json>` events separated by blank lines,
where each chunk carries one generated token. Special tokens such as the
end-of-sequence marker are dropped from the token stream.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from streaming import (
    CancellationToken,
    decode_frames,
    is_blank_line_boundary,
    map_chunks,
    parse_sse_data,
)

from ..http import HttpError, bearer_headers, post_json, stream_post

logger = logging.getLogger(__name__)

HF_MODEL_API_URL = "https://api-inference.huggingface.co/models/"


def _url(request: dict, api_url: Optional[str]) -> str:
    return api_url or HF_MODEL_API_URL + request["model"]


def parse_chunk(frame: str) -> Optional[dict]:
    return parse_sse_data(frame, provider="HuggingFace")


def chunk_to_token(chunk: dict) -> str:
    token = chunk.get("token") or {}
    if token.get("special"):
        return ""
    return token.get("text") or ""


def run(
    request: dict,
    *,
    access_token: Optional[str] = None,
    api_url: Optional[str] = None,
) -> Any:
    """Run a non-streaming text generation and return the response JSON."""
    return post_json(
        _url(request, api_url),
        bearer_headers(access_token),
        {**request, "stream": False},
    )


async def stream_bytes(
    request: dict,
    *,
    access_token: Optional[str] = None,
    api_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    """Stream a text generation as raw bytes.

    Raises:
        HttpError: With a clearer message when the model does not support
            streaming.
    """
    try:
        return await stream_post(
            _url(request, api_url),
            bearer_headers(access_token),
            {**request, "stream": True},
            client=client,
            cancel_token=cancel_token,
        )
    except HttpError as e:
        if "`stream` is not supported for this model" in e.body:
            logger.warning("Model %s does not support streaming", request["model"])
            raise HttpError(
                f"Model '{request['model']}' does not support streaming",
                status_code=e.status_code,
                body=e.body,
            ) from e
        raise


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
