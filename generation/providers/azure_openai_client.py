"""Azure OpenAI chat completions.

Azure serves the OpenAI wire format from per-deployment URLs and
authenticates with an `api-key` header. The first streamed chunk usually
holds only `prompt_filter_results` and an empty `choices` list.

See: https://learn.microsoft.com/en-us/azure/ai-services/openai/reference
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Optional, Union

import httpx

from streaming import CancellationToken, decode_frames, is_blank_line_boundary, map_chunks

from ..http import post_json, stream_post
from .openai_client import chat_chunk_to_token, parse_chunk

API_VERSION = "2023-05-15"

DeploymentUrl = Union[str, dict]


def create_url(api_url: DeploymentUrl) -> str:
    """Resolve a URL string or a {resource_name, deployment_id} mapping."""
    if isinstance(api_url, str):
        return api_url
    return (
        f"https://{api_url['resource_name']}.openai.azure.com/openai/deployments/"
        f"{api_url['deployment_id']}/chat/completions?api-version={API_VERSION}"
    )


def headers(api_key: Optional[str] = None, extra: Optional[dict] = None) -> dict:
    result = {
        "accept": "application/json",
        "content-type": "application/json",
        **(extra or {}),
    }
    if isinstance(api_key, str):
        result["api-key"] = api_key
    return result


chunk_to_token = chat_chunk_to_token


def run(
    request: dict,
    *,
    api_key: str,
    api_url: DeploymentUrl,
    headers_: Optional[dict] = None,
) -> dict:
    """Run a non-streaming chat completion and return the response JSON."""
    return post_json(
        create_url(api_url),
        headers(api_key, headers_),
        {**request, "stream": False},
    )


async def stream_bytes(
    request: dict,
    *,
    api_key: str,
    api_url: DeploymentUrl,
    headers_: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[bytes]:
    return await stream_post(
        create_url(api_url),
        headers(api_key, headers_),
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
    return decode_frames(byte_stream, is_blank_line_boundary, parse_chunk, cancel_token)


async def stream_tokens(
    request: dict,
    *,
    cancel_token: Optional[CancellationToken] = None,
    **options: Any,
) -> AsyncIterator[str]:
    chunks = await stream(request, cancel_token=cancel_token, **options)
    return map_chunks(chunks, chunk_to_token)
