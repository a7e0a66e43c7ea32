"""HTTP transport shared by the provider modules.

Synchronous calls go through `requests`; streaming calls go through
`httpx.AsyncClient` so that the response body can be consumed as an async
byte iterator. In both cases a non-success status is raised as HttpError
before any body decoding starts.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional

import httpx
import requests

from streaming import CancellationToken
from streaming.cancellation import race

from .base import LLMClientError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


class HttpError(LLMClientError):
    """Non-success HTTP response from a provider API."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def bearer_headers(api_key: Optional[str] = None, extra: Optional[dict] = None) -> dict:
    """Build JSON request headers with an optional bearer token."""
    headers = {
        "accept": "application/json",
        "content-type": "application/json",
        **(extra or {}),
    }
    if isinstance(api_key, str):
        headers["authorization"] = f"Bearer {api_key}"
    return headers


def post_json(
    url: str,
    headers: dict,
    body: dict,
    timeout: float = DEFAULT_TIMEOUT,
) -> dict:
    """POST a JSON body and return the decoded JSON response.

    Raises:
        HttpError: If the API returns a non-2xx status.
        LLMClientError: If the request fails or the body is not JSON.
    """
    logger.debug("POST %s", url)
    try:
        response = requests.post(url, headers=headers, json=body, timeout=timeout)
    except requests.RequestException as e:
        raise LLMClientError(f"Request failed: {e}") from e

    if not 200 <= response.status_code < 300:
        raise HttpError(
            f"Request failed with status code {response.status_code}: {response.text}",
            status_code=response.status_code,
            body=response.text,
        )

    try:
        return response.json()
    except json.JSONDecodeError as e:
        raise LLMClientError(f"Invalid JSON response: {e}") from e


async def _empty() -> AsyncIterator[bytes]:
    return
    yield


async def _iter_response(
    response: httpx.Response,
    owned_client: Optional[httpx.AsyncClient],
) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()
        if owned_client is not None:
            await owned_client.aclose()
        logger.debug("Closed streaming response from %s", response.url)


async def stream_post(
    url: str,
    headers: dict,
    body: dict,
    client: Optional[httpx.AsyncClient] = None,
    cancel_token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> AsyncIterator[bytes]:
    """POST a JSON body and return the response body as raw byte chunks.

    The request is sent and its status checked before this returns, so
    transport errors never reach the decoder. The returned iterator releases
    the connection when exhausted, closed early or errored.

    Args:
        url: Endpoint URL.
        headers: Request headers.
        body: JSON request body.
        client: Optional shared client. When omitted, a client is created
            for this request and closed with the stream.
        cancel_token: Cancels the request while it is being sent.
        timeout: Client timeout when no client is given. None disables it;
            timeouts are expected to be layered on via `cancel_token`.

    Raises:
        HttpError: If the API returns a non-2xx status.
        LLMClientError: If the request itself fails.
    """
    owned_client = None
    if client is None:
        owned_client = client = httpx.AsyncClient(timeout=timeout)

    request = client.build_request("POST", url, headers=headers, json=body)
    logger.debug("POST %s (streaming)", url)

    try:
        if cancel_token is None:
            response = await client.send(request, stream=True)
        else:
            completed, response = await race(client.send(request, stream=True), cancel_token)
            if not completed:
                logger.debug("Request to %s cancelled before a response arrived", url)
                if owned_client is not None:
                    await owned_client.aclose()
                return _empty()
    except httpx.HTTPError as e:
        if owned_client is not None:
            await owned_client.aclose()
        raise LLMClientError(f"Request failed: {e}") from e

    if not response.is_success:
        text = (await response.aread()).decode("utf-8", errors="replace")
        await response.aclose()
        if owned_client is not None:
            await owned_client.aclose()
        raise HttpError(
            f"Request failed with status code {response.status_code}: {text}",
            status_code=response.status_code,
            body=text,
        )

    return _iter_response(response, owned_client)
