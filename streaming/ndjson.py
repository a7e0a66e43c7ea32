"""Newline-delimited JSON wire protocol.

Every line is one envelope:

    {"type": "chunk" | "data", "value": <any JSON value>}

`chunk` envelopes carry the values of the source stream, in order. `data`
envelopes carry side-channel values sent alongside it.

Where the side data lands depends on when it is available. A list passed to
`encode` is written before the first chunk. An awaitable is only awaited
once the source is exhausted, and its values are written after the last
chunk. This lets a caller attach information that is only known once
generation has finished, such as the sources an answer actually cited,
without buffering the token stream.

See: http://ndjson.org
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    List,
    Literal,
    Optional,
    Tuple,
    TypedDict,
    Union,
)

from .framing import FrameDecoder, is_line_boundary
from .errors import NdJsonProtocolError

logger = logging.getLogger(__name__)

NDJSON_HEADERS = {"content-type": "application/x-ndjson; charset=utf-8"}

ENVELOPE_TYPES = frozenset({"chunk", "data"})

SideData = Union[List[Any], Awaitable[List[Any]]]


class Envelope(TypedDict):
    type: Literal["chunk", "data"]
    value: Any


def serialize(envelope: Envelope) -> bytes:
    """Serialize one envelope as a compact JSON line.

    Raises:
        TypeError: If the value is not JSON serializable or holds text that
            is not valid Unicode (e.g. a lone surrogate).
    """
    line = json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)
    try:
        return f"{line}\n".encode("utf-8")
    except UnicodeEncodeError as e:
        raise TypeError(
            f"Value {envelope['value']!r} cannot be encoded as UTF-8 JSON"
        ) from e


def _check_side_data(data: Any) -> List[Any]:
    if not isinstance(data, list):
        raise TypeError(
            "Expected side data to be a list of JSON-serializable values "
            f"but it was {type(data).__name__}"
        )
    return data


async def encode(
    values: AsyncIterable[Any],
    data: Optional[SideData] = None,
) -> AsyncIterator[bytes]:
    """Encode a value sequence, plus optional side data, as ND-JSON lines.

    Args:
        values: Source values. Each becomes one `chunk` line.
        data: Side-channel values. A list is written before the chunks; an
            awaitable resolving to a list is awaited after the source is
            exhausted and written after the chunks.

    Yields:
        One encoded line per envelope, newline included.

    Raises:
        TypeError: If `data`, or what it resolves to, is not a list, or if a
            value cannot be serialized.
    """
    deferred = data is not None and inspect.isawaitable(data)

    if not deferred:
        for value in _check_side_data(data if data is not None else []):
            yield serialize({"type": "data", "value": value})

    iterator = values.__aiter__()
    exhausted = False
    try:
        async for value in iterator:
            yield serialize({"type": "chunk", "value": value})
        exhausted = True
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
        if deferred and not exhausted and inspect.iscoroutine(data):
            data.close()

    if deferred:
        resolved = await data
        logger.debug("Writing %d deferred side data values", len(resolved or []))
        for value in _check_side_data(resolved):
            yield serialize({"type": "data", "value": value})


def parse_envelope(line: str) -> Envelope:
    """Parse one wire line. Every malformation is a protocol error."""
    line = line.rstrip()
    if not line:
        raise NdJsonProtocolError("Encountered an empty line in ND-JSON stream", line=line)

    try:
        envelope = json.loads(line)
    except json.JSONDecodeError as e:
        raise NdJsonProtocolError(f"Malformed ND-JSON line: {line!r}", line=line) from e

    if (
        not isinstance(envelope, dict)
        or envelope.get("type") not in ENVELOPE_TYPES
        or "value" not in envelope
    ):
        raise NdJsonProtocolError(
            f"Expected a {{type, value}} envelope but got {line!r}", line=line
        )
    return {"type": envelope["type"], "value": envelope["value"]}


async def decode(chunks: AsyncIterable[bytes]) -> AsyncIterator[Envelope]:
    """Decode ND-JSON bytes, split at arbitrary offsets, into envelopes.

    Raises:
        NdJsonProtocolError: On the first malformed line.
    """
    decoder = FrameDecoder(is_line_boundary, parse_envelope)
    iterator = chunks.__aiter__()
    try:
        async for data in iterator:
            for envelope in decoder.feed(data):
                yield envelope
        for envelope in decoder.flush():
            yield envelope
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def collect(envelopes: AsyncIterable[Envelope]) -> Tuple[List[Any], List[Any]]:
    """Split a decoded envelope sequence into (chunk values, data values)."""
    chunks: List[Any] = []
    data: List[Any] = []
    async for envelope in envelopes:
        if envelope["type"] == "chunk":
            chunks.append(envelope["value"])
        else:
            data.append(envelope["value"])
    return chunks, data
