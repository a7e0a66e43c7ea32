"""Streaming decode layer for LLM provider responses.

Turns arbitrarily-chunked network byte streams into ordered sequences of
provider chunks and text tokens, and re-serializes value sequences as
newline-delimited JSON for downstream clients.

Usage:
    from streaming import decode_frames, is_blank_line_boundary, parse_sse_data
    async for chunk in decode_frames(byte_chunks, is_blank_line_boundary, parse_sse_data):
        ...

    from streaming import ndjson
    async for line in ndjson.encode(tokens, data=[{"sources": [...]}]):
        ...
"""

from . import ndjson
from .adapters import ReadableStream, iter_sync, iterable_to_stream, stream_to_iterable
from .cancellation import CancellationToken, iterate_until_cancelled
from .errors import (
    NdJsonProtocolError,
    ProviderStreamError,
    StreamCancelledError,
    StreamDecodeError,
    StreamError,
    StreamLockedError,
)
from .framing import (
    FrameDecoder,
    decode_frames,
    is_blank_line_boundary,
    is_crlf_event_boundary,
    is_line_boundary,
    map_chunks,
    parse_event_pair,
    parse_json_line,
    parse_sse_data,
)

__all__ = [
    # Adapters
    "ReadableStream",
    "iter_sync",
    "iterable_to_stream",
    "stream_to_iterable",
    # Framing
    "FrameDecoder",
    "decode_frames",
    "map_chunks",
    "is_blank_line_boundary",
    "is_crlf_event_boundary",
    "is_line_boundary",
    "parse_event_pair",
    "parse_json_line",
    "parse_sse_data",
    # Wire protocol
    "ndjson",
    # Cancellation
    "CancellationToken",
    "iterate_until_cancelled",
    # Errors
    "StreamError",
    "StreamDecodeError",
    "ProviderStreamError",
    "NdJsonProtocolError",
    "StreamLockedError",
    "StreamCancelledError",
]
