"""Incremental frame decoding for provider byte streams.

Providers frame their streaming responses differently, but every decoder
does the same thing: decode bytes to text statefully, buffer characters
until a boundary is seen, then parse the buffered frame. FrameDecoder holds
that buffering logic once and takes the boundary rule and the parse function
as arguments.

Boundary rules:
    - is_blank_line_boundary: frames end with a blank line ("\\n\\n"),
      used by OpenAI, Azure OpenAI, TogetherAI and HuggingFace.
    - is_crlf_event_boundary: frames end with "\\r\\n\\r\\n", used by the
      Anthropic completion API.
    - is_line_boundary: every "\\n" ends a frame, used by Cohere, Ollama and
      the ND-JSON wire protocol.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Iterator, List, Optional, TypeVar

from .cancellation import CancellationToken, iterate_until_cancelled
from .errors import StreamDecodeError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

BoundaryRule = Callable[[str, List[str]], bool]
FrameParser = Callable[[str], Optional[Any]]

SSE_DONE = "[DONE]"

_SSE_DATA_RE = re.compile(r"data:\s*(.+)")
_EVENT_PAIR_RE = re.compile(r"^event:\s*(\S+)\r?\ndata:\s*(.+)$")


def is_blank_line_boundary(char: str, buffer: List[str]) -> bool:
    """A "\\n" immediately following a buffered "\\n"."""
    return char == "\n" and len(buffer) > 0 and buffer[-1] == "\n"


def is_crlf_event_boundary(char: str, buffer: List[str]) -> bool:
    """The "\\n" that completes a "\\r\\n\\r\\n" sequence."""
    return char == "\n" and buffer[-3:] == ["\r", "\n", "\r"]


def is_line_boundary(char: str, buffer: List[str]) -> bool:
    """Every "\\n"."""
    return char == "\n"


def _load_object(payload: str, frame: str, provider: str) -> Dict[str, Any]:
    try:
        value = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamDecodeError(
            f"Encountered unexpected chunk while parsing {provider} streaming response: {frame!r}",
            frame=frame,
        ) from e
    if not isinstance(value, dict):
        raise StreamDecodeError(
            f"Expected a JSON object in {provider} streaming response but got {frame!r}",
            frame=frame,
        )
    return value


def parse_sse_data(frame: str, provider: str = "SSE") -> Optional[Dict[str, Any]]:
    """Parse a `data: <json>` frame.

    Returns None for blank frames and for the literal `[DONE]` sentinel,
    which marks a clean end of stream rather than a chunk.
    """
    frame = frame.strip()
    if not frame:
        return None

    match = _SSE_DATA_RE.search(frame)
    if match is None:
        raise StreamDecodeError(
            f"Encountered unexpected chunk while parsing {provider} streaming response: {frame!r}",
            frame=frame,
        )

    data = match.group(1).strip()
    if data == SSE_DONE:
        return None
    return _load_object(data, frame, provider)


def parse_event_pair(frame: str, provider: str = "SSE") -> Optional[Dict[str, Any]]:
    """Parse an `event: <type>` line followed by a `data: <json>` line.

    Returns {"event": <type>, "data": <parsed json>}, or None for blank
    frames. A frame without the event/data pair, or whose data is not a
    JSON object, is a decode error.
    """
    frame = frame.strip()
    if not frame:
        return None

    match = _EVENT_PAIR_RE.match(frame)
    if match is None:
        raise StreamDecodeError(
            f"Expected well-formed streaming events but got {frame!r}",
            frame=frame,
        )

    event, data = match.group(1), match.group(2)
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamDecodeError(
            f"Expected well-formed streaming events but got {frame!r}",
            frame=frame,
        ) from e
    if not isinstance(parsed, dict):
        raise StreamDecodeError(
            f"Expected a JSON object in {provider} streaming event but got {frame!r}",
            frame=frame,
        )
    return {"event": event, "data": parsed}


def parse_json_line(frame: str, provider: str = "ND-JSON") -> Optional[Dict[str, Any]]:
    """Parse a frame holding exactly one JSON object."""
    frame = frame.strip()
    if not frame:
        return None
    return _load_object(frame, frame, provider)


class FrameDecoder:
    """Buffering state for one decode run.

    Owns one incremental UTF-8 decoder, so multi-byte characters may straddle
    byte chunks, and one character buffer holding the frame in progress.
    Instances are never shared between streams.
    """

    def __init__(self, boundary: BoundaryRule, parse: FrameParser):
        self.boundary = boundary
        self.parse = parse
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer: List[str] = []

    @property
    def pending(self) -> str:
        """Text buffered since the last boundary."""
        return "".join(self._buffer)

    def feed(self, data: bytes) -> Iterator[Any]:
        """Consume one byte chunk and yield the frames it completes, parsed.

        Frames are parsed as they are yielded, so a bad frame raises only
        after every frame before it in the chunk has been delivered.
        """
        try:
            text = self._decoder.decode(data)
        except UnicodeDecodeError as e:
            raise StreamDecodeError(f"Stream is not valid UTF-8: {e}") from e
        yield from self._scan(text)

    def flush(self) -> Iterator[Any]:
        """Finish the stream.

        An unterminated trailing frame is parsed and yielded rather than
        dropped, so a provider closing without a final delimiter loses
        nothing. Whitespace-only leftovers are ignored.
        """
        try:
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise StreamDecodeError(f"Stream ended inside a UTF-8 sequence: {e}") from e

        yield from self._scan(text)
        trailing = "".join(self._buffer)
        self._buffer = []
        if trailing.strip():
            logger.debug("Parsing unterminated trailing frame (%d chars)", len(trailing))
            parsed = self.parse(trailing)
            if parsed is not None:
                yield parsed

    def _scan(self, text: str) -> Iterator[Any]:
        for char in text:
            if not self.boundary(char, self._buffer):
                self._buffer.append(char)
                continue

            frame = "".join(self._buffer)
            self._buffer = []
            parsed = self.parse(frame)
            if parsed is not None:
                yield parsed


async def decode_frames(
    chunks: AsyncIterable[bytes],
    boundary: BoundaryRule,
    parse: FrameParser,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[Any]:
    """Decode a byte-chunk sequence into parsed frames, in arrival order.

    Args:
        chunks: Raw byte chunks, split at arbitrary offsets.
        boundary: Predicate deciding whether a character ends the frame.
        parse: Frame parser; returning None skips the frame.
        cancel_token: Stops decoding at the next suspension point.

    Yields:
        Parsed frames.

    Raises:
        StreamDecodeError: If a frame cannot be parsed. Frames yielded
            before the bad one are unaffected.
    """
    decoder = FrameDecoder(boundary, parse)
    source = iterate_until_cancelled(chunks, cancel_token)
    try:
        async for data in source:
            for frame in decoder.feed(data):
                if cancel_token is not None and cancel_token.cancelled:
                    return
                yield frame

        if cancel_token is not None and cancel_token.cancelled:
            return
        for frame in decoder.flush():
            yield frame
    finally:
        await source.aclose()


async def map_chunks(chunks: AsyncIterable[T], fn: Callable[[T], U]) -> AsyncIterator[U]:
    """Apply `fn` to each chunk, closing the source on every exit path."""
    iterator = chunks.__aiter__()
    try:
        async for chunk in iterator:
            yield fn(chunk)
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
