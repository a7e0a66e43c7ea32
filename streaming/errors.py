"""Exceptions raised by the streaming decode layer."""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """Base class for streaming errors."""

    pass


class StreamDecodeError(StreamError):
    """A provider frame could not be parsed into a chunk.

    Raised into the consumer's iteration at the point the bad frame was
    encountered. Chunks delivered before it remain valid.
    """

    def __init__(self, message: str, frame: Optional[str] = None):
        super().__init__(message)
        self.frame = frame


class ProviderStreamError(StreamError):
    """The provider reported an error in-band, inside the stream."""

    def __init__(self, error_type: str, message: str):
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type
        self.provider_message = message


class NdJsonProtocolError(StreamError):
    """A newline-delimited JSON line was malformed."""

    def __init__(self, message: str, line: Optional[str] = None):
        super().__init__(message)
        self.line = line


class StreamLockedError(StreamError):
    """A reader was requested for a stream that already has one."""

    pass


class StreamCancelledError(StreamError):
    """Raised by CancellationToken.raise_if_cancelled()."""

    pass
