"""Adapters between push-style streams and pull-style async iterators.

ReadableStream is a push-style channel: producers enqueue values and close
or error it, and a single reader drains it. The two adapter functions
convert in both directions so the rest of the package can treat every
source as an async iterator.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Generic,
    Iterable,
    Optional,
    TypeVar,
)

from .errors import StreamError, StreamLockedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ReadResult(Generic[T]):
    """Result of a single StreamReader.read() call."""

    done: bool
    value: Optional[T] = None


class ReadableStream(Generic[T]):
    """A push-style stream with an optional pull-on-demand source.

    Values pushed with `enqueue` are buffered until read. When a reader finds
    the buffer empty and the stream still open, the `pull` coroutine (if
    given) is awaited to let the source produce more. `cancel` (if given) is
    awaited once when a consumer cancels the stream, so the source can
    release what it holds.
    """

    def __init__(
        self,
        pull: Optional[Callable[["ReadableStream[T]"], Awaitable[None]]] = None,
        cancel: Optional[Callable[[Any], Awaitable[None]]] = None,
    ):
        self._queue: Deque[T] = deque()
        self._pull = pull
        self._cancel = cancel
        self._closed = False
        self._error: Optional[BaseException] = None
        self._locked = False
        self._changed: Optional[asyncio.Event] = None

    @property
    def locked(self) -> bool:
        return self._locked

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, value: T) -> None:
        if self._closed:
            raise StreamError("Cannot enqueue into a closed stream")
        self._queue.append(value)
        self._notify()

    def close(self) -> None:
        self._closed = True
        self._notify()

    def error(self, exc: BaseException) -> None:
        """Put the stream in an errored state; buffered values are dropped."""
        self._error = exc
        self._closed = True
        self._queue.clear()
        self._notify()

    async def cancel(self, reason: Any = None) -> None:
        """Stop the stream on the consumer's behalf.

        Buffered values are dropped, the stream is closed and the source's
        cancel callback runs. Cancelling a finished stream does nothing.
        """
        if self._closed:
            return
        self._closed = True
        self._queue.clear()
        self._notify()
        callback, self._cancel = self._cancel, None
        if callback is not None:
            await callback(reason)

    def get_reader(self) -> "StreamReader[T]":
        if self._locked:
            raise StreamLockedError("Stream is already locked to a reader")
        self._locked = True
        return StreamReader(self)

    def _notify(self) -> None:
        if self._changed is not None:
            self._changed.set()

    async def _read(self) -> ReadResult[T]:
        while True:
            if self._error is not None:
                raise self._error
            if self._queue:
                return ReadResult(done=False, value=self._queue.popleft())
            if self._closed:
                return ReadResult(done=True)

            if self._pull is not None:
                try:
                    await self._pull(self)
                except Exception as exc:
                    self.error(exc)
                continue

            if self._changed is None:
                self._changed = asyncio.Event()
            self._changed.clear()
            await self._changed.wait()

    def _release(self) -> None:
        self._locked = False


class StreamReader(Generic[T]):
    """Read cursor over a ReadableStream. Holds the stream's lock."""

    def __init__(self, stream: ReadableStream[T]):
        self._stream: Optional[ReadableStream[T]] = stream

    async def read(self) -> ReadResult[T]:
        if self._stream is None:
            raise StreamError("Reader has been released")
        return await self._stream._read()

    def release_lock(self) -> None:
        if self._stream is not None:
            self._stream._release()
            self._stream = None


def iterable_to_stream(iterable: AsyncIterable[T]) -> ReadableStream[T]:
    """Wrap an async iterable as a ReadableStream.

    Each pull advances the iterable by exactly one value. The stream is
    closed when the iterable is exhausted and errored if it raises. Cancelling
    the stream closes the iterator.
    """
    iterator = iterable.__aiter__()

    async def pull(stream: ReadableStream[T]) -> None:
        try:
            value = await iterator.__anext__()
        except StopAsyncIteration:
            stream.close()
        else:
            stream.enqueue(value)

    async def cancel(reason: Any) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    return ReadableStream(pull=pull, cancel=cancel)


async def stream_to_iterable(stream: ReadableStream[T]) -> AsyncIterator[T]:
    """Iterate a ReadableStream.

    The reader lock is released on exhaustion, on error and when the
    consumer stops early. Stopping early also cancels the stream, which
    closes its source.
    """
    reader = stream.get_reader()
    exhausted = False
    try:
        while True:
            result = await reader.read()
            if result.done:
                exhausted = True
                return
            yield result.value
    finally:
        try:
            if not exhausted:
                await stream.cancel()
        finally:
            reader.release_lock()


async def iter_sync(iterable: Iterable[Any]) -> AsyncIterator[Any]:
    """Lift an in-memory iterable into an async iterator."""
    for item in iterable:
        yield item
