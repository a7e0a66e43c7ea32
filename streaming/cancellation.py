"""Cooperative cancellation for streaming pipelines.

A CancellationToken is created by whoever starts a stream and handed down to
every stage that awaits. Cancellation takes effect at the next suspension
point: the in-flight network read is cancelled, the upstream iterator is
closed and the sequence ends without raising into the consumer.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, Callable, List, Optional, TypeVar

from .errors import StreamCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXHAUSTED = object()


class CancellationToken:
    """A one-shot cancellation signal shared by the stages of one stream."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Signal cancellation. Calling it again has no effect."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        logger.debug("Stream cancelled: %s", reason or "no reason given")
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def cancel_after(self, seconds: float) -> None:
        """Cancel the token once `seconds` have elapsed on the running loop.

        Timeouts are layered on top of cancellation this way; the decode
        pipeline itself has no notion of time.
        """
        if self._cancelled:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(seconds, self.cancel, f"timed out after {seconds}s")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run `callback` on cancellation, immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StreamCancelledError(self._reason or "Stream was cancelled")

    async def wait(self) -> None:
        """Wait until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"CancellationToken({state})"


async def _next_or_sentinel(iterator: AsyncIterator[T]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


async def race(awaitable, token: CancellationToken):
    """Await `awaitable` unless `token` fires first.

    Returns a (completed, result) pair. When the token wins, the pending
    awaitable is cancelled and awaited before returning (False, None).
    """
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        return False, None

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return True, work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    return False, None


async def iterate_until_cancelled(
    source: AsyncIterable[T],
    token: Optional[CancellationToken],
) -> AsyncIterator[T]:
    """Yield from `source` until it is exhausted or `token` is cancelled.

    Each pull is raced against the token so that a read blocked on the
    network is interrupted rather than waited out. `source` is closed on
    every exit path.
    """
    iterator = source.__aiter__()
    try:
        if token is None:
            async for item in iterator:
                yield item
            return

        while not token.cancelled:
            completed, item = await race(_next_or_sentinel(iterator), token)
            if not completed or item is _EXHAUSTED:
                return
            yield item
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
