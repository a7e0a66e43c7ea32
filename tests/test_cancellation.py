"""Unit tests for stream cancellation."""
from __future__ import annotations

import asyncio

import pytest

from conftest import collect
from streaming import (
    CancellationToken,
    StreamCancelledError,
    decode_frames,
    is_line_boundary,
    iterate_until_cancelled,
    ndjson,
    parse_json_line,
)
from streaming.cancellation import race


async def slow_lines(count: int, delay: float = 0.0, closed: list | None = None):
    try:
        for i in range(count):
            await asyncio.sleep(delay)
            yield f'{{"n": {i}}}\n'.encode("utf-8")
    finally:
        if closed is not None:
            closed.append(True)


class TestCancellationToken:
    """Tests for the token itself."""

    def test_cancel_is_one_shot(self):
        """The first reason sticks."""
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_callbacks(self):
        """Callbacks run once on cancel, or at once if already cancelled."""
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append("early"))
        token.cancel()
        token.cancel()
        token.add_callback(lambda: calls.append("late"))
        assert calls == ["early", "late"]

    def test_raise_if_cancelled(self):
        """Stages that prefer an exception can ask for one."""
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("user stopped")
        with pytest.raises(StreamCancelledError, match="user stopped"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self):
        """wait() returns once the token is cancelled."""
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_cancel_after(self):
        """A timer cancels the token with a timeout reason."""
        token = CancellationToken()
        token.cancel_after(0.01)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert "timed out" in token.reason


class TestRace:
    """Tests for racing work against a token."""

    @pytest.mark.asyncio
    async def test_work_wins(self):
        """Finished work returns its result."""
        async def work():
            return 7

        assert await race(work(), CancellationToken()) == (True, 7)

    @pytest.mark.asyncio
    async def test_token_wins(self):
        """A cancelled token interrupts pending work."""
        interrupted = []

        async def work():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                interrupted.append(True)
                raise

        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        assert await race(work(), token) == (False, None)
        assert interrupted == [True]

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        """Work is never started on a cancelled token."""
        started = []

        async def work():
            started.append(True)

        token = CancellationToken()
        token.cancel()
        assert await race(work(), token) == (False, None)
        assert started == []


class TestIterateUntilCancelled:
    """Tests for cancelling an iteration."""

    @pytest.mark.asyncio
    async def test_no_token_passes_through(self):
        """Without a token every item is yielded."""
        items = await collect(iterate_until_cancelled(slow_lines(3), None))
        assert len(items) == 3

    @pytest.mark.asyncio
    async def test_cancel_after_items(self):
        """Cancelling mid-stream ends it cleanly and closes the source."""
        token = CancellationToken()
        closed = []
        received = []
        async for item in iterate_until_cancelled(slow_lines(10, closed=closed), token):
            received.append(item)
            if len(received) == 3:
                token.cancel("enough")
        assert len(received) == 3
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_interrupts_blocked_read(self):
        """A read waiting on a slow source is interrupted."""
        token = CancellationToken()
        closed = []
        loop = asyncio.get_running_loop()
        start = loop.time()
        token.cancel_after(0.05)

        received = await collect(
            iterate_until_cancelled(slow_lines(5, delay=10, closed=closed), token)
        )
        assert received == []
        assert loop.time() - start < 5
        assert closed == [True]


class TestCancelledDecode:
    """Tests for cancellation through the decode pipeline."""

    @pytest.mark.asyncio
    async def test_no_chunks_after_cancel(self):
        """Once cancelled, the decoder yields nothing more and raises nothing."""
        token = CancellationToken()
        closed = []
        frames = decode_frames(
            slow_lines(20, closed=closed), is_line_boundary, parse_json_line, token
        )
        received = []
        async for frame in frames:
            received.append(frame["n"])
            if frame["n"] == 4:
                token.cancel()
        assert received == [0, 1, 2, 3, 4]
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_cancel_within_one_chunk(self):
        """Frames already buffered in a chunk are dropped after cancel."""
        async def one_chunk():
            yield b'{"n": 0}\n{"n": 1}\n{"n": 2}\n'

        token = CancellationToken()
        received = []
        async for frame in decode_frames(one_chunk(), is_line_boundary, parse_json_line, token):
            received.append(frame["n"])
            token.cancel()
        assert received == [0]

    @pytest.mark.asyncio
    async def test_cancelled_stream_still_sends_deferred_data(self):
        """Cancellation ends the chunks cleanly, so deferred data still follows."""
        token = CancellationToken()
        frames = decode_frames(slow_lines(10), is_line_boundary, parse_json_line, token)

        async def values():
            async for frame in frames:
                if frame["n"] == 2:
                    token.cancel()
                yield frame["n"]

        async def sources():
            return [{"id": "doc"}]

        chunks, data = await ndjson.collect(ndjson.decode(ndjson.encode(values(), data=sources())))
        assert chunks == [0, 1, 2]
        assert data == [{"id": "doc"}]
