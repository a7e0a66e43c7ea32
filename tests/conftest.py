"""Shared helpers for streaming tests."""
from __future__ import annotations

import random
from typing import AsyncIterable, AsyncIterator, List

import pytest


def split_at_random(data: bytes, rng: random.Random, max_size: int = 7) -> List[bytes]:
    """Split bytes into chunks of random size, ignoring character boundaries."""
    chunks = []
    i = 0
    while i < len(data):
        size = rng.randint(1, max_size)
        chunks.append(data[i:i + size])
        i += size
    return chunks


async def byte_stream(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


async def collect(iterable: AsyncIterable) -> list:
    return [item async for item in iterable]


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)
