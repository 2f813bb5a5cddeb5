"""Test configuration and fixtures"""

import asyncio
from pathlib import Path

import pytest

from mediacache.cache import RangeCache
from mediacache.database import IndexStore
from mediacache.spans import is_normalized


def payload(size: int, seed: int = 0) -> bytes:
    return bytes((i * 7 + seed) % 251 for i in range(size))


class FakeUpstream:
    """In-memory upstream that records every fetch and probe call."""

    def __init__(self, resources: dict[str, bytes], chunk_size: int = 64):
        self.resources = dict(resources)
        self.chunk_size = chunk_size
        self.fetch_calls: list[tuple[str, int, int | None]] = []
        self.probe_calls: list[str] = []
        self.offline = False
        self.report_length = True
        self.fail_after: int | None = None
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.cancelled = 0

    async def probe(self, resource: str) -> int | None:
        self.probe_calls.append(resource)
        if self.offline:
            raise ConnectionError("upstream offline")
        if resource not in self.resources:
            raise LookupError(f"unknown resource {resource}")
        return len(self.resources[resource]) if self.report_length else None

    async def fetch(self, resource: str, start: int, end: int | None):
        self.fetch_calls.append((resource, start, end))
        self.started.set()
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.offline:
            raise ConnectionError("upstream offline")
        data = self.resources[resource]
        stop = len(data) if end is None else min(end, len(data))
        pos = start
        while pos < stop:
            if self.fail_after is not None and pos - start >= self.fail_after:
                raise ConnectionError("connection reset")
            chunk = data[pos:min(pos + self.chunk_size, stop)]
            yield chunk
            pos += len(chunk)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream({
        "A": payload(2000),
        "B": payload(2000, seed=3),
        "C": payload(2000, seed=5),
    })


@pytest.fixture
async def make_cache(tmp_path: Path, upstream: FakeUpstream):
    """Factory for caches sharing one storage directory and index database."""
    created = []

    async def factory(max_cache_size: int = 1000, **kwargs) -> RangeCache:
        kwargs.setdefault("fetch_timeout", 5.0)
        cache = RangeCache(
            tmp_path / "media",
            kwargs.pop("upstream", upstream),
            index_store=IndexStore(tmp_path / "index.db"),
            max_cache_size=max_cache_size,
            **kwargs,
        )
        await cache.start()
        created.append(cache)
        return cache

    yield factory
    for c in created:
        await c.shutdown()


@pytest.fixture
async def cache(make_cache) -> RangeCache:
    return await make_cache()


async def read_range(cache: RangeCache, resource: str, start: int = 0, end: int | None = None,
                     chunk: int = 128) -> bytes:
    handle = await cache.open(resource, start, end)
    try:
        parts = []
        while True:
            data = await cache.read(handle, chunk)
            if not data:
                break
            parts.append(data)
        return b"".join(parts)
    finally:
        await cache.close(handle)


def assert_invariants(cache: RangeCache):
    total = 0
    for resource in cache.resources():
        spans = cache.spans(resource)
        assert is_normalized(spans), spans
        for span in spans:
            path = cache.storage.path_for(resource, span.start)
            assert path.exists()
            assert path.stat().st_size >= span.size
        total += sum(s.size for s in spans)
    assert cache.total_bytes == total
