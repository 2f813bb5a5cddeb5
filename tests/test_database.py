"""Span index persistence"""

import sqlite3

import pytest

from mediacache.database import IndexStore
from mediacache.errors import CachePersistenceError
from mediacache.spans import ResourceEntry, Span


@pytest.fixture
async def store(tmp_path) -> IndexStore:
    s = IndexStore(tmp_path / "db" / "index.db")
    await s.init()
    return s


class TestIndexStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        await store.save_resource("A", ResourceEntry(2000, [Span(0, 100, 1.0), Span(200, 300, 2.0)]))
        await store.save_resource("B", ResourceEntry(None, [Span(50, 60, 3.0)]))

        loaded = await store.load()

        assert loaded["A"].length == 2000
        assert loaded["A"].spans == [Span(0, 100, 1.0), Span(200, 300, 2.0)]
        assert loaded["B"].length is None
        assert loaded["B"].spans == [Span(50, 60, 3.0)]

    @pytest.mark.asyncio
    async def test_save_replaces_previous_spans(self, store):
        await store.save_resource("A", ResourceEntry(None, [Span(0, 100, 1.0), Span(200, 300, 2.0)]))
        await store.save_resource("A", ResourceEntry(1000, [Span(0, 300, 4.0)]))

        loaded = await store.load()
        assert loaded["A"].length == 1000
        assert loaded["A"].spans == [Span(0, 300, 4.0)]

    @pytest.mark.asyncio
    async def test_length_without_spans(self, store):
        await store.save_resource("A", ResourceEntry(512, []))
        loaded = await store.load()
        assert loaded["A"].length == 512
        assert loaded["A"].spans == []

    @pytest.mark.asyncio
    async def test_delete_resource(self, store):
        await store.save_resource("A", ResourceEntry(None, [Span(0, 100, 1.0)]))
        await store.delete_resource("A")
        assert await store.load() == {}

    @pytest.mark.asyncio
    async def test_touch_updates_last_access(self, store):
        await store.save_resource("A", ResourceEntry(None, [Span(0, 100, 1.0), Span(200, 300, 2.0)]))
        await store.touch([("A", 200, 9.5)])

        loaded = await store.load()
        assert [s.last_access for s in loaded["A"].spans] == [1.0, 9.5]

    @pytest.mark.asyncio
    async def test_write_is_retried_once(self, store, monkeypatch):
        calls = []
        original = store._save_resource

        async def flaky(resource, entry):
            calls.append(resource)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            await original(resource, entry)

        monkeypatch.setattr(store, "_save_resource", flaky)
        await store.save_resource("A", ResourceEntry(None, [Span(0, 10, 1.0)]))

        assert calls == ["A", "A"]
        assert (await store.load())["A"].spans == [Span(0, 10, 1.0)]

    @pytest.mark.asyncio
    async def test_persistent_failure_raises(self, store, monkeypatch):
        calls = []

        async def broken(resource, entry):
            calls.append(resource)
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_save_resource", broken)
        with pytest.raises(CachePersistenceError) as exc:
            await store.save_resource("A", ResourceEntry(None, [Span(0, 10, 1.0)]))

        assert len(calls) == 2
        assert exc.value.details["resource"] == "A"
