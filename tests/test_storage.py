"""Payload segment storage"""

import pytest

from mediacache.errors import CorruptIndexEntry
from mediacache.storage import SegmentStore, resource_key


@pytest.fixture
def store(tmp_path) -> SegmentStore:
    s = SegmentStore(tmp_path / "media")
    s.ensure()
    return s


class TestSegmentStore:
    def test_write_and_read_by_offset(self, store):
        store.write("A", 100, b"0123456789")
        assert store.read("A", 100, 103, 4) == b"3456"
        assert store.path_for("A", 100).parent.name == resource_key("A")
        assert not list(store.resource_dir("A").glob("*.tmp"))

    def test_append_overwrites_stale_tail(self, store):
        store.write("A", 0, b"abcd")
        # Leftovers of an interrupted append past the declared size
        with open(store.path_for("A", 0), "ab") as f:
            f.write(b"garbage")
        store.append("A", 0, 4, b"efgh")
        assert store.path_for("A", 0).read_bytes() == b"abcdefgh"

    def test_copy_into(self, store):
        store.write("A", 0, b"aaaa")
        store.write("A", 8, b"cccc")
        store.append("A", 0, 4, b"bbbb")
        store.copy_into("A", 0, 8, 8, 4)
        assert store.path_for("A", 0).read_bytes() == b"aaaabbbbcccc"

    def test_copy_into_short_source_raises(self, store):
        store.write("A", 0, b"aaaa")
        store.write("A", 4, b"bb")
        with pytest.raises(OSError):
            store.copy_into("A", 0, 4, 4, 4)

    def test_verify_missing_payload(self, store):
        with pytest.raises(CorruptIndexEntry) as exc:
            store.verify("A", 0, 10)
        assert exc.value.details["start"] == 0

    def test_verify_short_payload(self, store):
        store.write("A", 0, b"abc")
        with pytest.raises(CorruptIndexEntry):
            store.verify("A", 0, 10)

    def test_verify_trims_long_payload(self, store):
        store.write("A", 0, b"abcdef")
        store.verify("A", 0, 4)
        assert store.path_for("A", 0).read_bytes() == b"abcd"

    def test_sweep_removes_unreferenced_files(self, store):
        store.write("A", 0, b"keep")
        store.write("A", 100, b"drop")
        store.write("B", 0, b"orphan")
        (store.resource_dir("A") / "000000000200.tmp").write_bytes(b"partial")

        removed = store.sweep({resource_key("A"): {0}})

        assert removed == 3
        assert store.path_for("A", 0).exists()
        assert not store.path_for("A", 100).exists()
        assert not store.resource_dir("B").exists()
        assert store.size_on_disk() == 4

    def test_delete_resource(self, store):
        store.write("A", 0, b"abc")
        store.delete_resource("A")
        assert not store.resource_dir("A").exists()
        # Deleting again is a no-op
        store.delete_resource("A")
