"""Behavior shared by every BlockStore implementation."""

import io
import threading

import pytest
from pydantic import ValidationError

from cas_blocks.content import ByteContent, StreamContent
from cas_blocks.data import create_block, load_block, read_block
from cas_blocks.hashing import compute_digest
from cas_blocks.store.base import BlockStats, BlockStore, ListOptions, list_options, select_ids


class TestProtocol:
    """Test protocol conformance."""

    def test_is_block_store(self, store):
        """Test both backends satisfy the BlockStore protocol."""
        assert isinstance(store, BlockStore)


class TestBasicOperations:
    """Test put/stat/list/delete/get round trips."""

    def test_lifecycle(self, store):
        """Test a block can be stored, inspected, listed and removed."""
        block = read_block("sha2-256", b"0123456789")

        stored = store.put(block)
        assert stored == block
        assert stored.read() == b"0123456789"

        stats = store.stat(block.id)
        assert stats.id == block.id
        assert stats.size == 10
        assert stats.stored_at == stored.stored_at

        listed = list(store.list())
        assert listed == [block]
        assert listed[0].content is None

        assert store.delete(block.id) is True
        assert store.get(block.id) is None
        assert store.stat(block.id) is None
        assert list(store.list()) == []

    def test_get_missing(self, store, make_block):
        """Test unknown ids are absent rather than errors."""
        block = make_block()
        assert store.get(block.id) is None
        assert store.stat(block.id) is None
        assert store.delete(block.id) is False

    def test_malformed_ids(self, store):
        """Test malformed ids behave like unknown ids."""
        for bad in ["not-a-block-id", "", "1220", "../../etc/passwd", None, 42]:
            assert store.get(bad) is None
            assert store.stat(bad) is None
            assert store.delete(bad) is False

    def test_hex_string_ids(self, store, make_block):
        """Test ids may be given as hex strings."""
        block = store.put(make_block())
        assert store.get(block.id.hex) == block
        assert store.stat(block.id.hex).size == block.size
        assert store.delete(block.id.hex) is True

    def test_put_none(self, store):
        """Test putting nothing stores nothing."""
        assert store.put(None) is None
        assert list(store.list()) == []

    def test_get_is_repeatable(self, store, make_block):
        """Test stored content can be opened repeatedly and by range."""
        block = store.get(store.put(make_block(b"hello world")).id)
        assert block.read() == b"hello world"
        assert block.read() == b"hello world"
        with block.open(6, 9) as stream:
            assert stream.read() == b"worl"

    def test_lazy_content_is_stored(self, store, at):
        """Test blocks with stream content are read and stored."""
        data = b"lazy content" * 1000
        block = create_block(
            compute_digest("sha2-256", data),
            len(data),
            at(0),
            StreamContent(lambda: io.BytesIO(data)),
        )
        store.put(block)
        assert store.get(block.id).read() == data

    def test_stored_size_is_content_length(self, store, at):
        """Test the stored size is the number of bytes read, not the declared size."""
        data = b"0123456789"
        block = create_block(compute_digest("sha2-256", data), 3, at(0), ByteContent(data))

        stored = store.put(block)
        assert stored.size == 10
        assert store.stat(block.id).size == 10
        assert store.get(block.id).read() == data
        assert [b.size for b in store.list()] == [10]


class TestIdempotentPut:
    """Test repeated puts of the same id."""

    def test_second_put_returns_original(self, store, make_block):
        """Test the first stored timestamp survives a second put."""
        first = store.put(make_block())
        second = store.put(make_block())
        assert second == first
        assert second.stored_at == first.stored_at
        assert len(list(store.list())) == 1

    def test_put_after_delete_stores_again(self, store, make_block):
        """Test a deleted block can be stored again."""
        block = make_block()
        store.put(block)
        assert store.delete(block.id)
        assert store.put(block) == block
        assert store.get(block.id).read() == block.read()

    def test_delete_twice(self, store, make_block):
        """Test only the first delete reports removal."""
        block = store.put(make_block())
        assert store.delete(block.id) is True
        assert store.delete(block.id) is False


class TestListing:
    """Test list ordering and filters."""

    @pytest.fixture
    def blocks(self, store):
        """Store a mix of sha1 and sha2-256 blocks."""
        result = []
        for i in range(12):
            algorithm = "sha1" if i % 3 == 0 else "sha2-256"
            result.append(store.put(read_block(algorithm, f"block {i}".encode())))
        return sorted(result)

    def test_ascending_order(self, store, blocks):
        """Test listings come back in ascending id order."""
        listed = list(store.list())
        assert [b.id for b in listed] == [b.id for b in blocks]
        assert [b.id.hex for b in listed] == sorted(b.id.hex for b in blocks)

    def test_algorithm_filter(self, store, blocks):
        """Test filtering by hash algorithm."""
        listed = list(store.list(algorithm="sha1"))
        assert len(listed) == 4
        assert all(b.id.algorithm == "sha1" for b in listed)

    def test_bounds(self, store, blocks):
        """Test after/before bounds are exclusive."""
        after, before = blocks[2].id.hex, blocks[8].id.hex
        listed = list(store.list(after=after, before=before))
        assert listed == blocks[3:8]

    def test_prefix(self, store, blocks):
        """Test filtering by hex prefix."""
        listed = list(store.list(prefix="1220"))
        assert listed == [b for b in blocks if b.id.algorithm == "sha2-256"]
        prefix = blocks[-1].id.hex[:8]
        assert blocks[-1] in list(store.list(prefix=prefix))
        assert list(store.list(prefix="ff")) == []

    def test_limit(self, store, blocks):
        """Test limit caps the number of results."""
        assert list(store.list(limit=3)) == blocks[:3]
        assert list(store.list(ListOptions(algorithm="sha2-256"), limit=2)) == [
            b for b in blocks if b.id.algorithm == "sha2-256"
        ][:2]

    def test_uppercase_filters_normalized(self, store, blocks):
        """Test hex filters are case-insensitive."""
        prefix = blocks[0].id.hex.upper()
        assert list(store.list(prefix=prefix)) == [blocks[0]]

    def test_list_reflects_deletes(self, store, blocks):
        """Test deleted blocks disappear from listings."""
        store.delete(blocks[0].id)
        assert list(store.list()) == blocks[1:]


class TestListOptions:
    """Test list option validation and id selection."""

    def test_rejects_non_hex(self):
        """Test non-hex filters fail validation."""
        with pytest.raises(ValidationError):
            ListOptions(prefix="xyz")

    def test_rejects_bad_limit(self):
        """Test limits must be positive."""
        with pytest.raises(ValidationError):
            ListOptions(limit=0)

    def test_empty_filter_is_none(self):
        """Test empty strings mean no filter."""
        assert ListOptions(prefix="").prefix is None

    def test_overrides(self):
        """Test keyword arguments override an options instance."""
        opts = list_options(ListOptions(algorithm="sha1", limit=5), limit=2)
        assert opts.algorithm == "sha1"
        assert opts.limit == 2

    def test_select_stops_early(self):
        """Test selection stops consuming ids past the upper bound."""
        ids = sorted(compute_digest("sha2-256", str(i).encode()) for i in range(10))
        consumed = []

        def source():
            for id in ids:
                consumed.append(id)
                yield id

        selected = list(select_ids(source(), ListOptions(before=ids[3].hex)))
        assert selected == ids[:3]
        assert len(consumed) == 4


class TestConcurrency:
    """Test concurrent access from multiple threads."""

    def test_concurrent_puts_single_winner(self, store):
        """Test concurrent puts of one id all observe the same stored block."""
        block = read_block("sha2-256", b"contended" * 100)
        results = []
        errors = []
        barrier = threading.Barrier(8)

        def worker():
            try:
                barrier.wait()
                results.append(store.put(block))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(results) == 8
        assert len({r.stored_at for r in results}) == 1
        assert store.stat(block.id).stored_at == results[0].stored_at
        assert store.get(block.id).read() == block.read()

    def test_concurrent_deletes_single_winner(self, store, make_block):
        """Test exactly one concurrent delete reports removal."""
        block = store.put(make_block())
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.delete(block.id))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False] * 7 + [True]


class TestValues:
    """Test values returned by stores."""

    def test_stats_are_frozen(self, store, make_block):
        """Test stats are plain immutable values."""
        stats = store.stat(store.put(make_block()).id)
        assert isinstance(stats, BlockStats)
        with pytest.raises(AttributeError):
            stats.size = 1

    def test_load_block_with_trusted_id(self, store):
        """Test stores accept blocks built from a known id."""
        data = b"known"
        block = load_block(compute_digest("sha1", data), data)
        assert store.put(block) == block
