"""
Tests for the cursor readers and writer decorators.

The hazard tests drive a reader and an atomic writer by hand over a
store whose predicate stops matching records once they are written.
"""

import pytest

from batch_engine.items.base import ItemReader, KeyedSource, PagingSource
from batch_engine.items.readers import (
    FrozenPageReader,
    ListItemReader,
    SnapshotReader,
    _BaseReader,
)
from batch_engine.items.writers import RetryingWriter
from batch_kernel.exceptions import ReaderFault
from tests.support import (
    DONE,
    Item,
    NaiveOffsetReader,
    RecordStore,
    StoreWriter,
    make_items,
    mark_done,
)


def _drain_in_chunks(reader, writer, chunk_size: int) -> list[list[int]]:
    """Read, mark done and write in chunks until the reader is exhausted."""
    committed = []
    buffer = []
    for item in reader:
        buffer.append(mark_done(item))
        if len(buffer) == chunk_size:
            writer.write(buffer)
            committed.append([i.id for i in buffer])
            buffer = []
    if buffer:
        writer.write(buffer)
        committed.append([i.id for i in buffer])
    return committed


# =============================================================================
# Protocols
# =============================================================================


class TestProtocols:
    def test_record_store_is_keyed_source(self):
        store = RecordStore()
        assert isinstance(store, PagingSource)
        assert isinstance(store, KeyedSource)

    def test_readers_satisfy_reader_protocol(self):
        store = RecordStore()
        for reader in (
            FrozenPageReader(store, 5, {}),
            SnapshotReader(store, 5, {}),
            ListItemReader([]),
        ):
            assert isinstance(reader, ItemReader)

    def test_reader_without_next_cannot_be_built(self):
        class Incomplete(_BaseReader):
            pass

        with pytest.raises(TypeError):
            Incomplete()


# =============================================================================
# The paging hazard
# =============================================================================


class TestPagingHazard:
    def test_naive_offset_reader_skips_records(self):
        store = RecordStore(make_items({"A": 30}))
        reader = NaiveOffsetReader(store, page_size=10, criteria={})

        _drain_in_chunks(reader, StoreWriter(store), chunk_size=10)

        # Pages 1 and 2 were read after page 0 left the set
        assert store.count() > 0

    def test_frozen_page_reader_processes_everything(self):
        store = RecordStore(make_items({"A": 30}))
        reader = FrozenPageReader(store, page_size=10, criteria={})

        committed = _drain_in_chunks(reader, StoreWriter(store), chunk_size=10)

        assert store.count() == 0
        assert [len(c) for c in committed] == [10, 10, 10]
        assert set(reader.requested_pages) == {0}

    def test_snapshot_reader_processes_everything(self):
        store = RecordStore(make_items({"A": 30}))
        reader = SnapshotReader(store, page_size=10, criteria={})

        _drain_in_chunks(reader, StoreWriter(store), chunk_size=10)

        assert store.count() == 0
        assert reader.snapshot_size == 30


# =============================================================================
# FrozenPageReader
# =============================================================================


class TestFrozenPageReader:
    def test_empty_source(self):
        reader = FrozenPageReader(RecordStore(), 10, {})
        assert list(reader) == []
        assert reader.fetch_count == 1

    def test_criteria_restrict_selection(self):
        store = RecordStore(make_items({"A": 3, "B": 4}))
        reader = FrozenPageReader(store, 10, {"category": "B"})
        assert [i.category for i in reader] == ["B"] * 4

    def test_unwritten_records_are_not_redelivered(self):
        # Nothing is written, so page 0 keeps returning the same records
        store = RecordStore(make_items({"A": 7}))
        reader = FrozenPageReader(store, page_size=3, criteria={})

        ids = [i.id for i in reader]

        assert ids == [1, 2, 3, 4, 5, 6, 7]
        assert reader.delivered_count == 7
        assert set(reader.requested_pages) == {0}

    def test_page_smaller_than_chunk(self):
        store = RecordStore(make_items({"A": 25}))
        reader = FrozenPageReader(store, page_size=4, criteria={})

        committed = _drain_in_chunks(reader, StoreWriter(store), chunk_size=10)

        assert [len(c) for c in committed] == [10, 10, 5]
        assert store.count() == 0

    def test_source_error_becomes_reader_fault(self):
        store = RecordStore(make_items({"A": 3}))
        store.fail_fetch = True
        reader = FrozenPageReader(store, 10, {})
        with pytest.raises(ReaderFault) as exc_info:
            next(reader)
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValueError):
            FrozenPageReader(RecordStore(), 0, {})


# =============================================================================
# SnapshotReader
# =============================================================================


class TestSnapshotReader:
    def test_snapshot_is_lazy(self):
        store = RecordStore(make_items({"A": 5}))
        reader = SnapshotReader(store, 2, {})
        assert reader.snapshot_size is None
        assert store.fetches == []
        next(reader)
        assert reader.snapshot_size == 5

    def test_later_inserts_are_not_seen(self):
        store = RecordStore(make_items({"A": 3}))
        reader = SnapshotReader(store, 10, {})
        first = next(reader)
        store.insert(Item(id=99, category="A"))
        assert [first.id] + [i.id for i in reader] == [1, 2, 3]

    def test_loads_current_record_state(self):
        store = RecordStore(make_items({"A": 2}))
        reader = SnapshotReader(store, 1, {})
        first = next(reader)
        store.apply([mark_done(store.get(2))])
        second = next(reader)
        assert first.id == 1
        assert second.status == DONE

    def test_source_error_becomes_reader_fault(self):
        store = RecordStore(make_items({"A": 3}))
        store.fail_fetch = True
        with pytest.raises(ReaderFault):
            next(SnapshotReader(store, 10, {}))


# =============================================================================
# RetryingWriter
# =============================================================================


class TestRetryingWriter:
    def test_retries_until_success(self):
        store = RecordStore(make_items({"A": 2}))
        delegate = StoreWriter(store, fail_on_call=1)
        writer = RetryingWriter(delegate, max_attempts=3)

        writer.write([mark_done(i) for i in store.all()])

        assert writer.attempts == 2
        assert store.count() == 0

    def test_gives_up_after_max_attempts(self):
        class AlwaysFails:
            def write(self, items):
                raise RuntimeError("down")

        writer = RetryingWriter(AlwaysFails(), max_attempts=2)
        with pytest.raises(RuntimeError):
            writer.write([1])
        assert writer.attempts == 2

    def test_non_retryable_propagates_immediately(self):
        class Rejects:
            def write(self, items):
                raise KeyError("bad")

        writer = RetryingWriter(Rejects(), max_attempts=5, retry_on=(ConnectionError,))
        with pytest.raises(KeyError):
            writer.write([1])
        assert writer.attempts == 1

    def test_max_attempts_validated(self):
        with pytest.raises(ValueError):
            RetryingWriter(StoreWriter(RecordStore()), max_attempts=0)
