"""Unit tests for bounded-chunk batch writes.

Tests verify that:
- N staged operations produce ceil(N/K) non-empty commits of at most K
- Operations are committed in staging order, exactly once
- Grouped operations stay in one chunk when they fit
- A failed commit halts the writer and reports committed counts
"""

import math
import pytest
from unittest.mock import MagicMock

from catalog_sync.batch_writer import BatchCommitError, BatchHaltedError, BatchWriter
from catalog_sync.database import DocumentStore, DocumentStoreError, WriteOp


@pytest.fixture
def recording_store():
    """Store double that records each committed chunk."""
    store = MagicMock(spec=DocumentStore)
    store.chunks = []
    store.commit.side_effect = lambda ops: store.chunks.append(list(ops))
    return store


def make_ops(count, tag="upsert"):
    return [WriteOp.set("cache", str(i), {"n": i}, tag=tag) for i in range(count)]


class TestChunking:
    """Tests for chunk sizes and counts."""

    @pytest.mark.parametrize("count,ceiling", [
        (0, 5), (1, 5), (5, 5), (6, 5), (12, 5), (1000, 490), (980, 490),
    ])
    def test_commit_count(self, recording_store, count, ceiling):
        writer = BatchWriter(recording_store, ceiling=ceiling)

        for op in make_ops(count):
            writer.stage(op)
        writer.flush()

        assert writer.commits == math.ceil(count / ceiling)
        assert len(recording_store.chunks) == math.ceil(count / ceiling)
        assert all(0 < len(chunk) <= ceiling for chunk in recording_store.chunks)

    def test_order_preserved_and_no_duplicates(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=3)
        ops = make_ops(7)

        for op in ops:
            writer.stage(op)
        writer.flush()

        committed = [op for chunk in recording_store.chunks for op in chunk]
        assert committed == ops

    def test_commits_when_ceiling_reached(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=3)

        for op in make_ops(3):
            writer.stage(op)

        assert writer.commits == 1
        assert writer.pending == 0

    def test_flush_with_nothing_pending(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=3)

        writer.flush()

        recording_store.commit.assert_not_called()

    @pytest.mark.parametrize("ceiling", [0, 500, 501])
    def test_ceiling_must_stay_below_hard_limit(self, recording_store, ceiling):
        with pytest.raises(ValueError):
            BatchWriter(recording_store, ceiling=ceiling)

    def test_committed_counts_by_tag(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=4)

        for op in make_ops(3, tag="upsert") + make_ops(2, tag="delete"):
            writer.stage(op)
        writer.flush()

        assert writer.committed["upsert"] == 3
        assert writer.committed["delete"] == 2
        assert writer.committed_total == 5
        assert writer.staged == 5


class TestStageGroup:
    """Tests for keeping related operations together."""

    def test_group_moved_to_fresh_chunk(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=5)
        for op in make_ops(3):
            writer.stage(op)

        writer.stage_group(make_ops(4, tag="invoice"))
        writer.flush()

        assert [len(chunk) for chunk in recording_store.chunks] == [3, 4]

    def test_group_that_fits_joins_pending(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=5)
        for op in make_ops(2):
            writer.stage(op)

        writer.stage_group(make_ops(3, tag="invoice"))

        assert [len(chunk) for chunk in recording_store.chunks] == [5]

    def test_oversized_group_is_split(self, recording_store):
        writer = BatchWriter(recording_store, ceiling=3)

        writer.stage_group(make_ops(7))
        writer.flush()

        assert [len(chunk) for chunk in recording_store.chunks] == [3, 3, 1]


class TestCommitFailure:
    """Tests for failed commits."""

    def test_failure_propagates_and_halts(self):
        store = MagicMock(spec=DocumentStore)
        store.commit.side_effect = [None, DocumentStoreError("backend down")]
        writer = BatchWriter(store, ceiling=2)

        writer.stage(WriteOp.set("c", "1", {}, tag="upsert"))
        writer.stage(WriteOp.set("c", "2", {}, tag="upsert"))
        writer.stage(WriteOp.set("c", "3", {}, tag="upsert"))
        with pytest.raises(BatchCommitError) as exc_info:
            writer.stage(WriteOp.set("c", "4", {}, tag="upsert"))

        assert exc_info.value.committed == 2
        assert writer.committed["upsert"] == 2

        with pytest.raises(BatchHaltedError):
            writer.stage(WriteOp.set("c", "5", {}))
        with pytest.raises(BatchHaltedError):
            writer.flush()
        assert store.commit.call_count == 2

    def test_real_store_keeps_earlier_chunks(self, store):
        writer = BatchWriter(store, ceiling=2)
        writer.stage(WriteOp.set("c", "1", {"v": 1}))
        writer.stage(WriteOp.set("c", "2", {"v": 2}))

        writer.stage(WriteOp.set("c", "3", {"v": 3}))
        with pytest.raises(BatchCommitError):
            writer.stage(WriteOp.update("c", "missing", {"v": 4}))

        assert store.list_ids("c") == ["1", "2"]
