#!/usr/bin/env python3
"""Tests for the on-disk chain cache."""

import json
from unittest.mock import patch

import pytest

from chainpeer.cache import MEMPOOL_KEY, ChainCache
from chainpeer.errors import CacheError
from chainpeer.models import BlockRef
from chainpeer.pipeline import TransformPipeline

from conftest import make_tx


@pytest.fixture
def cache(tmp_path):
    return ChainCache(tmp_path / "chain")


@pytest.fixture
def txs():
    return [make_tx(seed) for seed in range(7)]


def fill(cache, heights):
    for height in heights:
        cache.write(height, [make_tx(height)])


class TestWriteAndRead:
    """Tests for the sync-flag write protocol and lazy reads."""

    def test_write_marks_entry_synced(self, cache, txs):
        log = cache.write(500, txs)

        assert log == cache.log_path(500)
        assert len(log.read_text().splitlines()) == len(txs)
        meta = json.loads(cache.sidecar_path(500).read_text())
        assert meta["sync"] is True
        assert meta["generation"]
        assert not log.with_name("500.tx.partial").exists()
        assert cache.is_synced(500)

    def test_unsynced_sidecar_is_a_miss(self, cache, txs):
        cache.write(500, txs)
        cache.sidecar_path(500).write_text(json.dumps({"sync": False}))

        assert not cache.is_synced(500)
        assert cache.read(500, TransformPipeline()) is None

    def test_sidecar_without_log_is_a_miss(self, cache, caplog):
        cache.sidecar_path(7).write_text(json.dumps({"sync": True}))

        assert not cache.is_synced(7)
        assert "sidecar without log" in caplog.text

    def test_log_without_sidecar_is_a_miss(self, cache):
        cache.log_path(7).write_text("00\n")

        assert not cache.is_synced(7)

    def test_unreadable_sidecar_is_a_miss(self, cache, txs):
        cache.write(8, txs)
        cache.sidecar_path(8).write_text("{not json")

        assert not cache.is_synced(8)

    @pytest.mark.parametrize("size", [None, 1, 3, 7, 50])
    def test_stream_matches_eager_pipeline(self, cache, txs, size):
        pipeline = TransformPipeline()
        pipeline.use_parse("txo")
        pipeline.use_filter(lambda r: r["lock"] != 4)
        blk = BlockRef(height=600, hash="ab" * 32, time=1_700_000_000)
        cache.write(600, txs)

        expected = pipeline.run(txs, blk)
        stream = cache.read(600, pipeline, blk)

        if size is None:
            assert list(stream()) == expected
        else:
            chunks = list(stream(size))
            assert all(1 <= len(chunk) <= size for chunk in chunks)
            assert [record for chunk in chunks for record in chunk] == expected

    def test_stream_is_restartable(self, cache, txs):
        pipeline = TransformPipeline()
        pipeline.use_parse("hex")
        cache.write(MEMPOOL_KEY, txs)
        stream = cache.read(MEMPOOL_KEY, pipeline)

        first = list(stream())
        assert list(stream()) == first
        assert len(first) == len(txs)


class TestRewrites:
    """Tests for streams over entries that are written again or removed."""

    @pytest.fixture
    def pipeline(self):
        pipeline = TransformPipeline()
        pipeline.use_parse("hex")
        return pipeline

    def test_earlier_stream_refuses_rewritten_entry(self, cache, pipeline):
        a, b = make_tx(1), make_tx(2)
        cache.write(MEMPOOL_KEY, [a])
        first = cache.read(MEMPOOL_KEY, pipeline)

        cache.write(MEMPOOL_KEY, [b])

        with pytest.raises(CacheError):
            list(first())
        assert list(cache.read(MEMPOOL_KEY, pipeline)()) == pipeline.run([b])

    def test_running_traversal_finishes_on_its_log(self, cache, pipeline, txs):
        cache.write(MEMPOOL_KEY, txs)
        records = cache.read(MEMPOOL_KEY, pipeline)()

        head = next(records)
        cache.write(MEMPOOL_KEY, [make_tx(99)])

        assert [head, *records] == pipeline.run(txs)

    def test_stream_after_invalidate(self, cache, pipeline):
        cache.write(12, [make_tx(12)])
        stream = cache.read(12, pipeline)

        cache.invalidate(at=12)

        with pytest.raises(CacheError):
            list(stream())

    def test_stream_of_missing_entry(self, cache, pipeline):
        with pytest.raises(CacheError):
            cache.stream(12, pipeline)


class TestInvalidateAndPrune:
    """Tests for removing cache entries."""

    def test_invalidate_range_is_inclusive(self, cache):
        fill(cache, range(99, 107))

        removed = cache.invalidate(from_=100, to=105)

        assert removed == [100, 101, 102, 103, 104, 105]
        assert cache.block_keys() == [99, 106]
        assert not cache.log_path(100).exists()
        assert not cache.sidecar_path(105).exists()

    def test_invalidate_from_runs_to_highest(self, cache):
        fill(cache, [10, 11, 15, 20])

        cache.invalidate(from_=11)

        assert cache.block_keys() == [10]

    def test_invalidate_single_height(self, cache):
        fill(cache, [10, 11, 12])

        assert cache.invalidate(at=11) == [11]
        assert cache.block_keys() == [10, 12]

    def test_invalidate_missing_is_noop(self, cache):
        assert cache.invalidate(at=42) == []
        assert cache.invalidate(from_=1) == []

    def test_invalidate_needs_bounds(self, cache):
        with pytest.raises(ValueError):
            cache.invalidate()

    def test_prune_keeps_highest(self, cache):
        fill(cache, range(10, 15))
        cache.write(MEMPOOL_KEY, [make_tx(1)])

        assert cache.prune(3) == 2
        assert cache.block_keys() == [12, 13, 14]
        assert cache.is_synced(MEMPOOL_KEY)

    def test_prune_below_count_is_noop(self, cache):
        fill(cache, [1, 2])

        assert cache.prune(3) == 0
        assert cache.block_keys() == [1, 2]

    def test_write_prunes_when_configured(self, tmp_path):
        cache = ChainCache(tmp_path, prune=2)

        fill(cache, [5, 6, 7, 8])

        assert cache.block_keys() == [7, 8]

    def test_mempool_key_never_parsed_as_height(self, cache):
        cache.write(MEMPOOL_KEY, [make_tx(1)])

        assert cache.block_keys() == []

    def test_write_of_older_height_survives_auto_prune(self, tmp_path):
        cache = ChainCache(tmp_path, prune=2)
        pipeline = TransformPipeline()
        pipeline.use_parse("hex")
        fill(cache, [108, 109])

        cache.write(101, [make_tx(101)])

        assert cache.block_keys() == [101, 108, 109]
        assert list(cache.read(101, pipeline)()) == pipeline.run([make_tx(101)])

        # The next write drops it again along with the oldest retained block
        cache.write(110, [make_tx(110)])
        assert cache.block_keys() == [109, 110]

    @pytest.mark.parametrize("count", [0, -1])
    def test_prune_rejects_non_positive_count(self, cache, count):
        fill(cache, [1, 2])

        with pytest.raises(ValueError):
            cache.prune(count)
        assert cache.block_keys() == [1, 2]

    def test_prune_without_retention_is_noop(self, cache):
        fill(cache, [1, 2])

        assert cache.prune() == 0

    def test_invalidate_wide_range_touches_only_cached_keys(self, cache):
        fill(cache, [10, 11, 800_000])

        with patch.object(cache, "remove", wraps=cache.remove) as remove:
            removed = cache.invalidate(from_=0, to=800_000)

        assert removed == [10, 11, 800_000]
        assert remove.call_count == 3
        assert cache.block_keys() == []
