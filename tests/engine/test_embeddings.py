"""Embedding store, cache and batch tuning tests."""

from __future__ import annotations

import threading

import pytest

from linkplanner.engine.embeddings import (
    BatchSizeTuner,
    EmbeddingBatchError,
    EmbeddingStore,
    HashedEmbeddingProvider,
    LRUCache,
    centroid,
)
from linkplanner.engine.text import text_hash

from .conftest import CountingProvider


class DictBacking:
    def __init__(self):
        self.rows = {}
        self.reads = 0

    def get_many(self, project_id, hashes):
        self.reads += 1
        return {digest: self.rows[(project_id, digest)] for digest in hashes if (project_id, digest) in self.rows}

    def put_many(self, project_id, vectors):
        for digest, vector in vectors.items():
            self.rows[(project_id, digest)] = vector


class FlakyProvider(CountingProvider):
    """Fails any batch larger than ``limit`` texts."""

    def __init__(self, limit, dim=16):
        super().__init__(dim=dim)
        self.limit = limit

    def embed(self, texts):
        if len(texts) > self.limit:
            raise RuntimeError("payload too large")
        return super().embed(texts)


class BrokenProvider:
    dim = 16

    def embed(self, texts):
        raise RuntimeError("service unavailable")


def _store(provider, **kwargs):
    kwargs.setdefault("memory", LRUCache(1000))
    return EmbeddingStore(provider, project_id=1, **kwargs)


def test_hashed_provider_is_deterministic_and_unit_length():
    provider = HashedEmbeddingProvider(dim=32)
    first, second = provider.embed(["Coffee brewing guide", "coffee brewing guide"])
    assert first == second
    assert sum(value * value for value in first) == pytest.approx(1.0)


def test_normalised_duplicates_are_computed_once():
    provider = CountingProvider()
    store = _store(provider)

    vectors = store.ensure_many([("a", "Espresso basics."), ("b", "  espresso   BASICS"), ("c", "Latte art")])

    assert vectors["a"] == vectors["b"]
    assert len(provider.texts) == 2
    assert store.stats.computed == 2


def test_second_pass_hits_memory_cache():
    provider = CountingProvider()
    memory = LRUCache(100)
    store = _store(provider, memory=memory)
    store.ensure_many([("a", "Grinder settings"), ("b", "Water temperature")])

    again = _store(provider, memory=memory)
    again.ensure_many([("a", "Grinder settings"), ("b", "Water temperature")])

    assert len(provider.texts) == 2
    assert again.stats.memory_hits == 2
    assert again.stats.computed == 0


def test_backing_cache_is_consulted_and_written_through():
    provider = CountingProvider()
    backing = DictBacking()
    _store(provider, backing=backing).ensure_many([("a", "Milk frothing")])
    assert (1, text_hash("Milk frothing")) in backing.rows

    fresh = _store(provider, backing=backing, memory=LRUCache(10))
    fresh.ensure("a", "Milk frothing")

    assert len(provider.texts) == 1
    assert fresh.stats.persistent_hits == 1
    assert fresh.stats.cache_hits == 1


def test_memory_cache_is_scoped_per_project():
    provider = CountingProvider()
    memory = LRUCache(100)
    EmbeddingStore(provider, project_id=1, memory=memory).ensure("a", "Pour over")
    EmbeddingStore(provider, project_id=2, memory=memory).ensure("a", "Pour over")
    assert len(provider.texts) == 2


def test_progress_reports_each_batch():
    provider = CountingProvider()
    store = _store(provider, tuner=BatchSizeTuner(initial=8, minimum=8, maximum=8))
    calls = []

    store.ensure_many([(idx, f"distinct text number {idx}") for idx in range(20)], progress=lambda done, total: calls.append((done, total)))

    assert calls == [(8, 20), (16, 20), (20, 20)]
    assert store.stats.batches == [8, 8, 4]


def test_failed_batch_is_retried_with_smaller_size():
    provider = FlakyProvider(limit=8)
    store = _store(provider, tuner=BatchSizeTuner(initial=16, minimum=8, maximum=64))

    vectors = store.ensure_many([(idx, f"paragraph {idx} about roasting") for idx in range(16)])

    assert len(vectors) == 16
    assert store.tuner.size == 8
    assert store.stats.batches == [8, 8]


def test_batch_failing_after_retry_raises():
    store = _store(BrokenProvider(), tuner=BatchSizeTuner(initial=8, minimum=8))
    with pytest.raises(EmbeddingBatchError):
        store.ensure_many([("a", "anything at all")])


def test_wrong_vector_count_is_a_batch_error():
    class ShortProvider:
        dim = 4

        def embed(self, texts):
            return [[1.0, 0.0, 0.0, 0.0]]

    store = _store(ShortProvider())
    with pytest.raises(EmbeddingBatchError):
        store.ensure_many([("a", "one text"), ("b", "another text")])


def test_slow_provider_times_out():
    release = threading.Event()

    class SlowProvider:
        dim = 4

        def embed(self, texts):
            release.wait(2)
            return [[1.0, 0.0, 0.0, 0.0] for _ in texts]

    store = _store(SlowProvider(), batch_timeout=0.05)
    try:
        with pytest.raises(EmbeddingBatchError):
            store.ensure("a", "slow text")
    finally:
        release.set()


def test_tuner_shrinks_on_slow_and_grows_on_fast_batches():
    tuner = BatchSizeTuner(initial=32, minimum=8, maximum=128, slow_seconds=2.0, fast_seconds=0.5)

    assert tuner.observe(3.0) == 16
    assert tuner.observe(1.0) == 16
    assert tuner.observe(0.1) == 24
    for _ in range(10):
        tuner.observe(0.1)
    assert tuner.size == 128
    for _ in range(10):
        tuner.observe(5.0)
    assert tuner.size == 8


def test_tuner_calibrates_once_from_probe_latency():
    ticks = iter([0.0, 3.0])
    tuner = BatchSizeTuner(initial=32)
    sizes = []

    assert tuner.calibrate(sizes.append, clock=lambda: next(ticks)) == 16
    assert sizes == [32]
    assert tuner.calibrate(sizes.append) == 16
    assert sizes == [32]


def test_failing_probe_counts_as_slow():
    def probe(size):
        raise RuntimeError("boom")

    tuner = BatchSizeTuner(initial=32)
    assert tuner.calibrate(probe) == 16


def test_lru_cache_evicts_least_recently_used():
    cache = LRUCache(2)
    cache.put("a", [1.0])
    cache.put("b", [2.0])
    cache.get("a")
    cache.put("c", [3.0])

    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_centroid_is_unit_mean():
    assert centroid([[1.0, 0.0], [0.0, 1.0]]) == pytest.approx([2 ** -0.5, 2 ** -0.5])
    assert centroid([]) == []
