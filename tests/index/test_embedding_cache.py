"""
Unit tests for pattern_guard.index.embedding_cache
"""

from __future__ import annotations

import threading

import numpy as np
import pytest

from pattern_guard.errors import EmbeddingFailure, StoreFailure
from pattern_guard.index.embedder import Embedder, LexicalEmbedder, lexical_vector
from pattern_guard.index.embedding_cache import CachedVector, EmbeddingCache


class CountingEmbedder(LexicalEmbedder):
    def __init__(self, dimension: int = 16) -> None:
        super().__init__(dimension)
        self.calls: list[list[str]] = []

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        return super().embed_batch(texts)


class FlakyEmbedder(Embedder):
    """Fails the first *failures* calls, then returns constant vectors."""

    def __init__(self, failures: int, dimension: int = 8) -> None:
        super().__init__(dimension)
        self.failures = failures
        self.calls = 0

    def embed_batch(self, texts):
        self.calls += 1
        if self.calls <= self.failures:
            raise EmbeddingFailure("model offline")
        return [[1.0] + [0.0] * (self.dimension - 1) for _ in texts]


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestLookup:
    def test_hit_after_miss(self):
        emb = CountingEmbedder()
        cache = EmbeddingCache(emb)
        first = cache.get_or_compute("h1", "def f(): pass")
        second = cache.get_or_compute("h1", "def f(): pass")
        assert first is second
        assert len(emb.calls) == 1
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_batch_deduplicates_hashes(self):
        emb = CountingEmbedder()
        cache = EmbeddingCache(emb)
        result = cache.get_or_compute_many([("h1", "a"), ("h1", "a"), ("h2", "b")])
        assert set(result) == {"h1", "h2"}
        assert emb.calls == [["a", "b"]]

    def test_vectors_are_unit_length(self):
        cache = EmbeddingCache(CountingEmbedder())
        vec = cache.get_or_compute("h", "select users from table").vector
        assert np.isclose(np.linalg.norm(vec), 1.0)

    def test_concurrent_requests_embed_once(self):
        gate = threading.Event()

        class SlowEmbedder(CountingEmbedder):
            def embed_batch(self, texts):
                gate.wait(timeout=5)
                return super().embed_batch(texts)

        emb = SlowEmbedder()
        cache = EmbeddingCache(emb)
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(cache.get_or_compute("h", "x y z")))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        gate.set()
        for t in threads:
            t.join(timeout=5)
        assert len(results) == 4
        assert len(emb.calls) == 1


class TestRetryAndFallback:
    def test_retries_then_succeeds(self):
        sleeps = []
        emb = FlakyEmbedder(failures=2)
        cache = EmbeddingCache(emb, max_retries=3, retry_delay=0.5, sleep=sleeps.append)
        entry = cache.get_or_compute("h", "text")
        assert not entry.degraded
        assert emb.calls == 3
        assert len(sleeps) == 2
        assert sleeps[1] > sleeps[0]

    def test_exhausted_retries_fall_back_to_lexical(self):
        emb = FlakyEmbedder(failures=10, dimension=32)
        cache = EmbeddingCache(emb, max_retries=2, sleep=lambda s: None)
        entry = cache.get_or_compute("h", "fetch users by id")
        assert entry.degraded
        assert np.allclose(entry.vector, lexical_vector("fetch users by id", 32))
        assert cache.stats()["degraded"] == 1

    def test_degraded_entry_recomputed_after_delay(self):
        clock = _Clock()
        emb = FlakyEmbedder(failures=1)
        cache = EmbeddingCache(emb, max_retries=1, degraded_retry_seconds=60,
                               clock=clock, sleep=lambda s: None)
        assert cache.get_or_compute("h", "t").degraded
        # Within the delay the degraded entry is served as is
        assert cache.get_or_compute("h", "t").degraded
        assert emb.calls == 1
        clock.now += 61
        assert not cache.get_or_compute("h", "t").degraded
        assert emb.calls == 2


class TestReferenceCounting:
    def test_orphans_evicted_lru(self):
        cache = EmbeddingCache(CountingEmbedder(), max_orphans=2)
        for h in ("a", "b", "c"):
            cache.get_or_compute(h, h)
        assert cache.peek("a") is None
        assert cache.peek("b") is not None
        assert cache.peek("c") is not None

    def test_referenced_entries_never_evicted(self):
        cache = EmbeddingCache(CountingEmbedder(), max_orphans=1)
        cache.get_or_compute("keep", "keep")
        cache.acquire("keep")
        for h in ("x", "y", "z"):
            cache.get_or_compute(h, h)
        assert cache.peek("keep") is not None
        assert cache.refcount("keep") == 1

    def test_release_to_zero_orphans_entry(self):
        cache = EmbeddingCache(CountingEmbedder(), max_orphans=0)
        cache.acquire("h")
        cache.get_or_compute("h", "h")
        cache.acquire("h")
        cache.release("h")
        assert cache.peek("h") is not None
        cache.release("h")
        assert cache.peek("h") is None
        assert cache.refcount("h") == 0


class TestPersistence:
    def test_computed_entries_saved(self):
        saved = {}

        class Store:
            def save_embeddings(self, entries):
                saved.update(entries)

        cache = EmbeddingCache(CountingEmbedder(), store=Store())
        cache.get_or_compute("h", "code")
        assert set(saved) == {"h"}

    def test_store_failure_is_not_fatal(self):
        class Store:
            def save_embeddings(self, entries):
                raise StoreFailure("disk full")

        cache = EmbeddingCache(CountingEmbedder(), store=Store())
        assert cache.get_or_compute("h", "code").vector is not None

    def test_load_seeds_entries(self):
        emb = CountingEmbedder()
        cache = EmbeddingCache(emb)
        cache.load({"h": CachedVector(np.ones(16, dtype=np.float32), False, 0.0)})
        assert len(cache) == 1
        cache.get_or_compute("h", "ignored")
        assert emb.calls == []


def test_from_config(config):
    cache = EmbeddingCache.from_config(config, LexicalEmbedder(8))
    assert cache.dimension == 8


@pytest.mark.parametrize("failures", [0, 5])
def test_result_always_has_embedder_dimension(failures):
    cache = EmbeddingCache(FlakyEmbedder(failures, dimension=12), max_retries=2,
                           sleep=lambda s: None)
    assert cache.get_or_compute("h", "text here").vector.shape == (12,)
