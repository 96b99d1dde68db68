"""
Unit tests for pattern_guard.index.vector_index
"""

from __future__ import annotations

import numpy as np
import pytest

from pattern_guard.index.models import Chunk, ChunkKind
from pattern_guard.index.vector_index import QueryFilter, VectorIndex

DIM = 8


def _chunk(cid: str, path: str = "a.py", language: str = "python",
           kind: str = ChunkKind.FUNCTION, modified: float = 0.0) -> Chunk:
    return Chunk(
        chunk_id=cid, file_path=path, symbol=cid, ordinal=0, kind=kind,
        language=language, line_start=1, line_end=2, byte_start=0, byte_end=10,
        content=cid, content_hash=cid, last_modified=modified,
    )


def _basis(i: int, dim: int = DIM) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[i] = 1.0
    return vec


def _mix(a: int, b: int, weight: float) -> np.ndarray:
    return _basis(a) * weight + _basis(b) * (1.0 - weight)


@pytest.fixture
def index():
    idx = VectorIndex(DIM)
    idx.upsert(_chunk("x0"), _basis(0))
    idx.upsert(_chunk("x1", path="b.py"), _mix(0, 1, 0.9))
    idx.upsert(_chunk("x2", path="b.py", language="javascript"), _mix(0, 1, 0.6))
    idx.upsert(_chunk("y0", kind=ChunkKind.CLASS), _basis(3))
    return idx


class TestMutation:
    def test_upsert_replaces(self, index):
        index.upsert(_chunk("x0"), _basis(5))
        hits = index.query(_basis(5), 1)
        assert hits[0].chunk_id == "x0"
        assert len(index) == 4

    def test_remove(self, index):
        assert index.remove("x1")
        assert not index.remove("x1")
        assert "x1" not in index
        assert all(h.chunk_id != "x1" for h in index.query(_basis(0), 10))

    def test_swap_remove_keeps_other_vectors(self, index):
        before = index.vectors(["y0"])["y0"]
        index.remove("x0")
        assert np.allclose(index.vectors(["y0"])["y0"], before)

    def test_apply_is_atomic_batch(self, index):
        index.apply([(_chunk("z0"), _basis(6))], ["x0", "x1"])
        assert sorted(index.ids()) == ["x2", "y0", "z0"]

    def test_wrong_dimension_rejected(self, index):
        with pytest.raises(ValueError):
            index.upsert(_chunk("bad"), np.ones(DIM + 1))
        assert "bad" not in index

    def test_missing_vector_rejected(self, index):
        with pytest.raises(ValueError):
            index.apply([(_chunk("novec"), None)])

    def test_get_returns_copy_with_vector(self, index):
        chunk = index.get("x0")
        assert chunk.vector is not None
        chunk.vector[:] = 0.0
        assert index.get("x0").vector.any()

    def test_grows_past_initial_capacity(self):
        idx = VectorIndex(4)
        for i in range(200):
            idx.upsert(_chunk(f"c{i:03d}"), np.array([1.0, i, 0.0, 0.0]))
        assert len(idx) == 200
        assert idx.query(np.array([1.0, 0.0, 0.0, 0.0]), 1)[0].chunk_id == "c000"


class TestQuery:
    def test_ranked_by_similarity(self, index):
        hits = index.query(_basis(0), 3)
        assert [h.chunk_id for h in hits] == ["x0", "x1", "x2"]
        assert hits[0].similarity == pytest.approx(1.0)

    def test_min_similarity(self, index):
        hits = index.query(_basis(0), 10, min_similarity=0.95)
        assert [h.chunk_id for h in hits] == ["x0", "x1"]

    def test_filter_applied_before_ranking(self, index):
        hits = index.query(_basis(0), 1, filter=QueryFilter(language="javascript"))
        assert [h.chunk_id for h in hits] == ["x2"]

    def test_kind_file_and_exclude_filters(self, index):
        assert [h.chunk_id for h in index.query(_basis(0), 5, QueryFilter(kind=ChunkKind.CLASS))] == ["y0"]
        assert {h.chunk_id for h in index.query(_basis(0), 5, QueryFilter(file_path="b.py"))} == {"x1", "x2"}
        hits = index.query(_basis(0), 1, QueryFilter(exclude_ids=frozenset({"x0"})))
        assert hits[0].chunk_id == "x1"

    def test_ties_broken_by_recency_then_id(self):
        idx = VectorIndex(DIM)
        idx.upsert(_chunk("b", modified=1.0), _basis(0))
        idx.upsert(_chunk("a", modified=1.0), _basis(0))
        idx.upsert(_chunk("c", modified=5.0), _basis(0))
        assert [h.chunk_id for h in idx.query(_basis(0), 3)] == ["c", "a", "b"]

    def test_empty_and_zero_k(self, index):
        assert VectorIndex(DIM).query(_basis(0), 5) == []
        assert index.query(_basis(0), 0) == []


class TestTags:
    def test_pattern_member_filter(self, index):
        index.tag("x1", "pat_a", "database")
        hits = index.query(_basis(0), 5, QueryFilter(pattern_member=True))
        assert [h.chunk_id for h in hits] == ["x1"]
        assert hits[0].patterns == ("pat_a",)
        outside = index.query(_basis(0), 5, QueryFilter(pattern_member=False))
        assert "x1" not in {h.chunk_id for h in outside}

    def test_category_filter_and_untag(self, index):
        index.tag("x0", "pat_a", "database")
        index.tag("x2", "pat_b", "api")
        assert [h.chunk_id for h in index.query(_basis(0), 5, QueryFilter(category="api"))] == ["x2"]
        index.untag("x2", "pat_b")
        assert index.query(_basis(0), 5, QueryFilter(category="api")) == []
        assert index.patterns_of("x0") == {"pat_a": "database"}

    def test_remove_drops_tags(self, index):
        index.tag("x0", "pat_a", "database")
        index.remove("x0")
        assert index.query(_basis(0), 5, QueryFilter(category="database")) == []

    def test_tag_unknown_chunk_is_ignored(self, index):
        index.tag("missing", "pat_a", "database")
        assert index.patterns_of("missing") == {}


class TestLsh:
    def test_lsh_path_finds_exact_match(self):
        rng = np.random.default_rng(7)
        idx = VectorIndex(32, exhaustive_threshold=10, lsh_tables=6, lsh_bits=6)
        vectors = rng.standard_normal((300, 32)).astype(np.float32)
        for i, vec in enumerate(vectors):
            idx.upsert(_chunk(f"c{i:03d}"), vec)
        for i in (0, 150, 299):
            assert idx.query(vectors[i], 1)[0].chunk_id == f"c{i:03d}"

    def test_lsh_falls_back_when_too_few_candidates(self):
        idx = VectorIndex(DIM, exhaustive_threshold=2)
        for i in range(5):
            idx.upsert(_chunk(f"c{i}"), _basis(i))
        # Five orthogonal vectors: buckets rarely hold k of them
        assert len(idx.query(_basis(0), 5)) == 5


def test_from_config(config):
    idx = VectorIndex.from_config(config)
    assert idx.dimension == config.EMBEDDING_DIMENSION
    assert idx.exhaustive_threshold == config.EXHAUSTIVE_THRESHOLD
