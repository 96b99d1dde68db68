"""
In-memory vector index over chunk embeddings.

Vectors live in one contiguous float32 matrix (rows are swap-removed on
delete) and are searched by cosine similarity with numpy.  Small corpora are
scanned exhaustively; above ``exhaustive_threshold`` entries a multi-table
random-hyperplane LSH narrows the candidate set first.

Metadata filters (language, kind, file, pattern membership, pattern
category) are resolved through secondary indexes *before* ranking, so a
query for ``k`` results returns ``k`` matching results when they exist.

All operations are internally synchronised; ``apply`` performs a batch of
upserts and removals under one lock acquisition so readers never observe a
half-applied file update.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from .embedder import normalize
from .models import Chunk

logger = logging.getLogger(__name__)


@dataclass
class QueryFilter:
    """Restricts a query to chunks matching every non-None field."""

    language: Optional[str] = None
    kind: Optional[str] = None
    category: Optional[str] = None
    file_path: Optional[str] = None
    pattern_member: Optional[bool] = None
    exclude_ids: frozenset = field(default_factory=frozenset)


@dataclass
class SearchHit:
    """One ranked query result (a copy, detached from the index)."""

    chunk_id: str
    similarity: float
    file_path: str
    kind: str
    language: str
    last_modified: float
    patterns: tuple = ()


class VectorIndex:
    """
    Thread-safe cosine-similarity index keyed by chunk id.

    Parameters
    ----------
    dimension:
        Embedding dimension; vectors of any other size are rejected.
    exhaustive_threshold:
        Corpus size up to which queries scan every candidate.
    lsh_tables / lsh_bits:
        Shape of the random-hyperplane LSH used above the threshold.
    seed:
        Seed for the hyperplanes (results are reproducible across runs).
    """

    def __init__(
        self,
        dimension: int,
        exhaustive_threshold: int = 2048,
        lsh_tables: int = 8,
        lsh_bits: int = 12,
        seed: int = 0,
    ) -> None:
        self.dimension = dimension
        self.exhaustive_threshold = exhaustive_threshold
        self._lock = threading.RLock()

        self._matrix = np.zeros((64, dimension), dtype=np.float32)
        self._ids: list[str] = []
        self._rows: dict[str, int] = {}
        self._meta: dict[str, Chunk] = {}

        # Secondary indexes
        self._by_language: dict[str, set[str]] = {}
        self._by_kind: dict[str, set[str]] = {}
        self._by_file: dict[str, set[str]] = {}
        self._by_category: dict[str, set[str]] = {}
        self._tags: dict[str, dict[str, str]] = {}   # chunk_id -> {pattern_id: category}

        # LSH
        rng = np.random.default_rng(seed)
        self._planes = rng.standard_normal((lsh_tables, lsh_bits, dimension)).astype(np.float32)
        self._lsh_bits = lsh_bits
        self._buckets: list[dict[int, set[str]]] = [{} for _ in range(lsh_tables)]
        self._codes: dict[str, list[int]] = {}

    @classmethod
    def from_config(cls, config) -> "VectorIndex":
        return cls(
            dimension=config.EMBEDDING_DIMENSION,
            exhaustive_threshold=config.EXHAUSTIVE_THRESHOLD,
            lsh_tables=config.LSH_TABLES,
            lsh_bits=config.LSH_BITS,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(self, chunk: Chunk, vector=None) -> None:
        """Insert or replace *chunk*; *vector* defaults to ``chunk.vector``."""
        self.apply([(chunk, vector)], [])

    def remove(self, chunk_id: str) -> bool:
        """Remove *chunk_id*; return False if it was not indexed."""
        with self._lock:
            return self._remove_locked(chunk_id)

    def apply(
        self,
        upserts: Iterable[tuple[Chunk, object]],
        removals: Iterable[str] = (),
    ) -> None:
        """Atomically remove *removals* then upsert *upserts*."""
        prepared = []
        for chunk, vector in upserts:
            vec = chunk.vector if vector is None else vector
            if vec is None:
                raise ValueError(f"chunk {chunk.chunk_id} has no vector")
            vec = normalize(vec)
            if vec.shape[0] != self.dimension:
                raise ValueError(
                    f"vector dimension {vec.shape[0]} != index dimension {self.dimension}"
                )
            prepared.append((chunk, vec))

        with self._lock:
            for chunk_id in removals:
                self._remove_locked(chunk_id)
            for chunk, vec in prepared:
                self._upsert_locked(chunk, vec)

    def _upsert_locked(self, chunk: Chunk, vec: np.ndarray) -> None:
        cid = chunk.chunk_id
        meta = dataclasses.replace(chunk, vector=None)
        row = self._rows.get(cid)
        if row is None:
            row = len(self._ids)
            if row >= self._matrix.shape[0]:
                grown = np.zeros((self._matrix.shape[0] * 2, self.dimension), dtype=np.float32)
                grown[:row] = self._matrix[:row]
                self._matrix = grown
            self._ids.append(cid)
            self._rows[cid] = row
        else:
            self._unindex_meta(self._meta[cid])
            self._unindex_lsh(cid)
        self._matrix[row] = vec
        self._meta[cid] = meta
        self._index_meta(meta)
        self._index_lsh(cid, vec)

    def _remove_locked(self, chunk_id: str) -> bool:
        row = self._rows.pop(chunk_id, None)
        if row is None:
            return False
        last = len(self._ids) - 1
        if row != last:
            moved = self._ids[last]
            self._matrix[row] = self._matrix[last]
            self._ids[row] = moved
            self._rows[moved] = row
        self._ids.pop()
        self._matrix[last] = 0.0
        self._unindex_meta(self._meta.pop(chunk_id))
        self._unindex_lsh(chunk_id)
        for category in self._tags.pop(chunk_id, {}).values():
            _discard(self._by_category, category, chunk_id)
        return True

    def _index_meta(self, meta: Chunk) -> None:
        self._by_language.setdefault(meta.language, set()).add(meta.chunk_id)
        self._by_kind.setdefault(meta.kind, set()).add(meta.chunk_id)
        self._by_file.setdefault(meta.file_path, set()).add(meta.chunk_id)

    def _unindex_meta(self, meta: Chunk) -> None:
        _discard(self._by_language, meta.language, meta.chunk_id)
        _discard(self._by_kind, meta.kind, meta.chunk_id)
        _discard(self._by_file, meta.file_path, meta.chunk_id)

    # ------------------------------------------------------------------
    # Pattern tags
    # ------------------------------------------------------------------

    def tag(self, chunk_id: str, pattern_id: str, category: str) -> None:
        """Mark *chunk_id* as a member of *pattern_id* (with its category)."""
        with self._lock:
            if chunk_id not in self._rows:
                return
            tags = self._tags.setdefault(chunk_id, {})
            old = tags.get(pattern_id)
            if old is not None and old != category:
                tags.pop(pattern_id)
                if old not in tags.values():
                    _discard(self._by_category, old, chunk_id)
            tags[pattern_id] = category
            self._by_category.setdefault(category, set()).add(chunk_id)

    def untag(self, chunk_id: str, pattern_id: Optional[str] = None) -> None:
        """Drop one pattern tag (or all tags when *pattern_id* is None)."""
        with self._lock:
            tags = self._tags.get(chunk_id)
            if not tags:
                return
            dropped = list(tags) if pattern_id is None else [pattern_id]
            for pid in dropped:
                category = tags.pop(pid, None)
                if category is not None and category not in tags.values():
                    _discard(self._by_category, category, chunk_id)
            if not tags:
                del self._tags[chunk_id]

    def patterns_of(self, chunk_id: str) -> dict[str, str]:
        with self._lock:
            return dict(self._tags.get(chunk_id, {}))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, chunk_id: str) -> Optional[Chunk]:
        """Return a copy of the chunk with its (normalised) vector attached."""
        with self._lock:
            row = self._rows.get(chunk_id)
            if row is None:
                return None
            return dataclasses.replace(self._meta[chunk_id], vector=self._matrix[row].copy())

    def vectors(self, chunk_ids: Iterable[str]) -> dict[str, np.ndarray]:
        """Copies of the vectors for the indexed subset of *chunk_ids*."""
        with self._lock:
            return {
                cid: self._matrix[self._rows[cid]].copy()
                for cid in chunk_ids
                if cid in self._rows
            }

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._ids)

    def ids_for_file(self, file_path: str) -> set[str]:
        with self._lock:
            return set(self._by_file.get(file_path, ()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, chunk_id: str) -> bool:
        with self._lock:
            return chunk_id in self._rows

    def query(
        self,
        vector,
        k: int,
        filter: Optional[QueryFilter] = None,
        min_similarity: Optional[float] = None,
    ) -> list[SearchHit]:
        """
        Return up to *k* hits ranked by cosine similarity.

        Ties are broken by most recent ``last_modified``, then by chunk id.
        """
        if k <= 0:
            return []
        q = normalize(vector)
        if q.shape[0] != self.dimension:
            raise ValueError(f"query dimension {q.shape[0]} != index dimension {self.dimension}")

        with self._lock:
            allowed = self._filtered_ids(filter)
            total = len(self._ids) if allowed is None else len(allowed)
            if total == 0:
                return []

            if total <= self.exhaustive_threshold:
                candidates = self._ids if allowed is None else list(allowed)
            else:
                probed = self._probe(q)
                if allowed is not None:
                    probed &= allowed
                if len(probed) >= k:
                    candidates = list(probed)
                else:
                    candidates = self._ids if allowed is None else list(allowed)

            rows = np.fromiter((self._rows[c] for c in candidates), dtype=np.int64,
                               count=len(candidates))
            scores = self._matrix[rows] @ q

            if min_similarity is not None:
                keep = scores >= min_similarity
                rows, scores = rows[keep], scores[keep]
            if scores.shape[0] == 0:
                return []
            if scores.shape[0] > k:
                # Keep everything tied with the k-th best score.
                kth = np.partition(scores, scores.shape[0] - k)[scores.shape[0] - k]
                keep = scores >= kth
                rows, scores = rows[keep], scores[keep]

            hits = []
            for row, score in zip(rows.tolist(), scores.tolist()):
                cid = self._ids[row]
                meta = self._meta[cid]
                hits.append(SearchHit(
                    chunk_id=cid,
                    similarity=float(min(1.0, max(-1.0, score))),
                    file_path=meta.file_path,
                    kind=meta.kind,
                    language=meta.language,
                    last_modified=meta.last_modified,
                    patterns=tuple(sorted(self._tags.get(cid, {}))),
                ))

        hits.sort(key=lambda h: (-h.similarity, -h.last_modified, h.chunk_id))
        return hits[:k]

    def _filtered_ids(self, flt: Optional[QueryFilter]) -> Optional[set[str]]:
        """Resolve *flt* to an id set (None means "everything")."""
        if flt is None:
            return None
        sets: list[set[str]] = []
        if flt.language is not None:
            sets.append(self._by_language.get(flt.language, set()))
        if flt.kind is not None:
            sets.append(self._by_kind.get(flt.kind, set()))
        if flt.file_path is not None:
            sets.append(self._by_file.get(flt.file_path, set()))
        if flt.category is not None:
            sets.append(self._by_category.get(flt.category, set()))
        if flt.pattern_member is True:
            sets.append(set(self._tags))

        if sets:
            sets.sort(key=len)
            result = set(sets[0])
            for other in sets[1:]:
                result &= other
        elif flt.pattern_member is False or flt.exclude_ids:
            result = set(self._ids)
        else:
            return None

        if flt.pattern_member is False:
            result -= self._tags.keys()
        if flt.exclude_ids:
            result -= set(flt.exclude_ids)
        return result

    # ------------------------------------------------------------------
    # LSH
    # ------------------------------------------------------------------

    def _hash(self, vec: np.ndarray) -> list[int]:
        bits = (self._planes @ vec) > 0          # (tables, bits)
        weights = 1 << np.arange(self._lsh_bits, dtype=np.int64)
        return [int(code) for code in (bits.astype(np.int64) * weights).sum(axis=1)]

    def _index_lsh(self, chunk_id: str, vec: np.ndarray) -> None:
        codes = self._hash(vec)
        self._codes[chunk_id] = codes
        for table, code in zip(self._buckets, codes):
            table.setdefault(code, set()).add(chunk_id)

    def _unindex_lsh(self, chunk_id: str) -> None:
        codes = self._codes.pop(chunk_id, None)
        if codes is None:
            return
        for table, code in zip(self._buckets, codes):
            _discard(table, code, chunk_id)

    def _probe(self, q: np.ndarray) -> set[str]:
        """Candidates from the query's buckets and their 1-bit neighbours."""
        found: set[str] = set()
        for table, code in zip(self._buckets, self._hash(q)):
            found.update(table.get(code, ()))
            for bit in range(self._lsh_bits):
                found.update(table.get(code ^ (1 << bit), ()))
        return found


def _discard(index: dict, key, chunk_id: str) -> None:
    members = index.get(key)
    if members is None:
        return
    members.discard(chunk_id)
    if not members:
        del index[key]
