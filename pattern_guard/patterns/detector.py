"""
Pattern Detector — incremental density-based clustering of the vector index.

For each pending chunk (and each of its neighbours) the index is queried for
every chunk with cosine similarity >= ``threshold``.  A chunk whose
neighbourhood, itself included, holds at least ``min_cluster_size`` chunks is
a core point and is unioned with all of its neighbours.  The union-find for
a pass is seeded with the current members of every pattern the pass touches,
so a pass only ever grows, joins or merges existing patterns:

  - a group with no pattern becomes a new pattern once it has
    ``max(2, min_cluster_size)`` members
  - a group spanning several patterns merges them into the oldest
  - afterwards, touched patterns whose centroids are within ``threshold``
    of another pattern's centroid are merged as well

Removed chunks simply leave their pattern; a pattern with no members left is
archived (never deleted).  ``rebuild()`` recomputes everything from scratch
and depends only on the indexed vectors, not on the order files arrived in.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import Counter
from typing import Callable, Iterable, Optional

import numpy as np
from networkx.utils import UnionFind

from ..errors import StoreFailure
from ..index.models import IndexChange
from ..index.vector_index import VectorIndex
from .categories import CategoryClassifier, heuristic_name
from .confidence import ConfidenceModel, centroid_of, cohesion_of
from .models import Category, Pattern, make_pattern_id

logger = logging.getLogger(__name__)

LOW_CONFIDENCE = 0.3


class PatternDetector:
    """
    Owns the Pattern lifecycle.  Chunks are only ever read through the
    vector index.

    Parameters
    ----------
    index:
        The shared :class:`VectorIndex`.
    threshold:
        Similarity threshold ``τ`` for neighbourhoods and centroid merges.
    min_cluster_size:
        Core-point neighbourhood size ``m`` (the chunk itself included).
    neighbor_k:
        Initial ``k`` for neighbourhood queries; doubled while saturated.
    store:
        Optional state store for persisting patterns.
    store_max_retries / store_retry_delay:
        Backoff policy for pattern saves.  Patterns that still fail are
        retried on the next pass.
    classifier / confidence:
        Category rules and confidence formula.
    """

    def __init__(
        self,
        index: VectorIndex,
        threshold: float = 0.85,
        min_cluster_size: int = 3,
        neighbor_k: int = 32,
        store=None,
        classifier: Optional[CategoryClassifier] = None,
        confidence: Optional[ConfidenceModel] = None,
        clock: Callable[[], float] = time.time,
        store_max_retries: int = 3,
        store_retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._index = index
        self.threshold = threshold
        self.min_cluster_size = max(1, min_cluster_size)
        self.neighbor_k = max(1, neighbor_k)
        self._store = store
        self._classifier = classifier or CategoryClassifier()
        self._confidence = confidence or ConfidenceModel()
        self._clock = clock
        self.store_max_retries = max(1, store_max_retries)
        self.store_retry_delay = store_retry_delay
        self._sleep = sleep

        self._lock = threading.RLock()
        self._patterns: dict[str, Pattern] = {}
        self._membership: dict[str, str] = {}      # chunk_id -> pattern_id
        self._pending: set[str] = set()
        self._dirty: set[str] = set()              # patterns that lost members
        self._unsaved: set[str] = set()            # patterns whose last save failed
        self._listeners: list[Callable[[list[Pattern]], None]] = []

    @classmethod
    def from_config(cls, config, index: VectorIndex, store=None, clock=time.time) -> "PatternDetector":
        return cls(
            index,
            threshold=config.CLUSTER_THRESHOLD,
            min_cluster_size=config.MIN_CLUSTER_SIZE,
            neighbor_k=config.NEIGHBOR_K,
            store=store,
            classifier=CategoryClassifier.from_config(config),
            confidence=ConfidenceModel.from_config(config),
            clock=clock,
            store_max_retries=config.STORE_MAX_RETRIES,
            store_retry_delay=config.STORE_RETRY_DELAY,
        )

    @property
    def promotion_size(self) -> int:
        return max(2, self.min_cluster_size)

    def add_listener(self, listener: Callable[[list[Pattern]], None]) -> None:
        """Register *listener* for ``pattern_updated`` notifications."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Change intake
    # ------------------------------------------------------------------

    def process_change(self, change: IndexChange, recluster: bool = True) -> list[Pattern]:
        """
        Record an index delta; removed chunks leave their patterns, added
        and changed chunks are queued.  Runs :meth:`recluster` unless
        *recluster* is False.
        """
        with self._lock:
            for cid in change.removed:
                self._pending.discard(cid)
                self._detach(cid)
            for cid in change.changed:
                self._detach(cid)
            self._pending.update(change.touched)
        if recluster:
            return self.recluster()
        return []

    def _detach(self, chunk_id: str) -> None:
        pid = self._membership.pop(chunk_id, None)
        if pid is None:
            return
        pattern = self._patterns[pid]
        pattern.members = [m for m in pattern.members if m != chunk_id]
        self._index.untag(chunk_id, pid)
        self._dirty.add(pid)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------

    def recluster(self) -> list[Pattern]:
        """Incremental pass over pending chunks; returns updated patterns."""
        with self._lock:
            pending = sorted(self._pending)
            self._pending.clear()
            dirty = set(self._dirty)
            self._dirty.clear()
            if not pending and not dirty:
                self._persist([])
                return []

            before = self._snapshot(dirty | self._patterns_of(pending))
            neighbourhoods = self._neighbourhoods(pending)
            # Neighbours of pending chunks may have just become core points
            reached = {n for nbrs in neighbourhoods.values() for n in nbrs}
            border = sorted(reached - set(neighbourhoods))
            neighbourhoods.update(self._neighbourhoods(border))

            involved = set(neighbourhoods)
            for nbrs in neighbourhoods.values():
                involved.update(nbrs)
            seeds = dirty | self._patterns_of(involved)
            touched = self._apply_groups(neighbourhoods, seeds, dirty)
            touched |= self._merge_close(touched)
            updated = self._finish(touched, before)

        if updated:
            logger.info("[patterns] Re-cluster pass: %d pending chunks, %d patterns updated",
                        len(pending), len(updated))
        self._notify(updated)
        return updated

    def rebuild(self) -> list[Pattern]:
        """
        Full recompute from the current index contents.

        Deterministic for a fixed corpus: pattern ids derive from their
        smallest member id and every step iterates in sorted order.
        """
        with self._lock:
            before = self._snapshot(self._patterns)
            for pid, pattern in self._patterns.items():
                for cid in pattern.members:
                    self._index.untag(cid, pid)
                pattern.members = []
            self._membership.clear()
            self._pending.clear()
            self._dirty.clear()

            neighbourhoods = self._neighbourhoods(self._index.ids())
            touched = self._apply_groups(neighbourhoods, set(), set())
            touched |= self._merge_close(touched, all_pairs=True)
            touched |= set(self._patterns)
            updated = self._finish(touched, before)
            active = sum(1 for p in self._patterns.values() if p.active)

        logger.info("[patterns] Rebuild complete: %d active patterns from %d chunks",
                    active, len(neighbourhoods))
        self._notify(updated)
        return updated

    def _patterns_of(self, chunk_ids: Iterable[str]) -> set[str]:
        return {self._membership[c] for c in chunk_ids if c in self._membership}

    def _neighbourhoods(self, chunk_ids: list[str]) -> dict[str, list[str]]:
        """
        ``τ``-neighbourhood (self included) of each indexed chunk.

        Exact while the index is scanned exhaustively; above its
        ``exhaustive_threshold`` the LSH probe makes it approximate.
        """
        vectors = self._index.vectors(chunk_ids)
        total = len(self._index)
        result: dict[str, list[str]] = {}
        for cid in chunk_ids:
            vec = vectors.get(cid)
            if vec is None:
                continue
            k = self.neighbor_k
            while True:
                hits = self._index.query(vec, k, min_similarity=self.threshold)
                if len(hits) < k or k >= total:
                    break
                k *= 2
            nbrs = {h.chunk_id for h in hits}
            nbrs.add(cid)
            result[cid] = sorted(nbrs)
        return result

    def _apply_groups(
        self,
        neighbourhoods: dict[str, list[str]],
        seeds: set[str],
        dirty: set[str],
    ) -> set[str]:
        """Union core neighbourhoods with seeded patterns; assign groups."""
        uf = UnionFind()
        for pid in sorted(seeds):
            members = self._patterns[pid].members
            if members:
                uf.union(*members)
        for cid in sorted(neighbourhoods):
            nbrs = neighbourhoods[cid]
            if len(nbrs) >= self.min_cluster_size:
                uf.union(*nbrs)

        now = self._clock()
        touched = set(dirty)
        for group in sorted((sorted(s) for s in uf.to_sets()), key=lambda g: g[0]):
            owners = sorted(
                {self._membership[c] for c in group if c in self._membership},
                key=self._age_key,
            )
            if not owners:
                if len(group) < self.promotion_size:
                    continue
                target = self._create(group[0], now)
            else:
                target = self._patterns[owners[0]]
                for pid in owners[1:]:
                    self._absorb(target, self._patterns[pid])
                    touched.add(pid)
            for cid in group:
                if self._membership.get(cid) != target.pattern_id:
                    self._membership[cid] = target.pattern_id
            target.members = sorted(set(target.members) | set(group))
            touched.add(target.pattern_id)
        return touched

    def _create(self, anchor: str, now: float) -> Pattern:
        pid = make_pattern_id(anchor)
        pattern = self._patterns.get(pid)
        if pattern is None:
            pattern = Pattern(
                pattern_id=pid,
                name=pid,
                category=Category.UTILITY,
                first_seen=now,
                last_seen=now,
            )
            self._patterns[pid] = pattern
            logger.info("[patterns] New pattern %s", pid)
        else:
            # Same anchor as an archived pattern: revive it
            pattern.archived = False
            pattern.merged_into = None
        return pattern

    def _absorb(self, target: Pattern, source: Pattern) -> None:
        """Merge *source* into *target* (the older pattern)."""
        for cid in source.members:
            self._membership[cid] = target.pattern_id
            self._index.untag(cid, source.pattern_id)
        target.members = sorted(set(target.members) | set(source.members))
        target.first_seen = min(target.first_seen, source.first_seen)
        source.members = []
        source.archived = True
        source.merged_into = target.pattern_id
        logger.info("[patterns] Merged %s into %s", source.pattern_id, target.pattern_id)

    def _merge_close(self, touched: set[str], all_pairs: bool = False) -> set[str]:
        """Merge patterns whose centroids are within ``τ``; repeat to a fixpoint."""
        merged: set[str] = set()
        for pid in touched:
            self._refresh_centroid(self._patterns[pid])
        while True:
            active = sorted(
                (p for p in self._patterns.values() if p.active and p.centroid is not None),
                key=lambda p: self._age_key(p.pattern_id),
            )
            if len(active) < 2:
                return merged
            matrix = np.stack([p.centroid for p in active])
            sims = matrix @ matrix.T
            pair = None
            for i in range(len(active)):
                for j in range(i + 1, len(active)):
                    if sims[i, j] < self.threshold:
                        continue
                    if all_pairs or active[i].pattern_id in touched or active[j].pattern_id in touched:
                        pair = (active[i], active[j])
                        break
                if pair:
                    break
            if pair is None:
                return merged
            target, source = pair
            self._absorb(target, source)
            self._refresh_centroid(target)
            merged.update((target.pattern_id, source.pattern_id))
            touched = touched | {target.pattern_id}

    def _age_key(self, pattern_id: str) -> tuple[float, str]:
        return (self._patterns[pattern_id].first_seen, pattern_id)

    def _refresh_centroid(self, pattern: Pattern) -> Optional[np.ndarray]:
        vectors = self._index.vectors(pattern.members)
        if not vectors:
            pattern.centroid = None
            return None
        matrix = np.stack([vectors[c] for c in sorted(vectors)])
        pattern.centroid = centroid_of(matrix)
        return matrix

    def _finish(self, touched: set[str], before: dict[str, set[str]]) -> list[Pattern]:
        """Recompute stats, archive empties, sync index tags and persist."""
        now = self._clock()
        updated: list[Pattern] = []
        for pid in sorted(touched):
            pattern = self._patterns[pid]
            # Members evicted from the index since they joined
            present = [c for c in pattern.members if c in self._index]
            for cid in set(pattern.members) - set(present):
                self._membership.pop(cid, None)
            pattern.members = present

            if not pattern.members:
                if not pattern.archived:
                    logger.info("[patterns] Archived %s (no members left)", pid)
                pattern.archived = True
                pattern.centroid = None
                pattern.confidence = 0.0
            else:
                self._rescore(pattern, now)

            old = before.get(pid, set())
            for cid in old - set(pattern.members):
                self._index.untag(cid, pid)
            if pattern.active:
                for cid in pattern.members:
                    self._index.tag(cid, pid, pattern.category.value)
            updated.append(pattern)

        self._persist(updated)
        return updated

    def _rescore(self, pattern: Pattern, now: float) -> None:
        matrix = self._refresh_centroid(pattern)
        chunks = [self._index.get(c) for c in pattern.members]
        chunks = [c for c in chunks if c is not None]
        category, rule_id = self._classifier.classify([(c.content, c.kind) for c in chunks])
        pattern.category = category
        pattern.rule_id = rule_id
        if not pattern.name_locked:
            pattern.name = heuristic_name(category, [c.symbol for c in chunks], pattern.pattern_id)
        pattern.cohesion = cohesion_of(matrix, pattern.centroid) if matrix is not None else 0.0
        pattern.effective_size = self._confidence.effective_size([c.degraded for c in chunks])
        if chunks:
            pattern.last_seen = max(c.last_modified for c in chunks)
        pattern.confidence = self._confidence.score(
            pattern.effective_size, pattern.cohesion, now - pattern.last_seen,
        )

    def _snapshot(self, pattern_ids: Iterable[str]) -> dict[str, set[str]]:
        return {pid: set(self._patterns[pid].members) for pid in pattern_ids if pid in self._patterns}

    # ------------------------------------------------------------------
    # Persistence / notification
    # ------------------------------------------------------------------

    def _persist(self, patterns: list[Pattern]) -> None:
        """
        Save *patterns* plus any left over from a failed save, with jittered
        exponential backoff.  Ids that still fail stay in ``_unsaved``.
        """
        if self._store is None:
            return
        with self._lock:
            batch = {p.pattern_id: p for p in patterns}
            for pid in sorted(self._unsaved):
                if pid in self._patterns:
                    batch.setdefault(pid, self._patterns[pid])
            self._unsaved.intersection_update(self._patterns)
            if not batch:
                return
            payload = {pid: p.to_dict() for pid, p in batch.items()}

        for attempt in range(1, self.store_max_retries + 1):
            try:
                self._store.save_patterns(payload)
            except StoreFailure as exc:
                logger.warning(
                    "[patterns] Could not persist %d patterns (attempt %d/%d): %s",
                    len(payload), attempt, self.store_max_retries, exc,
                )
                if attempt == self.store_max_retries:
                    with self._lock:
                        self._unsaved.update(payload)
                    logger.error("[patterns] %d patterns left unsaved until the next pass",
                                 len(payload))
                    return
                wait = self.store_retry_delay * (2 ** (attempt - 1))
                self._sleep(wait + wait * 0.1 * random.random())
            else:
                with self._lock:
                    self._unsaved.difference_update(payload)
                return

    @property
    def unsaved(self) -> list[str]:
        """Ids of patterns whose latest state has not reached the store."""
        with self._lock:
            return sorted(self._unsaved)

    def _notify(self, patterns: list[Pattern]) -> None:
        if not patterns:
            return
        for listener in list(self._listeners):
            try:
                listener(patterns)
            except Exception as exc:
                logger.warning("[patterns] Listener failed: %s", exc)

    def load(self) -> int:
        """
        Restore patterns from the store.  Members no longer in the index
        are dropped on the next pass.
        """
        if self._store is None:
            return 0
        payloads = self._store.load_patterns()
        with self._lock:
            for pid, data in payloads.items():
                pattern = Pattern.from_dict(data)
                self._patterns[pid] = pattern
                for cid in pattern.members:
                    self._membership[cid] = pid
                if pattern.active:
                    if any(c not in self._index for c in pattern.members):
                        self._dirty.add(pid)
                    for cid in pattern.members:
                        self._index.tag(cid, pid, pattern.category.value)
        logger.info("[patterns] Loaded %d patterns from store", len(payloads))
        return len(payloads)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def patterns(self, include_archived: bool = False) -> list[Pattern]:
        with self._lock:
            result = [
                p for p in self._patterns.values()
                if include_archived or p.active
            ]
        return sorted(result, key=lambda p: (-p.usage_count, p.pattern_id))

    def get(self, pattern_id: str) -> Optional[Pattern]:
        with self._lock:
            return self._patterns.get(pattern_id)

    def pattern_of(self, chunk_id: str) -> Optional[str]:
        with self._lock:
            return self._membership.get(chunk_id)

    def rename(self, pattern_id: str, name: str) -> Pattern:
        """Assign a human name; heuristic renaming stops for this pattern."""
        with self._lock:
            pattern = self._patterns.get(pattern_id)
            if pattern is None:
                raise KeyError(pattern_id)
            pattern.name = name
            pattern.name_locked = True
        self._persist([pattern])
        return pattern

    def refresh_confidence(self) -> None:
        """Re-apply recency decay to every active pattern."""
        now = self._clock()
        with self._lock:
            active = [p for p in self._patterns.values() if p.active]
            for pattern in active:
                pattern.confidence = self._confidence.score(
                    pattern.effective_size, pattern.cohesion, now - pattern.last_seen,
                )
        self._persist(active)

    def technical_debt_report(self, low_confidence: float = LOW_CONFIDENCE) -> dict:
        """Archived and weak patterns plus the category histogram."""
        with self._lock:
            everything = list(self._patterns.values())
        active = [p for p in everything if p.active]
        archived = sorted((p for p in everything if p.archived), key=lambda p: p.pattern_id)
        weak = sorted(
            (p for p in active if p.confidence < low_confidence),
            key=lambda p: (p.confidence, p.pattern_id),
        )
        histogram = Counter(p.category.value for p in active)
        return {
            "generated_at": self._clock(),
            "active_patterns": len(active),
            "categories": {c.value: histogram.get(c.value, 0) for c in Category},
            "archived": [
                {
                    "pattern_id": p.pattern_id,
                    "name": p.name,
                    "category": p.category.value,
                    "merged_into": p.merged_into,
                    "first_seen": p.first_seen,
                    "last_seen": p.last_seen,
                }
                for p in archived
            ],
            "low_confidence": [p.summary() for p in weak],
            "largest": [p.summary() for p in sorted(active, key=lambda p: (-p.usage_count, p.pattern_id))[:5]],
        }
