"""
Embedding cache — memoises ``embed(content)`` by content hash.

Identical code appearing in several files or locations is embedded exactly
once.  Entries are reference counted by the chunks that use them; entries
whose count drops to zero are kept in a bounded LRU so that undo / re-add
cycles do not hit the embedder again.

When the embedder keeps failing, the cache returns a *degraded* lexical
vector so the chunk stays queryable; degraded entries are recomputed once
``degraded_retry_seconds`` have passed.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from ..errors import EmbeddingFailure, StoreFailure
from .embedder import Embedder, lexical_vector, normalize

logger = logging.getLogger(__name__)


@dataclass
class CachedVector:
    """A memoised embedding."""

    vector: np.ndarray
    degraded: bool
    computed_at: float


class EmbeddingCache:
    """
    Content-hash keyed embedding memo with retry and lexical fallback.

    Parameters
    ----------
    embedder:
        The external embedder.
    max_retries:
        Attempts per embedder call before falling back.
    retry_delay:
        Base delay (seconds) for exponential backoff.
    degraded_retry_seconds:
        Age after which a degraded entry is recomputed on next access.
    max_orphans:
        Maximum number of zero-reference entries kept in memory.
    store:
        Optional persistent store (``save_embeddings``) for warm restarts.
    """

    def __init__(
        self,
        embedder: Embedder,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        degraded_retry_seconds: float = 300.0,
        max_orphans: int = 10_000,
        store=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._embedder = embedder
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._degraded_retry = degraded_retry_seconds
        self._max_orphans = max_orphans
        self._store = store
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._entries: dict[str, CachedVector] = {}
        self._refs: dict[str, int] = {}
        self._orphans: "OrderedDict[str, None]" = OrderedDict()
        self._inflight: dict[str, threading.Event] = {}

        self.hits = 0
        self.misses = 0
        self.computed = 0
        self.degraded = 0

    @classmethod
    def from_config(cls, config, embedder: Embedder, store=None) -> "EmbeddingCache":
        return cls(
            embedder,
            max_retries=config.EMBED_MAX_RETRIES,
            retry_delay=config.EMBED_RETRY_DELAY,
            degraded_retry_seconds=config.DEGRADED_RETRY_SECONDS,
            store=store,
        )

    @property
    def dimension(self) -> int:
        return self._embedder.dimension

    # ------------------------------------------------------------------
    # Lookup / compute
    # ------------------------------------------------------------------

    def get_or_compute(self, content_hash: str, content: str) -> CachedVector:
        """Return the cached vector for *content_hash*, embedding on a miss."""
        return self.get_or_compute_many([(content_hash, content)])[content_hash]

    def get_or_compute_many(
        self, items: list[tuple[str, str]]
    ) -> dict[str, CachedVector]:
        """
        Batch variant of :meth:`get_or_compute`.

        Duplicate hashes in *items* and hashes already being computed by
        another thread are embedded only once.
        """
        results: dict[str, CachedVector] = {}
        pending: dict[str, str] = {}
        waiting: dict[str, threading.Event] = {}

        with self._lock:
            for chash, content in items:
                if chash in results or chash in pending or chash in waiting:
                    continue
                entry = self._entries.get(chash)
                if entry is not None and not self._needs_retry(entry):
                    self.hits += 1
                    self._touch(chash)
                    results[chash] = entry
                    continue
                event = self._inflight.get(chash)
                if event is not None:
                    waiting[chash] = event
                    continue
                self.misses += 1
                self._inflight[chash] = threading.Event()
                pending[chash] = content

        if pending:
            try:
                computed = self._compute(pending)
                with self._lock:
                    for chash, entry in computed.items():
                        self._entries[chash] = entry
                        if self._refs.get(chash, 0) == 0:
                            self._orphan(chash)
                results.update(computed)
            finally:
                with self._lock:
                    for chash in pending:
                        event = self._inflight.pop(chash, None)
                        if event is not None:
                            event.set()
            self._persist(computed)

        for chash, event in waiting.items():
            event.wait()
            with self._lock:
                entry = self._entries.get(chash)
            if entry is None:
                content = next(c for h, c in items if h == chash)
                entry = self.get_or_compute(chash, content)
            else:
                with self._lock:
                    self.hits += 1
            results[chash] = entry
        return results

    def peek(self, content_hash: str) -> Optional[CachedVector]:
        """Return the entry without touching statistics or LRU order."""
        with self._lock:
            return self._entries.get(content_hash)

    def _needs_retry(self, entry: CachedVector) -> bool:
        return entry.degraded and (self._clock() - entry.computed_at) >= self._degraded_retry

    def _compute(self, pending: dict[str, str]) -> dict[str, CachedVector]:
        hashes = list(pending)
        texts = [pending[h] for h in hashes]
        now = self._clock()
        try:
            vectors = self._embed_with_retry(texts)
            self.computed += len(vectors)
            return {
                h: CachedVector(vector=v, degraded=False, computed_at=now)
                for h, v in zip(hashes, vectors)
            }
        except EmbeddingFailure as exc:
            logger.warning(
                "[embedding-cache] Embedder unavailable for %d chunk(s), "
                "using degraded lexical vectors: %s", len(texts), exc,
            )
            self.degraded += len(texts)
            return {
                h: CachedVector(
                    vector=lexical_vector(t, self.dimension),
                    degraded=True,
                    computed_at=now,
                )
                for h, t in zip(hashes, texts)
            }

    def _embed_with_retry(self, texts: list[str]) -> list[np.ndarray]:
        """
        Embed *texts*, retrying with jittered exponential backoff.

        Raises
        ------
        EmbeddingFailure
            If all attempts fail.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                raw = self._embedder.embed_batch(texts)
                if len(raw) != len(texts):
                    raise EmbeddingFailure(
                        f"embedder returned {len(raw)} vectors for {len(texts)} inputs"
                    )
                return [normalize(v) for v in raw]
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "[embedding-cache] Embedder error (attempt %d/%d): %s",
                    attempt, self._max_retries, exc,
                )
                if attempt < self._max_retries:
                    wait = self._retry_delay * (2 ** (attempt - 1))
                    jitter = wait * 0.1 * random.random()
                    self._sleep(wait + jitter)
        raise EmbeddingFailure(
            f"Embedder failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    def _persist(self, computed: dict[str, CachedVector]) -> None:
        if self._store is None or not computed:
            return
        try:
            self._store.save_embeddings(computed)
        except StoreFailure as exc:
            # Vectors stay in memory; they are re-saved with the chunk write.
            logger.warning("[embedding-cache] Could not persist embeddings: %s", exc)

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    def acquire(self, content_hash: str) -> None:
        """Record one more chunk using *content_hash*."""
        with self._lock:
            self._refs[content_hash] = self._refs.get(content_hash, 0) + 1
            self._orphans.pop(content_hash, None)

    def release(self, content_hash: str) -> None:
        """Record one chunk fewer using *content_hash*."""
        with self._lock:
            count = self._refs.get(content_hash, 0) - 1
            if count > 0:
                self._refs[content_hash] = count
                return
            self._refs.pop(content_hash, None)
            if content_hash in self._entries:
                self._orphan(content_hash)

    def refcount(self, content_hash: str) -> int:
        with self._lock:
            return self._refs.get(content_hash, 0)

    def _orphan(self, content_hash: str) -> None:
        self._orphans[content_hash] = None
        self._orphans.move_to_end(content_hash)
        while len(self._orphans) > self._max_orphans:
            evicted, _ = self._orphans.popitem(last=False)
            self._entries.pop(evicted, None)

    def _touch(self, content_hash: str) -> None:
        if content_hash in self._orphans:
            self._orphans.move_to_end(content_hash)

    # ------------------------------------------------------------------
    # Warm start / stats
    # ------------------------------------------------------------------

    def load(self, entries: dict[str, CachedVector]) -> None:
        """Seed the cache from persisted entries (all start unreferenced)."""
        with self._lock:
            for chash, entry in entries.items():
                self._entries[chash] = entry
                if self._refs.get(chash, 0) == 0:
                    self._orphan(chash)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "referenced": len(self._refs),
                "hits": self.hits,
                "misses": self.misses,
                "computed": self.computed,
                "degraded": self.degraded,
            }
