"""
Code Indexer — keeps chunks, embeddings and the vector index in step with
the files on disk.

Full index:
  1. Walk the repository (include/exclude globs, skip dirs, .gitignore)
  2. Chunk each supported file
  3. Embed new or changed chunks through the embedding cache
  4. Persist to the state store, then apply to the vector index

Incremental index:
  Triggered by file events; only the affected file's chunks are touched.
  Updates for the same path carry a generation number, and work whose
  generation has been superseded (by a newer update or a removal) is
  discarded before it reaches the index.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import random
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from ..errors import StoreFailure
from .chunker import ChunkLimits, ChunkSpan, chunk_file, default_registry, detect_language
from .embedding_cache import CachedVector, EmbeddingCache
from .models import (
    Chunk,
    EventKind,
    FileEvent,
    FileRecord,
    IndexChange,
    content_hash,
    make_chunk_id,
)
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory / file exclusion rules
# ---------------------------------------------------------------------------

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", ".pattern_guard",
    ".venv", "venv", "env", ".env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",           # Rust/Java build output
    "bin", "obj",       # C# build output
    "coverage",
    ".next", ".nuxt",   # JS frameworks
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})


def _load_gitignore_patterns(project_root: str) -> list[str]:
    """Read .gitignore from *project_root* and return glob patterns."""
    gi_path = os.path.join(project_root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith("#") and not line.startswith("!"):
                patterns.append(line.rstrip("/"))
    return patterns


def _glob_match(rel_path: str, pattern: str) -> bool:
    """fnmatch on a POSIX relative path; ``**/x`` also matches ``x`` at the root."""
    if fnmatch.fnmatch(rel_path, pattern):
        return True
    if pattern.startswith("**/") and fnmatch.fnmatch(rel_path, pattern[3:]):
        return True
    return False


def _is_ignored(rel_path: str, patterns: list[str]) -> bool:
    """Return True if *rel_path* (or its basename) matches any pattern."""
    name = os.path.basename(rel_path)
    for pattern in patterns:
        if fnmatch.fnmatch(name, pattern) or _glob_match(rel_path, pattern):
            return True
    return False


def ignore_patterns(project_root: str, exclude: Optional[list[str]] = None) -> list[str]:
    """``.gitignore`` globs of *project_root* followed by the *exclude* globs."""
    return _load_gitignore_patterns(project_root) + list(exclude or [])


def is_indexable(
    rel_path: str,
    include: Optional[list[str]] = None,
    ignored: Optional[list[str]] = None,
) -> bool:
    """
    Return True if the POSIX relative path *rel_path* should be indexed.

    Applies the same rules as :func:`walk_source_files` to a single path:
    known language, an *include* match, and no skip dir, dot-dir or
    *ignored* glob on the file or any parent directory.  *ignored* is the
    output of :func:`ignore_patterns`.
    """
    if not rel_path or rel_path.startswith("../") or rel_path == "..":
        return False
    if detect_language(rel_path) is None:
        return False
    ignored = ignored or []
    parts = rel_path.split("/")
    for depth, part in enumerate(parts[:-1], start=1):
        if part in _SKIP_DIRS or part.startswith("."):
            return False
        if _is_ignored("/".join(parts[:depth]), ignored):
            return False
    if not any(_glob_match(rel_path, pat) for pat in include or ["**/*"]):
        return False
    return not _is_ignored(rel_path, ignored)


def walk_source_files(
    project_root: str,
    include: Optional[list[str]] = None,
    exclude: Optional[list[str]] = None,
) -> list[str]:
    """
    Walk *project_root* and return POSIX relative paths of indexable files.

    A file is indexable when its extension maps to a known language, it
    matches at least one *include* glob, and neither it nor any parent
    directory is excluded (skip dirs, *exclude* globs, ``.gitignore``).
    """
    include = include or ["**/*"]
    ignored = ignore_patterns(project_root, exclude)
    results: list[str] = []

    for dirpath, dirnames, filenames in os.walk(project_root, topdown=True):
        rel_dir = os.path.relpath(dirpath, project_root).replace(os.sep, "/")
        rel_dir = "" if rel_dir == "." else rel_dir + "/"
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and not _is_ignored(rel_dir + d, ignored)
        )

        for fname in filenames:
            rel_path = rel_dir + fname
            if detect_language(fname) is None:
                continue
            if not any(_glob_match(rel_path, pat) for pat in include):
                continue
            if _is_ignored(rel_path, ignored):
                continue
            results.append(rel_path)

    return sorted(results)


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

class CodeIndexer:
    """
    Owns the FileRecord / Chunk lifecycle for one repository.

    Parameters
    ----------
    project_root:
        Repository root; all chunk paths are stored relative to it.
    config:
        :class:`~pattern_guard.config.Config` (globs, limits, retry policy).
    cache:
        Embedding cache used for every chunk vector.
    index:
        Vector index that receives the chunk vectors.
    store:
        Optional :class:`~pattern_guard.index.store.StateStore`.
    registry:
        Chunker registry; defaults to :func:`default_registry`.
    runner:
        Optional :class:`~pattern_guard.tasks.TaskRunner` for the
        ``submit_*`` / ``handle_event`` entry points.
    """

    def __init__(
        self,
        project_root: str,
        config,
        cache: EmbeddingCache,
        index: VectorIndex,
        store=None,
        registry=None,
        runner=None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_root = os.path.abspath(project_root)
        self._config = config
        self._cache = cache
        self._index = index
        self._store = store
        self._registry = registry or default_registry()
        self._runner = runner
        self._clock = clock
        self._sleep = sleep

        self._state_lock = threading.RLock()
        self._path_locks: dict[str, threading.Lock] = {}
        self._generations: dict[str, int] = {}
        self._records: dict[str, FileRecord] = {}
        self._chunks: dict[str, dict[str, Chunk]] = {}   # path -> {chunk_id: chunk}
        self._owners: dict[str, str] = {}                 # chunk_id -> path
        self._listeners: list[Callable[[IndexChange], None]] = []

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Callable[[IndexChange], None]) -> None:
        """Register *listener* to receive every applied :class:`IndexChange`."""
        self._listeners.append(listener)

    def _notify(self, change: IndexChange) -> None:
        if change.is_empty:
            return
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                logger.warning("[indexer] Listener failed for %s: %s", change.path, exc)

    # ------------------------------------------------------------------
    # Paths / generations
    # ------------------------------------------------------------------

    def _rel(self, file_path: str) -> str:
        if os.path.isabs(file_path):
            file_path = os.path.relpath(file_path, self.project_root)
        return os.path.normpath(file_path).replace(os.sep, "/")

    def _abs(self, rel_path: str) -> str:
        return os.path.join(self.project_root, *rel_path.split("/"))

    def relative_path(self, file_path: str) -> str:
        """Repository-relative POSIX form of *file_path* (the key used everywhere)."""
        return self._rel(file_path)

    def read_source(self, file_path: str) -> Optional[str]:
        """File text as the indexer would see it (None if missing, too large or binary)."""
        return self._read(self._rel(file_path))

    def is_indexable(self, file_path: str) -> bool:
        """True if *file_path* passes the include / exclude / ``.gitignore`` rules."""
        return is_indexable(
            self._rel(file_path),
            self._config.INCLUDE,
            ignore_patterns(self.project_root, self._config.EXCLUDE),
        )

    def _next_generation(self, rel: str) -> int:
        with self._state_lock:
            gen = self._generations.get(rel, 0) + 1
            self._generations[rel] = gen
            return gen

    def _is_stale(self, rel: str, gen: int) -> bool:
        with self._state_lock:
            return self._generations.get(rel, 0) != gen

    def _path_lock(self, rel: str) -> threading.Lock:
        with self._state_lock:
            lock = self._path_locks.get(rel)
            if lock is None:
                lock = self._path_locks[rel] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Public API (synchronous)
    # ------------------------------------------------------------------

    def index_repository(
        self,
        root_path: Optional[str] = None,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> dict:
        """
        Index every eligible file under the repository and evict records
        for files that no longer exist.

        Parameters
        ----------
        root_path:
            Must be the indexer's project root when given.
        progress_callback:
            Optional callable called with (current, total, filename) for each
            processed file.

        Returns
        -------
        dict
            Summary: file_count, indexed, unchanged, skipped, failed,
            removed, chunk_count, elapsed_seconds.
        """
        if root_path is not None and os.path.abspath(root_path) != self.project_root:
            raise ValueError(f"indexer is bound to {self.project_root}, not {root_path}")

        start_time = self._clock()
        files = walk_source_files(self.project_root, self._config.INCLUDE, self._config.EXCLUDE)
        total = len(files)
        counts = {"indexed": 0, "unchanged": 0, "skipped": 0, "failed": 0}

        for idx, rel in enumerate(files):
            if progress_callback:
                progress_callback(idx + 1, total, rel)
            try:
                change = self.update_file(rel)
            except Exception as exc:
                logger.warning("[indexer] Unexpected error indexing %s: %s", rel, exc)
                counts["failed"] += 1
                continue
            if change is None:
                counts["skipped"] += 1
            elif change.is_empty:
                counts["unchanged"] += 1
            else:
                counts["indexed"] += 1

        present = set(files)
        with self._state_lock:
            vanished = sorted(p for p in self._records if p not in present)
        for rel in vanished:
            self.remove_file(rel)

        summary = {
            "file_count": total,
            **counts,
            "removed": len(vanished),
            "chunk_count": len(self._index),
            "elapsed_seconds": round(self._clock() - start_time, 2),
        }
        logger.info(
            "[indexer] Full index complete: %d files (%d indexed, %d unchanged, "
            "%d failed, %d removed), %d chunks",
            total, counts["indexed"], counts["unchanged"], counts["failed"],
            len(vanished), summary["chunk_count"],
        )
        return summary

    def update_file(self, file_path: str, new_content: Optional[str] = None) -> Optional[IndexChange]:
        """
        Re-chunk one file and reconcile its chunks with the index.

        Parameters
        ----------
        file_path:
            Absolute or repository-relative path.
        new_content:
            File text; read from disk when None.

        Returns
        -------
        IndexChange or None
            The applied delta (empty when nothing changed); None when the
            file was skipped, the work went stale, or the store write failed.
        """
        rel = self._rel(file_path)
        return self._update(rel, self._next_generation(rel), new_content)

    def remove_file(self, file_path: str) -> Optional[IndexChange]:
        """Evict every chunk of *file_path* from the index, cache and store."""
        rel = self._rel(file_path)
        return self._remove(rel, self._next_generation(rel))

    def move_file(self, old_path: str, new_path: str) -> Optional[IndexChange]:
        """
        Handle a rename.  When the content is unchanged the chunk ids are
        preserved under *new_path*; otherwise this is a delete + create.
        """
        old_rel, new_rel = self._rel(old_path), self._rel(new_path)
        content = self._read(new_rel)
        with self._state_lock:
            record = self._records.get(old_rel)
        same = (
            content is not None
            and record is not None
            and not record.needs_reindex
            and record.content_hash == content_hash(content)
            and detect_language(new_rel) == record.language
            and self.is_indexable(new_rel)
        )
        if not same:
            self.remove_file(old_rel)
            return self.update_file(new_rel, content)

        old_gen = self._next_generation(old_rel)
        new_gen = self._next_generation(new_rel)
        first, second = sorted((old_rel, new_rel))
        with self._path_lock(first), self._path_lock(second):
            if self._is_stale(old_rel, old_gen) or self._is_stale(new_rel, new_gen):
                return None
            with self._state_lock:
                old_chunks = self._chunks.get(old_rel, {})
                displaced = self._chunks.get(new_rel, {})
            vectors = self._index.vectors(old_chunks)
            moved: list[Chunk] = []
            for chunk in old_chunks.values():
                copy = replace(chunk, file_path=new_rel)
                copy.vector = vectors.get(chunk.chunk_id)
                moved.append(copy)
            new_record = FileRecord(
                path=new_rel,
                content_hash=record.content_hash,
                language=record.language,
                chunk_ids=list(record.chunk_ids),
                indexed_at=self._clock(),
            )
            try:
                self._with_store_retry(
                    "move", new_rel,
                    lambda: self._store.rename_file(old_rel, new_record, moved),
                )
            except StoreFailure:
                # Fall back to delete + create, which has its own failure path
                logger.warning("[indexer] Could not persist move %s -> %s", old_rel, new_rel)
            else:
                self._index.apply(
                    [(c, c.vector) for c in moved if c.vector is not None],
                    [cid for cid in displaced if cid not in old_chunks],
                )
                with self._state_lock:
                    for cid, chunk in displaced.items():
                        if cid not in old_chunks:
                            self._cache.release(chunk.content_hash)
                            self._owners.pop(cid, None)
                    self._chunks.pop(old_rel, None)
                    self._records.pop(old_rel, None)
                    self._chunks[new_rel] = {
                        c.chunk_id: replace(c, vector=None) for c in moved
                    }
                    self._records[new_rel] = new_record
                    for c in moved:
                        self._owners[c.chunk_id] = new_rel
                logger.info("[indexer] Moved: %s -> %s (%d chunks kept)",
                            old_rel, new_rel, len(moved))
                change = IndexChange(path=new_rel, moved_from=old_rel)
                self._notify(change)
                return change

        self.remove_file(old_rel)
        return self.update_file(new_rel, content)

    def handle_event(self, event: FileEvent) -> Optional[IndexChange]:
        """Apply one file-system event synchronously."""
        if event.kind == EventKind.DELETED:
            return self.remove_file(event.path)
        if event.kind == EventKind.MOVED:
            return self.move_file(event.path, event.dest_path)
        return self.update_file(event.path)

    # ------------------------------------------------------------------
    # Public API (asynchronous)
    # ------------------------------------------------------------------

    def submit_update(self, file_path: str, new_content: Optional[str] = None):
        """Schedule :meth:`update_file` on the worker pool; returns a Future."""
        rel = self._rel(file_path)
        gen = self._next_generation(rel)
        return self._require_runner().submit(self._update, rel, gen, new_content, key=rel)

    def submit_remove(self, file_path: str):
        """Schedule :meth:`remove_file` on the worker pool; returns a Future."""
        rel = self._rel(file_path)
        gen = self._next_generation(rel)
        return self._require_runner().submit(self._remove, rel, gen, key=rel)

    def submit_event(self, event: FileEvent):
        """Schedule :meth:`handle_event` on the worker pool; returns a Future."""
        if event.kind == EventKind.DELETED:
            return self.submit_remove(event.path)
        if event.kind == EventKind.MOVED:
            key = self._rel(event.dest_path)
            return self._require_runner().submit(
                self.move_file, event.path, event.dest_path, key=key,
            )
        return self.submit_update(event.path)

    def _require_runner(self):
        if self._runner is None:
            raise RuntimeError("CodeIndexer was created without a TaskRunner")
        return self._runner

    # ------------------------------------------------------------------
    # Update / remove internals
    # ------------------------------------------------------------------

    def _read(self, rel: str) -> Optional[str]:
        """Return the file text, or None if missing, too large or binary."""
        abs_path = self._abs(rel)
        try:
            size = os.path.getsize(abs_path)
            if size > self._config.MAX_FILE_BYTES:
                logger.info("[indexer] Skipping %s (%d bytes > limit)", rel, size)
                return None
            with open(abs_path, "rb") as fh:
                raw = fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("[indexer] Cannot read %s: %s", rel, exc)
            return None
        if b"\x00" in raw[:8192]:
            logger.info("[indexer] Skipping binary file %s", rel)
            return None
        return raw.decode("utf-8", errors="replace")

    def _update(self, rel: str, gen: int, content: Optional[str]) -> Optional[IndexChange]:
        if not self.is_indexable(rel):
            logger.debug("[indexer] Not indexable (type or exclude rules): %s", rel)
            with self._state_lock:
                known = rel in self._records
            return self._remove(rel, gen) if known else None
        language = detect_language(rel)
        if content is None:
            content = self._read(rel)
        if content is None or not content.strip():
            # Missing, unreadable or empty: nothing to index
            with self._state_lock:
                known = rel in self._records
            return self._remove(rel, gen) if known else None

        file_hash = content_hash(content)
        with self._state_lock:
            record = self._records.get(rel)
            old = dict(self._chunks.get(rel, {}))
        if record is not None and record.content_hash == file_hash and not record.needs_reindex:
            return IndexChange(path=rel)

        spans = chunk_file(
            rel, content, language, self._registry,
            ChunkLimits.from_config(self._config, language),
        )
        now = self._clock()
        new_chunks = self._assign_ids(rel, spans, language, now, old)

        to_embed = [
            c for c in new_chunks
            if c.chunk_id not in old or old[c.chunk_id].content_hash != c.content_hash
        ]
        if self._is_stale(rel, gen):
            return None
        embedded = self._cache.get_or_compute_many([(c.content_hash, c.content) for c in to_embed])
        if self._is_stale(rel, gen):
            logger.debug("[indexer] Discarding stale update for %s", rel)
            return None

        with self._path_lock(rel):
            if self._is_stale(rel, gen):
                logger.debug("[indexer] Discarding stale update for %s", rel)
                return None
            with self._state_lock:
                old = dict(self._chunks.get(rel, {}))
            return self._commit(rel, language, file_hash, new_chunks, old, embedded, now)

    def _commit(
        self,
        rel: str,
        language: str,
        file_hash: str,
        new_chunks: list[Chunk],
        old: dict[str, Chunk],
        embedded: dict[str, CachedVector],
        now: float,
    ) -> Optional[IndexChange]:
        """Diff *new_chunks* against *old*, persist, then apply to the index."""
        change = IndexChange(path=rel)
        upserts: list[Chunk] = []
        fresh: set[str] = set()   # hashes embedded by this update
        kept_vectors = self._index.vectors(
            c.chunk_id for c in new_chunks if c.chunk_id in old
        )

        for chunk in new_chunks:
            prev = old.get(chunk.chunk_id)
            if prev is not None and prev.content_hash == chunk.content_hash:
                chunk.last_modified = prev.last_modified
                chunk.degraded = prev.degraded
                chunk.vector = kept_vectors.get(chunk.chunk_id)
                if chunk.vector is not None:
                    if not chunk.same_range(prev) or chunk.symbol != prev.symbol:
                        upserts.append(chunk)   # metadata refresh, no re-embed
                    continue
            entry = embedded.get(chunk.content_hash)
            if entry is None:
                entry = self._cache.get_or_compute(chunk.content_hash, chunk.content)
            chunk.vector = entry.vector
            chunk.degraded = entry.degraded
            fresh.add(chunk.content_hash)
            upserts.append(chunk)
            if prev is None:
                change.added.append(chunk.chunk_id)
            elif prev.content_hash != chunk.content_hash:
                change.changed.append(chunk.chunk_id)

        new_ids = {c.chunk_id for c in new_chunks}
        change.removed = [cid for cid in old if cid not in new_ids]

        record = FileRecord(
            path=rel,
            content_hash=file_hash,
            language=language,
            chunk_ids=[c.chunk_id for c in new_chunks],
            indexed_at=now,
        )
        try:
            self._with_store_retry(
                "write", rel,
                lambda: self._store.write_file(record, new_chunks, change.removed, fresh),
            )
        except StoreFailure as exc:
            logger.error("[indexer] Dropping update for %s, marked for re-index: %s", rel, exc)
            self._mark_needs_reindex(rel, file_hash, language)
            return None

        self._index.apply([(c, c.vector) for c in upserts], change.removed)

        with self._state_lock:
            for chunk in new_chunks:
                prev = old.get(chunk.chunk_id)
                if prev is None:
                    self._cache.acquire(chunk.content_hash)
                elif prev.content_hash != chunk.content_hash:
                    self._cache.acquire(chunk.content_hash)
                    self._cache.release(prev.content_hash)
            for cid in change.removed:
                self._cache.release(old[cid].content_hash)
                if self._owners.get(cid) == rel:
                    del self._owners[cid]
            for chunk in new_chunks:
                self._owners[chunk.chunk_id] = rel
            self._chunks[rel] = {
                c.chunk_id: replace(c, vector=None) for c in new_chunks
            }
            self._records[rel] = record

        if not change.is_empty:
            logger.info(
                "[indexer] Updated %s: +%d ~%d -%d chunks",
                rel, len(change.added), len(change.changed), len(change.removed),
            )
        self._notify(change)
        return change

    def _remove(self, rel: str, gen: int) -> Optional[IndexChange]:
        with self._path_lock(rel):
            if self._is_stale(rel, gen):
                return None
            with self._state_lock:
                old = self._chunks.get(rel, {})
                known = rel in self._records
            if not known and not old:
                return IndexChange(path=rel)
            try:
                self._with_store_retry("delete", rel, lambda: self._store.delete_file(rel))
            except StoreFailure as exc:
                # The warm-start hash check evicts the stale rows later
                logger.warning("[indexer] Could not delete %s from store: %s", rel, exc)

            removed = list(old)
            self._index.apply([], removed)
            with self._state_lock:
                for cid, chunk in old.items():
                    self._cache.release(chunk.content_hash)
                    if self._owners.get(cid) == rel:
                        del self._owners[cid]
                self._chunks.pop(rel, None)
                self._records.pop(rel, None)

        logger.info("[indexer] Removed %s (%d chunks)", rel, len(removed))
        change = IndexChange(path=rel, removed=removed)
        self._notify(change)
        return change

    def _assign_ids(
        self,
        rel: str,
        spans: list[ChunkSpan],
        language: str,
        now: float,
        old: dict[str, Chunk],
    ) -> list[Chunk]:
        """Give each span a chunk id, reusing ids by (symbol, ordinal) slot."""
        old_by_slot = {c.slot: c for c in old.values()}
        ordinals: dict[str, int] = {}
        chunks: list[Chunk] = []
        for span in spans:
            ordinal = ordinals.get(span.symbol, 0)
            ordinals[span.symbol] = ordinal + 1
            prev = old_by_slot.get((span.symbol, ordinal))
            chunk_id = prev.chunk_id if prev is not None else self._fresh_id(rel, span.symbol, ordinal)
            chunks.append(Chunk(
                chunk_id=chunk_id,
                file_path=rel,
                symbol=span.symbol,
                ordinal=ordinal,
                kind=span.kind,
                language=language,
                line_start=span.line_start,
                line_end=span.line_end,
                byte_start=span.byte_start,
                byte_end=span.byte_end,
                content=span.content,
                content_hash=content_hash(span.content),
                last_modified=now,
            ))
        return chunks

    def _fresh_id(self, rel: str, symbol: str, ordinal: int) -> str:
        # A moved file keeps its old ids, so a new file at the old path can collide
        chunk_id = make_chunk_id(rel, symbol, ordinal)
        n = 1
        with self._state_lock:
            while self._owners.get(chunk_id, rel) != rel:
                chunk_id = make_chunk_id(rel, f"{symbol}#{n}", ordinal)
                n += 1
        return chunk_id

    def _with_store_retry(self, action: str, rel: str, fn: Callable[[], None]) -> None:
        """Run a store write with jittered exponential backoff."""
        if self._store is None:
            return
        attempts = max(1, self._config.STORE_MAX_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                fn()
                return
            except StoreFailure as exc:
                logger.warning(
                    "[indexer] Store %s failed for %s (attempt %d/%d): %s",
                    action, rel, attempt, attempts, exc,
                )
                if attempt == attempts:
                    raise
                wait = self._config.STORE_RETRY_DELAY * (2 ** (attempt - 1))
                self._sleep(wait + wait * 0.1 * random.random())

    def _mark_needs_reindex(self, rel: str, file_hash: str, language: str) -> None:
        with self._state_lock:
            record = self._records.get(rel)
            if record is None:
                record = FileRecord(path=rel, content_hash=file_hash, language=language)
                self._records[rel] = record
                self._chunks.setdefault(rel, {})
            record.needs_reindex = True
        if self._store is not None:
            try:
                self._store.mark_needs_reindex(rel)
            except StoreFailure as exc:
                logger.warning("[indexer] Could not flag %s for re-index in store: %s", rel, exc)

    # ------------------------------------------------------------------
    # Warm start / maintenance
    # ------------------------------------------------------------------

    def warm_start(
        self,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> dict:
        """
        Restore state from the store, then re-index only files whose
        content hash no longer matches (plus new and vanished files).
        """
        if self._store is None:
            return self.index_repository(progress_callback=progress_callback)

        records = self._store.load_files()
        by_file: dict[str, list[Chunk]] = {}
        for chunk in self._store.load_chunks():
            by_file.setdefault(chunk.file_path, []).append(chunk)
        self._cache.load({
            h: CachedVector(vector=v, degraded=d, computed_at=t)
            for h, (v, d, t) in self._store.load_embeddings().items()
            if v.shape[0] == self._index.dimension
        })

        restored = 0
        upserts: list[tuple[Chunk, object]] = []
        with self._state_lock:
            for path, record in records.items():
                chunks = by_file.get(path, [])
                complete = (
                    {c.chunk_id for c in chunks} == set(record.chunk_ids)
                    and all(c.vector is not None and c.vector.shape[0] == self._index.dimension
                            for c in chunks)
                )
                if not complete:
                    record.needs_reindex = True
                    chunks = []
                self._records[path] = record
                self._chunks[path] = {
                    c.chunk_id: replace(c, vector=None) for c in chunks
                }
                for c in chunks:
                    self._owners[c.chunk_id] = path
                    self._cache.acquire(c.content_hash)
                    upserts.append((c, c.vector))
                restored += 1
        self._index.apply(upserts, [])
        logger.info("[indexer] Restored %d files (%d chunks) from store", restored, len(upserts))

        summary = self.index_repository(progress_callback=progress_callback)
        summary["restored"] = restored
        return summary

    def sweep(self) -> dict:
        """
        Retry files marked ``needs_reindex`` and re-embed degraded chunks
        whose retry delay has passed.
        """
        with self._state_lock:
            pending = sorted(p for p, r in self._records.items() if r.needs_reindex)
            degraded = sorted(
                p for p, chunks in self._chunks.items()
                if p not in pending and any(c.degraded for c in chunks.values())
            )
        reindexed = sum(1 for rel in pending if self.update_file(rel) is not None)
        refreshed = sum(1 for rel in degraded if self._refresh_degraded(rel))
        if pending or degraded:
            logger.info("[indexer] Sweep: %d/%d files re-indexed, %d files re-embedded",
                        reindexed, len(pending), refreshed)
        return {"needs_reindex": len(pending), "reindexed": reindexed, "re_embedded": refreshed}

    def _refresh_degraded(self, rel: str) -> bool:
        gen = self._next_generation(rel)
        with self._state_lock:
            record = self._records.get(rel)
            old = dict(self._chunks.get(rel, {}))
        if record is None:
            return False
        embedded = self._cache.get_or_compute_many(
            [(c.content_hash, c.content) for c in old.values() if c.degraded]
        )
        improved = {h for h, e in embedded.items() if not e.degraded}
        if not improved:
            return False
        with self._path_lock(rel):
            if self._is_stale(rel, gen):
                return False
            with self._state_lock:
                current = dict(self._chunks.get(rel, {}))
            updated: list[Chunk] = []
            for chunk in current.values():
                if chunk.degraded and chunk.content_hash in improved:
                    copy = replace(chunk)
                    copy.vector = embedded[chunk.content_hash].vector
                    copy.degraded = False
                    updated.append(copy)
            if not updated:
                return False
            vectors = self._index.vectors(current)
            all_chunks = []
            for cid in record.chunk_ids:
                chunk = next((u for u in updated if u.chunk_id == cid), None)
                if chunk is None and cid in current:
                    chunk = replace(current[cid])
                    chunk.vector = vectors.get(cid)
                if chunk is not None:
                    all_chunks.append(chunk)
            try:
                self._with_store_retry(
                    "write", rel,
                    lambda: self._store.write_file(
                        record, all_chunks, (), {c.content_hash for c in updated},
                    ),
                )
            except StoreFailure:
                return False
            self._index.apply([(c, c.vector) for c in updated], [])
            with self._state_lock:
                for chunk in updated:
                    self._chunks[rel][chunk.chunk_id] = replace(chunk, vector=None)
        self._notify(IndexChange(path=rel, changed=[c.chunk_id for c in updated]))
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_record(self, file_path: str) -> Optional[FileRecord]:
        with self._state_lock:
            return self._records.get(self._rel(file_path))

    def chunks_for(self, file_path: str) -> list[Chunk]:
        """Chunks of *file_path* in file order (without vectors)."""
        rel = self._rel(file_path)
        with self._state_lock:
            record = self._records.get(rel)
            chunks = self._chunks.get(rel, {})
            if record is None:
                return []
            return [chunks[cid] for cid in record.chunk_ids if cid in chunks]

    def chunk(self, chunk_id: str) -> Optional[Chunk]:
        with self._state_lock:
            path = self._owners.get(chunk_id)
            if path is None:
                return None
            return self._chunks.get(path, {}).get(chunk_id)

    def files(self) -> list[str]:
        with self._state_lock:
            return sorted(self._records)

    def stats(self) -> dict:
        with self._state_lock:
            return {
                "files": len(self._records),
                "chunks": sum(len(c) for c in self._chunks.values()),
                "needs_reindex": sum(1 for r in self._records.values() if r.needs_reindex),
                "degraded_chunks": sum(
                    1 for chunks in self._chunks.values() for c in chunks.values() if c.degraded
                ),
            }
