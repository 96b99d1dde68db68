"""
PatternGuard — wires the pipeline together for one repository.

    store ─┐
    embedder → cache → indexer → vector index → detector
                                     └──────→ enforcer

File events reach the indexer through the task runner; every applied index
delta is handed to the detector, which re-clusters on the pool (one pending
pass at a time).  ``evaluate`` is the pull interface for presentation
layers; ``add_pattern_listener`` / ``add_findings_listener`` are the push
interface.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Optional, Union

from .config import Config
from .enforcer.enforcer import StandardEnforcer
from .enforcer.findings import Candidate, Finding
from .errors import StoreFailure
from .index.chunker import ChunkLimits, chunk_file, default_registry, detect_language
from .index.embedder import Embedder, create_embedder
from .index.embedding_cache import EmbeddingCache
from .index.indexer import CodeIndexer
from .index.models import FileEvent, IndexChange
from .index.store import StateStore
from .index.vector_index import VectorIndex
from .patterns.detector import LOW_CONFIDENCE, PatternDetector
from .patterns.models import Pattern
from .tasks import TaskRunner

logger = logging.getLogger(__name__)

_RECLUSTER_KEY = "__recluster__"
_SIGNATURE_KEY = "embedder_signature"


def embedder_signature(embedder: Embedder) -> str:
    """Identify the vector space an embedder produces."""
    model = getattr(embedder, "model", "") or ""
    return f"{type(embedder).__name__}:{model}:{embedder.dimension}"


class PatternGuard:
    """
    Facade over the indexing, clustering and enforcement pipeline.

    Parameters
    ----------
    project_root:
        Repository to index.
    config:
        Loaded :class:`Config`; ``Config.load()`` when None.
    embedder:
        Embedding backend; built from the config when None.
    use_store:
        When False nothing is persisted (useful for one-off runs and tests).

    Raises
    ------
    StoreUnavailableError
        If the state store cannot be opened.
    """

    def __init__(
        self,
        project_root: str,
        config: Optional[Config] = None,
        embedder: Optional[Embedder] = None,
        use_store: bool = True,
        clock: Callable[[], float] = time.time,
        registry=None,
    ) -> None:
        self.project_root = os.path.abspath(project_root)
        self.config = config or Config.load()
        self._clock = clock

        self.store: Optional[StateStore] = (
            StateStore(self.config.data_path(self.project_root, "state.db"))
            if use_store else None
        )
        self.embedder = embedder or create_embedder(self.config)
        self.runner = TaskRunner(self.config.WORKER_POOL_SIZE)
        self.cache = EmbeddingCache.from_config(self.config, self.embedder, store=self.store)
        self.index = VectorIndex(
            self.embedder.dimension,
            exhaustive_threshold=self.config.EXHAUSTIVE_THRESHOLD,
            lsh_tables=self.config.LSH_TABLES,
            lsh_bits=self.config.LSH_BITS,
        )
        self.registry = registry or default_registry()
        self.indexer = CodeIndexer(
            self.project_root, self.config, self.cache, self.index,
            store=self.store, registry=self.registry, runner=self.runner, clock=clock,
        )
        self.detector = PatternDetector.from_config(
            self.config, self.index, store=self.store, clock=clock,
        )
        self.enforcer = StandardEnforcer.from_config(
            self.config, self.index, self.detector, self.cache, runner=self.runner,
        )

        self._findings_listeners: list[Callable[[list[Finding]], None]] = []
        self._batch = threading.Event()
        self._closed = False
        self._started = False
        self.indexer.add_listener(self._on_index_change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, progress_callback: Optional[Callable[[int, int, str], None]] = None) -> dict:
        """
        Warm restart: load persisted state, re-index files whose hash no
        longer matches, then bring patterns up to date.

        Returns
        -------
        dict
            The indexer summary plus ``patterns`` (active count).
        """
        self._check_signature()
        loaded = self.detector.load()
        self._batch.set()
        try:
            summary = self.indexer.warm_start(progress_callback=progress_callback)
        finally:
            self._batch.clear()

        if loaded == 0 and len(self.index):
            self.detector.rebuild()
        else:
            self.detector.recluster()
        self._started = True
        summary["patterns"] = len(self.detector.patterns())
        logger.info("[engine] Ready: %d files, %d chunks, %d patterns",
                    len(self.indexer.files()), len(self.index), summary["patterns"])
        return summary

    def index_repository(
        self,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ) -> dict:
        """Full index pass followed by one re-cluster pass."""
        self._batch.set()
        try:
            summary = self.indexer.index_repository(progress_callback=progress_callback)
        finally:
            self._batch.clear()
        self.detector.recluster()
        summary["patterns"] = len(self.detector.patterns())
        return summary

    def _check_signature(self) -> None:
        """Drop persisted vectors produced by a different embedder."""
        if self.store is None:
            return
        signature = embedder_signature(self.embedder)
        previous = self.store.get_meta(_SIGNATURE_KEY)
        if previous is not None and previous != signature:
            logger.warning("[engine] Embedder changed (%s -> %s); discarding persisted index",
                           previous, signature)
            self.store.clear_index()
        if previous != signature:
            self.store.set_meta(_SIGNATURE_KEY, signature)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until queued file events and re-cluster passes are done."""
        return self.runner.wait_idle(timeout)

    def close(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self.runner.shutdown(wait=wait)
        logger.info("[engine] Closed")

    def __enter__(self) -> "PatternGuard":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # File events
    # ------------------------------------------------------------------

    def handle_event(self, event: FileEvent, wait: bool = False):
        """
        Queue a file event (the watcher's sink).

        With *wait* the event is applied on the calling thread and the
        resulting :class:`IndexChange` is returned; otherwise a Future.
        """
        if wait:
            change = self.indexer.handle_event(event)
            self.detector.recluster()
            return change
        return self.indexer.submit_event(event)

    def _on_index_change(self, change: IndexChange) -> None:
        self.detector.process_change(change, recluster=False)
        if self._batch.is_set() or self._closed:
            return
        self.runner.submit(self.detector.recluster, key=_RECLUSTER_KEY)

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def evaluate(
        self,
        candidate: Union[Candidate, str],
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> list[Finding]:
        """Evaluate one snippet or :class:`Candidate`; see :class:`StandardEnforcer`."""
        findings = self.enforcer.evaluate(candidate, threshold=threshold, timeout=timeout)
        self._emit_findings(findings)
        return findings

    def evaluate_file(
        self,
        file_path: str,
        content: Optional[str] = None,
        threshold: Optional[float] = None,
    ) -> list[Finding]:
        """
        Chunk *file_path* (or *content* for it) and evaluate every chunk.

        Chunks that are already indexed are excluded from their own
        matches.
        """
        rel = self.indexer.relative_path(file_path)
        language = detect_language(rel)
        if language is None:
            return []
        if content is None:
            content = self.indexer.read_source(rel)
        if not content or not content.strip():
            return []

        known = {c.slot: c.chunk_id for c in self.indexer.chunks_for(rel)}
        spans = chunk_file(rel, content, language, self.registry,
                           ChunkLimits.from_config(self.config, language))
        ordinals: dict[str, int] = {}
        findings: list[Finding] = []
        for span in spans:
            ordinal = ordinals.get(span.symbol, 0)
            ordinals[span.symbol] = ordinal + 1
            candidate = Candidate(
                content=span.content,
                language=language,
                kind=span.kind,
                file_path=rel,
                line_start=span.line_start,
                symbol=span.symbol,
                chunk_id=known.get((span.symbol, ordinal)),
            )
            findings.extend(self.enforcer.evaluate(candidate, threshold=threshold))
        findings.sort(key=Finding.sort_key)
        self._emit_findings(findings)
        return findings

    def _emit_findings(self, findings: list[Finding]) -> None:
        if not findings:
            return
        for listener in list(self._findings_listeners):
            try:
                listener(findings)
            except Exception as exc:
                logger.warning("[engine] Findings listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_pattern_listener(self, listener: Callable[[list[Pattern]], None]) -> None:
        """Register a ``pattern_updated`` callback."""
        self.detector.add_listener(listener)

    def add_findings_listener(self, listener: Callable[[list[Finding]], None]) -> None:
        """Register a ``findings_available`` callback."""
        self._findings_listeners.append(listener)

    # ------------------------------------------------------------------
    # Maintenance / reporting
    # ------------------------------------------------------------------

    def rebuild_patterns(self) -> list[Pattern]:
        """Recompute every pattern from the current index."""
        self.runner.wait_idle()
        return self.detector.rebuild()

    def sweep(self) -> dict:
        """Retry failed writes, re-embed degraded chunks and decay confidences."""
        result = self.indexer.sweep()
        self.detector.recluster()
        self.detector.refresh_confidence()
        if self.store is not None:
            try:
                result["pruned_embeddings"] = self.store.prune_embeddings()
            except StoreFailure as exc:
                logger.warning("[engine] Could not prune embeddings: %s", exc)
        return result

    def patterns(self, include_archived: bool = False) -> list[Pattern]:
        return self.detector.patterns(include_archived=include_archived)

    def technical_debt_report(self, low_confidence: float = LOW_CONFIDENCE) -> dict:
        return self.detector.technical_debt_report(low_confidence)

    def status(self) -> dict:
        everything = self.detector.patterns(include_archived=True)
        status = {
            "project_root": self.project_root,
            "ready": self._started,
            "embedder": embedder_signature(self.embedder),
            "indexer": self.indexer.stats(),
            "index_size": len(self.index),
            "cache": self.cache.stats(),
            "patterns": {
                "active": sum(1 for p in everything if p.active),
                "archived": sum(1 for p in everything if p.archived),
            },
            "pending_tasks": self.runner.pending_count(),
            "pending_chunks": self.detector.pending_count,
        }
        if self.store is not None:
            try:
                status["store"] = self.store.stats()
            except StoreFailure as exc:
                logger.warning("[engine] Store stats unavailable: %s", exc)
                status["store"] = None
        return status
