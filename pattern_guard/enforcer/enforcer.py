"""
Standard Enforcer — evaluates candidate code against the pattern knowledge
base.

Steps:
  1. Run the heuristic rules (independent of clustering)
  2. Embed the candidate through the embedding cache
  3. Query the vector index, restricted to members of active patterns, for
     neighbours at or above the match threshold
  4. Emit one finding per matched pattern

A query that exceeds its time budget yields an empty result; it is logged,
never raised.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Union

from ..errors import QueryTimeout
from ..index.embedding_cache import EmbeddingCache
from ..index.vector_index import QueryFilter, VectorIndex
from ..patterns.categories import exhibits_raw_signal
from ..patterns.detector import PatternDetector
from ..patterns.models import Category
from .findings import Candidate, Finding, FindingType, Severity
from .rules import DEFAULT_RULES, run_rules

logger = logging.getLogger(__name__)

_MAX_EXAMPLES = 3


class StandardEnforcer:
    """
    Pure query component; owns no persistent state.

    Parameters
    ----------
    index / detector / cache:
        Shared pipeline components.
    threshold:
        Default minimum similarity for a pattern match.
    top_k:
        Maximum neighbours examined per query.
    timeout:
        Default time budget in seconds (None disables it).
    runner:
        Optional :class:`~pattern_guard.tasks.TaskRunner`; when given, queries
        run on the pool and the caller stops waiting at the timeout.
    """

    def __init__(
        self,
        index: VectorIndex,
        detector: PatternDetector,
        cache: EmbeddingCache,
        threshold: float = 0.80,
        top_k: int = 20,
        timeout: Optional[float] = 2.0,
        runner=None,
        rules=DEFAULT_RULES,
    ) -> None:
        self._index = index
        self._detector = detector
        self._cache = cache
        self.threshold = threshold
        self.top_k = top_k
        self.timeout = timeout
        self._runner = runner
        self._rules = rules

    @classmethod
    def from_config(cls, config, index, detector, cache, runner=None) -> "StandardEnforcer":
        return cls(
            index, detector, cache,
            threshold=config.MATCH_THRESHOLD,
            top_k=config.MATCH_TOP_K,
            timeout=config.QUERY_TIMEOUT,
            runner=runner,
        )

    def evaluate(
        self,
        candidate: Union[Candidate, str],
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> list[Finding]:
        """
        Return the findings for *candidate*, best first.

        Parameters
        ----------
        candidate:
            A :class:`Candidate` or raw source text.
        threshold:
            Match threshold override; lowering it never returns fewer
            findings.
        timeout:
            Time budget override in seconds.
        """
        if isinstance(candidate, str):
            candidate = Candidate(content=candidate)
        if not candidate.content.strip():
            return []
        threshold = self.threshold if threshold is None else threshold
        timeout = self.timeout if timeout is None else timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        try:
            if self._runner is not None:
                return self._runner.run_with_timeout(
                    self._evaluate, timeout, candidate, threshold, deadline,
                )
            return self._evaluate(candidate, threshold, deadline)
        except QueryTimeout as exc:
            logger.warning("[enforcer] Query timed out after %ss (%s); returning no findings",
                           timeout, exc)
            return []

    def _evaluate(
        self,
        candidate: Candidate,
        threshold: float,
        deadline: Optional[float],
    ) -> list[Finding]:
        heuristics = run_rules(candidate, self._rules)

        cached = self._cache.get_or_compute(candidate.content_hash, candidate.content)
        _check_deadline(deadline, "embedding")

        exclude = frozenset({candidate.chunk_id}) if candidate.chunk_id else frozenset()
        hits = self._index.query(
            cached.vector,
            self.top_k,
            filter=QueryFilter(pattern_member=True, exclude_ids=exclude),
            min_similarity=threshold,
        )
        _check_deadline(deadline, "index query")

        # Group hits per pattern (hits arrive best first)
        grouped: dict[str, list] = {}
        for hit in hits:
            for pid in hit.patterns:
                grouped.setdefault(pid, []).append(hit)

        findings: list[Finding] = []
        matched_categories: set[Category] = set()
        for pid in sorted(grouped):
            pattern = self._detector.get(pid)
            if pattern is None or not pattern.active:
                continue
            best = grouped[pid][0]
            matched_categories.add(pattern.category)
            findings.append(self._pattern_finding(candidate, pattern, best.similarity,
                                                  grouped[pid], cached.degraded))

        for rule, finding in heuristics:
            if rule.superseded_by is not None and rule.superseded_by in matched_categories:
                continue
            findings.append(finding)

        findings.sort(key=Finding.sort_key)
        logger.debug("[enforcer] %d findings (%d pattern matches) for %s",
                     len(findings), len(grouped), candidate.symbol or candidate.file_path or "<snippet>")
        return findings

    @staticmethod
    def _pattern_finding(candidate, pattern, similarity, hits, degraded) -> Finding:
        category = pattern.category
        raw = category != Category.UTILITY and exhibits_raw_signal(category, candidate.content)
        if raw:
            finding_type = FindingType.PATTERN_VIOLATION
            severity = Severity.WARNING
        else:
            finding_type = FindingType.DUPLICATE_FUNCTIONALITY
            severity = Severity.INFO
        if category == Category.SECURITY:
            severity = severity.at_least(Severity.WARNING)

        return Finding(
            type=finding_type,
            severity=severity,
            candidate=candidate,
            confidence=max(0.0, min(1.0, pattern.confidence * similarity)),
            similarity=similarity,
            pattern_id=pattern.pattern_id,
            pattern_name=pattern.name,
            category=category.value,
            examples=[h.chunk_id for h in hits[:_MAX_EXAMPLES]],
            details={
                "reason": "bypasses_pattern" if raw else "duplicates_pattern",
                "pattern_confidence": pattern.confidence,
                "pattern_size": pattern.usage_count,
                "matched_members": len(hits),
                "degraded_embedding": degraded,
            },
        )


def _check_deadline(deadline: Optional[float], stage: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise QueryTimeout(f"deadline passed during {stage}")
