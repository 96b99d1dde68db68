"""
Heuristic checks that run independently of clustering.

Each rule is a regular expression plus the finding it produces.  They can
fire with no pattern in the knowledge base at all: raw SQL with no
established database wrapper is worth surfacing on its own.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ..patterns.categories import SQL_STATEMENT
from ..patterns.models import Category
from .findings import Candidate, Finding, FindingType, Severity


@dataclass(frozen=True)
class HeuristicRule:
    rule_id: str
    finding_type: FindingType
    severity: Severity
    pattern: re.Pattern
    confidence: float
    reason: str
    # A matched pattern of this category supersedes the heuristic
    superseded_by: Optional[Category] = None

    def check(self, candidate: Candidate) -> Optional[Finding]:
        match = self.pattern.search(candidate.content)
        if match is None:
            return None
        line = candidate.line_start + candidate.content.count("\n", 0, match.start())
        return Finding(
            type=self.finding_type,
            severity=self.severity,
            candidate=candidate,
            confidence=self.confidence,
            rule_id=self.rule_id,
            details={
                "reason": self.reason,
                "line": line,
                "match": match.group(0).strip()[:120],
            },
        )


RAW_SQL = HeuristicRule(
    rule_id="raw-sql",
    finding_type=FindingType.BEST_PRACTICE,
    severity=Severity.INFO,
    pattern=SQL_STATEMENT,
    confidence=0.6,
    reason="raw_sql_without_wrapper",
    superseded_by=Category.DATABASE,
)

HARDCODED_SECRET = HeuristicRule(
    rule_id="hardcoded-secret",
    finding_type=FindingType.SECURITY_CONCERN,
    severity=Severity.ERROR,
    pattern=re.compile(
        r"\b\w*(password|passwd|secret|api_?key|access_?token|private_?key)\w*\b"
        r"\s*[:=]\s*['\"][^'\"\s]{4,}['\"]",
        re.IGNORECASE,
    ),
    confidence=0.8,
    reason="hardcoded_secret",
)

WEAK_HASH = HeuristicRule(
    rule_id="weak-hash",
    finding_type=FindingType.SECURITY_CONCERN,
    severity=Severity.WARNING,
    pattern=re.compile(
        r"\bhashlib\.(md5|sha1)\s*\("
        r"|\bcreateHash\s*\(\s*['\"](md5|sha1)['\"]"
        r"|\bMessageDigest\.getInstance\s*\(\s*\"(MD5|SHA-?1)\""
    ),
    confidence=0.7,
    reason="weak_hash_algorithm",
)

DYNAMIC_EXEC = HeuristicRule(
    rule_id="dynamic-exec",
    finding_type=FindingType.SECURITY_CONCERN,
    severity=Severity.WARNING,
    pattern=re.compile(r"(?<![\w.])(eval|exec)\s*\("),
    confidence=0.6,
    reason="dynamic_code_execution",
)

DEFAULT_RULES: tuple[HeuristicRule, ...] = (RAW_SQL, HARDCODED_SECRET, WEAK_HASH, DYNAMIC_EXEC)


def run_rules(candidate: Candidate, rules=DEFAULT_RULES) -> list[tuple[HeuristicRule, Finding]]:
    """Return ``(rule, finding)`` for every rule that fires on *candidate*."""
    fired = []
    for rule in rules:
        finding = rule.check(candidate)
        if finding is not None:
            fired.append((rule, finding))
    return fired
