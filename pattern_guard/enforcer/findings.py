"""
Enforcer input and output records.

Findings are structured data for a presentation layer; nothing here renders
user-facing text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..index.models import Chunk, ChunkKind, content_hash


class FindingType(str, Enum):
    PATTERN_VIOLATION = "pattern_violation"
    DUPLICATE_FUNCTIONALITY = "duplicate_functionality"
    SECURITY_CONCERN = "security_concern"
    BEST_PRACTICE = "best_practice"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, floor: "Severity") -> "Severity":
        return self if self.rank >= floor.rank else floor


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.ERROR: 2}


@dataclass
class Candidate:
    """Code to evaluate: typically the chunk currently being edited."""

    content: str
    language: str = "python"
    kind: str = ChunkKind.FUNCTION
    file_path: Optional[str] = None
    line_start: int = 1
    symbol: Optional[str] = None
    chunk_id: Optional[str] = None

    @property
    def content_hash(self) -> str:
        return content_hash(self.content)

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "Candidate":
        return cls(
            content=chunk.content,
            language=chunk.language,
            kind=chunk.kind,
            file_path=chunk.file_path,
            line_start=chunk.line_start,
            symbol=chunk.symbol,
            chunk_id=chunk.chunk_id,
        )

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "symbol": self.symbol,
            "chunk_id": self.chunk_id,
            "language": self.language,
            "kind": self.kind,
            "line_start": self.line_start,
            "line_end": self.line_start + self.content.count("\n"),
            "content_hash": self.content_hash,
        }


@dataclass
class Finding:
    type: FindingType
    severity: Severity
    candidate: Candidate
    confidence: float
    similarity: float = 0.0
    pattern_id: Optional[str] = None
    pattern_name: Optional[str] = None
    category: Optional[str] = None
    examples: list[str] = field(default_factory=list)
    rule_id: Optional[str] = None
    details: dict = field(default_factory=dict)

    def sort_key(self) -> tuple:
        return (-self.confidence, -self.severity.rank, self.type.value,
                self.pattern_id or self.rule_id or "")

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 4),
            "similarity": round(self.similarity, 4),
            "pattern_id": self.pattern_id,
            "pattern_name": self.pattern_name,
            "category": self.category,
            "examples": list(self.examples),
            "rule_id": self.rule_id,
            "details": dict(self.details),
            "candidate": self.candidate.to_dict(),
        }
