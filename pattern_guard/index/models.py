"""
Data model owned by the Code Indexer: chunks and per-file records.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from typing import Optional

import numpy as np


class ChunkKind:
    FUNCTION = "function"
    CLASS = "class"
    MODULE = "module"
    CONFIG = "config"

    ALL = (FUNCTION, CLASS, MODULE, CONFIG)


def content_hash(text: str) -> str:
    """SHA-256 hex digest of *text* (UTF-8)."""
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def make_chunk_id(file_path: str, symbol: str, ordinal: int) -> str:
    """
    Generate a deterministic chunk id from ``{file_path}::{symbol}::{ordinal}``.

    *symbol* is the chunk's structural key (e.g. ``Repo.save`` or
    ``<module>``) and *ordinal* its occurrence index among chunks sharing
    that key, so inserting an unrelated function does not renumber others.
    """
    key = f"{file_path}::{symbol}::{ordinal}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, key))


@dataclass
class Chunk:
    """A single indexed semantic unit of source code."""

    chunk_id: str
    file_path: str
    symbol: str
    ordinal: int
    kind: str
    language: str
    line_start: int
    line_end: int
    byte_start: int
    byte_end: int
    content: str
    content_hash: str
    last_modified: float
    vector: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    degraded: bool = False

    @property
    def slot(self) -> tuple[str, int]:
        """The (symbol, ordinal) pair used to match chunks across re-indexing."""
        return (self.symbol, self.ordinal)

    def same_range(self, other: "Chunk") -> bool:
        return (
            self.line_start == other.line_start
            and self.line_end == other.line_end
            and self.byte_start == other.byte_start
            and self.byte_end == other.byte_end
        )


@dataclass
class FileRecord:
    """Indexer bookkeeping for one file."""

    path: str
    content_hash: str
    language: str
    chunk_ids: list[str] = field(default_factory=list)
    indexed_at: float = 0.0
    needs_reindex: bool = False


@dataclass
class IndexChange:
    """Chunk-level delta produced by one applied file update."""

    path: str
    added: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    moved_from: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.changed or self.removed or self.moved_from)

    @property
    def touched(self) -> list[str]:
        """Chunk ids whose cluster assignment must be reconsidered."""
        return self.added + self.changed


class EventKind:
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    MOVED = "moved"

    ALL = (CREATED, MODIFIED, DELETED, MOVED)


@dataclass(frozen=True)
class FileEvent:
    """A file-system change delivered by the watcher (or a caller)."""

    kind: str
    path: str
    dest_path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind not in EventKind.ALL:
            raise ValueError(f"unknown file event kind: {self.kind!r}")
        if self.kind == EventKind.MOVED and not self.dest_path:
            raise ValueError("moved events need a dest_path")
