"""
Chunker — splits a file's text into semantic units.

Per-language chunkers sit behind the :class:`LanguageChunker` interface and
are looked up through a :class:`ChunkerRegistry`:

  - tree-sitter languages → function / class / module chunks
  - config formats        → line windows tagged ``config``
  - everything else       → line windows tagged ``module``

:func:`chunk_file` is the single entry point used by the indexer.  It never
raises: a chunker failure degrades to a whole-file ``module`` chunk, and every
emitted chunk is non-empty and within the configured size limit.
"""

from __future__ import annotations

import bisect
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .models import ChunkKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language mapping
# ---------------------------------------------------------------------------

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "c_sharp",
    # Config formats
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".toml": "toml",
    ".ini": "ini",
    ".cfg": "ini",
    # Line-window only
    ".sql": "sql",
    ".sh": "shell",
    ".kt": "kotlin",
    ".swift": "swift",
    ".scala": "scala",
    ".lua": "lua",
}

STRUCTURAL_LANGUAGES: frozenset[str] = frozenset({
    "python", "javascript", "typescript", "java", "c", "cpp",
    "go", "rust", "ruby", "php", "c_sharp",
})

CONFIG_LANGUAGES: frozenset[str] = frozenset({"yaml", "json", "toml", "ini"})

SUPPORTED_LANGUAGES: frozenset[str] = frozenset(EXTENSION_TO_LANGUAGE.values())


def detect_language(file_path: str) -> Optional[str]:
    """Return the language tag for *file_path*, or None if unsupported."""
    ext = os.path.splitext(file_path)[1].lower()
    return EXTENSION_TO_LANGUAGE.get(ext)


# ---------------------------------------------------------------------------
# Spans and limits
# ---------------------------------------------------------------------------

@dataclass
class ChunkSpan:
    """One chunk as produced by a chunker: range, kind and content."""

    line_start: int
    line_end: int
    byte_start: int
    byte_end: int
    kind: str
    content: str
    symbol: str


@dataclass
class ChunkLimits:
    """Size limits applied to every emitted chunk."""

    max_chars: int = 4000
    line_window: int = 60
    line_overlap: int = 10

    @classmethod
    def from_config(cls, config, language: str) -> "ChunkLimits":
        return cls(
            max_chars=config.chunk_limit(language),
            line_window=config.LINE_WINDOW,
            line_overlap=config.LINE_OVERLAP,
        )


class LineMap:
    """Maps byte offsets of a UTF-8 buffer to 1-based line numbers."""

    def __init__(self, source: bytes) -> None:
        self._starts = [0]
        idx = source.find(b"\n")
        while idx != -1:
            self._starts.append(idx + 1)
            idx = source.find(b"\n", idx + 1)

    def line_of(self, byte_offset: int) -> int:
        return bisect.bisect_right(self._starts, max(byte_offset, 0))

    def span_lines(self, byte_start: int, byte_end: int) -> tuple[int, int]:
        """Return (line_start, line_end) for the half-open byte range."""
        return self.line_of(byte_start), self.line_of(max(byte_start, byte_end - 1))


def split_span(span: ChunkSpan, max_chars: int) -> list[ChunkSpan]:
    """
    Split *span* into consecutive pieces of at most *max_chars* characters.

    Lines are grouped greedily; a single line longer than the limit is cut
    into character slices.  Whitespace-only pieces are dropped.  Kind and
    symbol are preserved (the indexer disambiguates by ordinal).
    """
    if len(span.content) <= max_chars:
        return [span] if span.content.strip() else []

    pieces: list[ChunkSpan] = []
    buf: list[str] = []
    buf_chars = 0
    buf_line = span.line_start
    buf_byte = span.byte_start
    line_no = span.line_start
    byte_pos = span.byte_start

    def _emit(text: str, first_line: int, last_line: int, b_start: int) -> None:
        if not text.strip():
            return
        pieces.append(ChunkSpan(
            line_start=first_line,
            line_end=last_line,
            byte_start=b_start,
            byte_end=b_start + len(text.encode("utf-8")),
            kind=span.kind,
            content=text,
            symbol=span.symbol,
        ))

    for line in span.content.splitlines(keepends=True):
        if len(line) > max_chars:
            if buf:
                _emit("".join(buf), buf_line, line_no - 1, buf_byte)
                buf, buf_chars = [], 0
            offset = byte_pos
            for i in range(0, len(line), max_chars):
                part = line[i:i + max_chars]
                _emit(part, line_no, line_no, offset)
                offset += len(part.encode("utf-8"))
            byte_pos += len(line.encode("utf-8"))
            line_no += 1
            buf_line, buf_byte = line_no, byte_pos
            continue
        if buf and buf_chars + len(line) > max_chars:
            _emit("".join(buf), buf_line, line_no - 1, buf_byte)
            buf, buf_chars = [], 0
            buf_line, buf_byte = line_no, byte_pos
        buf.append(line)
        buf_chars += len(line)
        byte_pos += len(line.encode("utf-8"))
        line_no += 1
    if buf:
        _emit("".join(buf), buf_line, line_no - 1, buf_byte)
    return pieces


def whole_file_span(content: str, kind: str = ChunkKind.MODULE) -> ChunkSpan:
    """A single span covering the entire file."""
    raw = content.encode("utf-8")
    line_count = max(1, content.count("\n") + (0 if content.endswith("\n") else 1))
    return ChunkSpan(
        line_start=1,
        line_end=line_count,
        byte_start=0,
        byte_end=len(raw),
        kind=kind,
        content=content,
        symbol="<file>",
    )


# ---------------------------------------------------------------------------
# Chunker interface
# ---------------------------------------------------------------------------

class LanguageChunker(ABC):
    """A pluggable per-language chunker."""

    @abstractmethod
    def chunk(
        self,
        file_path: str,
        content: str,
        language: str,
        limits: ChunkLimits,
    ) -> list[ChunkSpan]:
        """Return the ordered chunk spans for *content*.

        May raise :class:`~pattern_guard.errors.ParseFailure` (or any other
        exception); :func:`chunk_file` converts failures into a whole-file
        chunk.
        """


class LineWindowChunker(LanguageChunker):
    """Fixed-size line windows with overlap, for languages without a parser."""

    def __init__(self, kind: str = ChunkKind.MODULE) -> None:
        self.kind = kind

    def chunk(self, file_path, content, language, limits):
        lines = content.splitlines(keepends=True)
        if not lines:
            return []
        window = max(1, limits.line_window)
        overlap = limits.line_overlap if 0 <= limits.line_overlap < window else window // 4
        step = max(1, window - overlap)

        # Byte offset of each line start
        offsets = [0]
        for line in lines:
            offsets.append(offsets[-1] + len(line.encode("utf-8")))

        spans: list[ChunkSpan] = []
        start = 0
        while start < len(lines):
            end = min(start + window, len(lines))
            text = "".join(lines[start:end])
            if text.strip():
                span = ChunkSpan(
                    line_start=start + 1,
                    line_end=end,
                    byte_start=offsets[start],
                    byte_end=offsets[end],
                    kind=self.kind,
                    content=text,
                    symbol="<window>",
                )
                spans.extend(split_span(span, limits.max_chars))
            if end >= len(lines):
                break
            start += step
        return spans


class ChunkerRegistry:
    """Maps language tags to chunkers; unknown languages get line windows."""

    def __init__(self, default: Optional[LanguageChunker] = None) -> None:
        self._chunkers: dict[str, LanguageChunker] = {}
        self._default = default or LineWindowChunker(ChunkKind.MODULE)

    def register(self, language: str, chunker: LanguageChunker) -> None:
        self._chunkers[language] = chunker

    def get(self, language: str) -> LanguageChunker:
        return self._chunkers.get(language, self._default)

    def languages(self) -> list[str]:
        return sorted(self._chunkers)


def default_registry() -> ChunkerRegistry:
    """Registry with tree-sitter for code and config windows for config files."""
    from .treesitter_chunker import TreeSitterChunker

    registry = ChunkerRegistry()
    ts_chunker = TreeSitterChunker()
    for language in STRUCTURAL_LANGUAGES:
        registry.register(language, ts_chunker)
    config_chunker = LineWindowChunker(ChunkKind.CONFIG)
    for language in CONFIG_LANGUAGES:
        registry.register(language, config_chunker)
    return registry


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def chunk_file(
    file_path: str,
    content: str,
    language: str,
    registry: Optional[ChunkerRegistry] = None,
    limits: Optional[ChunkLimits] = None,
) -> list[ChunkSpan]:
    """
    Split *content* into chunk spans.

    Parameters
    ----------
    file_path:
        Path used for logging only; chunking depends on content + language.
    content:
        Full text of the file.
    language:
        Language tag (see :data:`EXTENSION_TO_LANGUAGE`).
    registry:
        Chunker lookup; defaults to :func:`default_registry`.
    limits:
        Size limits; defaults to :class:`ChunkLimits` defaults.

    Returns
    -------
    list[ChunkSpan]
        Ordered, non-empty spans, each within ``limits.max_chars``.  Empty
        for whitespace-only content.
    """
    if not content.strip():
        return []
    registry = registry or default_registry()
    limits = limits or ChunkLimits()

    try:
        spans = registry.get(language).chunk(file_path, content, language, limits)
    except Exception as exc:
        logger.warning(
            "[chunker] Parse failure in %s (%s): %s; using whole-file chunk",
            file_path, language, exc,
        )
        spans = [whole_file_span(content)]

    bounded: list[ChunkSpan] = []
    for span in spans:
        bounded.extend(split_span(span, limits.max_chars))
    if not bounded:
        bounded = split_span(whole_file_span(content), limits.max_chars)
    return bounded
