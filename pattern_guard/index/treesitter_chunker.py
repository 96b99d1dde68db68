"""
Tree-sitter structural chunker.

Supports: Python, JavaScript, TypeScript, Java, C, C++, Go, Rust, Ruby, PHP, C#

Top-level definitions become ``function`` / ``class`` chunks; the statements
between them (imports, constants, module code) are grouped into ``module``
chunks.  A definition larger than the size limit is split at its widest
internal boundary (a class becomes a header chunk plus one chunk per member,
recursively) and leaf units with no inner boundary are split by lines.

Uses tree-sitter >= 0.22 API with individual language packages.  When a
grammar package is unavailable the chunker falls back to line windows.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..errors import ParseFailure
from .chunker import (
    ChunkLimits,
    ChunkSpan,
    LanguageChunker,
    LineMap,
    LineWindowChunker,
    split_span,
)
from .models import ChunkKind

logger = logging.getLogger(__name__)

_F = ChunkKind.FUNCTION
_C = ChunkKind.CLASS

# ---------------------------------------------------------------------------
# Language → (tree-sitter Language object) lookup
# ---------------------------------------------------------------------------

def _get_lang_func(language: str):
    """Return the tree-sitter language() function for *language*, or None."""
    try:
        if language == "python":
            import tree_sitter_python as m  # type: ignore
            return m.language
        elif language == "javascript":
            import tree_sitter_javascript as m  # type: ignore
            return m.language
        elif language == "typescript":
            import tree_sitter_typescript as m  # type: ignore
            return m.language_typescript
        elif language == "java":
            import tree_sitter_java as m  # type: ignore
            return m.language
        elif language == "c":
            import tree_sitter_c as m  # type: ignore
            return m.language
        elif language == "cpp":
            import tree_sitter_cpp as m  # type: ignore
            return m.language
        elif language == "go":
            import tree_sitter_go as m  # type: ignore
            return m.language
        elif language == "rust":
            import tree_sitter_rust as m  # type: ignore
            return m.language
        elif language == "ruby":
            import tree_sitter_ruby as m  # type: ignore
            return m.language
        elif language == "php":
            import tree_sitter_php as m  # type: ignore
            return m.language_php
        elif language == "c_sharp":
            import tree_sitter_c_sharp as m  # type: ignore
            return m.language
    except ImportError:
        pass
    return None


# Cache parsers to avoid repeated construction
_PARSER_CACHE: dict[str, object] = {}


def _get_ts_parser(language: str):
    """
    Return a tree-sitter Parser configured for *language*, or None.

    Caches parsers for performance.
    """
    if language in _PARSER_CACHE:
        return _PARSER_CACHE[language]
    try:
        import tree_sitter as ts  # type: ignore
        func = _get_lang_func(language)
        if func is None:
            return None
        parser = ts.Parser(ts.Language(func()))
        _PARSER_CACHE[language] = parser
        return parser
    except Exception as exc:
        logger.warning("[chunker] Cannot create tree-sitter parser for %s: %s", language, exc)
        return None


# ---------------------------------------------------------------------------
# Definition node types per language
# ---------------------------------------------------------------------------

_DEFINITIONS: dict[str, dict[str, str]] = {
    "python": {
        "function_definition": _F,
        "class_definition": _C,
    },
    "javascript": {
        "function_declaration": _F,
        "generator_function_declaration": _F,
        "method_definition": _F,
        "class_declaration": _C,
    },
    "typescript": {
        "function_declaration": _F,
        "generator_function_declaration": _F,
        "method_definition": _F,
        "class_declaration": _C,
        "abstract_class_declaration": _C,
        "interface_declaration": _C,
    },
    "java": {
        "method_declaration": _F,
        "constructor_declaration": _F,
        "class_declaration": _C,
        "interface_declaration": _C,
        "enum_declaration": _C,
        "record_declaration": _C,
    },
    "c": {
        "function_definition": _F,
        "struct_specifier": _C,
    },
    "cpp": {
        "function_definition": _F,
        "class_specifier": _C,
        "struct_specifier": _C,
    },
    "go": {
        "function_declaration": _F,
        "method_declaration": _F,
        "type_declaration": _C,
    },
    "rust": {
        "function_item": _F,
        "struct_item": _C,
        "enum_item": _C,
        "trait_item": _C,
        "impl_item": _C,
    },
    "ruby": {
        "method": _F,
        "singleton_method": _F,
        "class": _C,
        "module": _C,
    },
    "php": {
        "function_definition": _F,
        "method_declaration": _F,
        "class_declaration": _C,
        "interface_declaration": _C,
        "trait_declaration": _C,
    },
    "c_sharp": {
        "method_declaration": _F,
        "constructor_declaration": _F,
        "class_declaration": _C,
        "interface_declaration": _C,
        "struct_declaration": _C,
        "record_declaration": _C,
    },
}

# Nodes that wrap a definition (decorators, exports): kind from the inner
# definition, range from the wrapper.
_WRAPPERS: frozenset[str] = frozenset({"decorated_definition", "export_statement"})

# Nodes whose body is treated as top level (namespaces).
_SCOPES: frozenset[str] = frozenset({
    "namespace_declaration",
    "file_scoped_namespace_declaration",
    "namespace_definition",
})

_JS_FUNCTION_VALUES: frozenset[str] = frozenset({
    "arrow_function", "function_expression", "function", "generator_function",
})

# Leftover text after the last member of a split class ("}" etc.)
_CLOSING_CHARS = " \t\r\n{}();end"


# ---------------------------------------------------------------------------
# Node helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _definition_kind(node, language: str):
    """Return ``(kind, inner_definition_node)`` or ``(None, None)``."""
    kind = _DEFINITIONS.get(language, {}).get(node.type)
    if kind:
        return kind, node
    if node.type in _WRAPPERS:
        for child in node.named_children:
            inner_kind, inner = _definition_kind(child, language)
            if inner_kind:
                return inner_kind, inner
    if language in ("javascript", "typescript") and node.type in (
        "lexical_declaration", "variable_declaration",
    ):
        for decl in node.named_children:
            if decl.type != "variable_declarator":
                continue
            value = decl.child_by_field_name("value")
            if value is not None and value.type in _JS_FUNCTION_VALUES:
                return _F, decl
    return None, None


def _node_name(node) -> str:
    """Best-effort symbol name for a definition node."""
    name = node.child_by_field_name("name")
    if name is not None:
        return _text(name)
    # C / C++: function_definition → declarator → function_declarator → declarator
    current = node
    for _ in range(4):
        current = current.child_by_field_name("declarator")
        if current is None:
            break
        if current.type in ("identifier", "field_identifier", "qualified_identifier"):
            return _text(current)
    # Rust impl blocks
    impl_type = node.child_by_field_name("type")
    if impl_type is not None:
        return f"impl {_text(impl_type)}"
    # Go type_declaration → type_spec name
    for child in node.named_children:
        inner = child.child_by_field_name("name")
        if inner is not None:
            return _text(inner)
    return node.type


def _body_children(node) -> list:
    """Named children of the definition's body, used as split boundaries."""
    body = node.child_by_field_name("body")
    if body is None:
        return []
    return list(body.named_children)


def _scope_children(node) -> list:
    body = node.child_by_field_name("body")
    return list(body.named_children) if body is not None else list(node.named_children)


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class TreeSitterChunker(LanguageChunker):
    """Structural chunker backed by tree-sitter grammars."""

    def __init__(self) -> None:
        self._fallback = LineWindowChunker(ChunkKind.MODULE)

    def chunk(self, file_path, content, language, limits):
        parser = _get_ts_parser(language)
        if parser is None:
            logger.debug("[chunker] No structural parser for %s; using line windows", language)
            return self._fallback.chunk(file_path, content, language, limits)

        source = content.encode("utf-8")
        try:
            tree = parser.parse(source)
        except Exception as exc:
            raise ParseFailure(f"tree-sitter failed on {file_path}: {exc}") from exc

        builder = _SpanBuilder(source, language, limits)
        return builder.collect(self._top_level(tree.root_node), prefix="", body_kind=None)

    @staticmethod
    def _top_level(root) -> list:
        nodes: list = []
        for node in root.named_children:
            if node.type in _SCOPES:
                nodes.extend(_scope_children(node))
            else:
                nodes.append(node)
        return nodes


class _SpanBuilder:
    """Walks sibling nodes and emits spans for one file."""

    def __init__(self, source: bytes, language: str, limits: ChunkLimits) -> None:
        self._source = source
        self._language = language
        self._limits = limits
        self._lines = LineMap(source)

    def _span(self, start: int, end: int, kind: str, symbol: str) -> Optional[ChunkSpan]:
        text = self._source[start:end].decode("utf-8", errors="replace")
        if not text.strip():
            return None
        line_start, line_end = self._lines.span_lines(start, end)
        return ChunkSpan(
            line_start=line_start,
            line_end=line_end,
            byte_start=start,
            byte_end=end,
            kind=kind,
            content=text,
            symbol=symbol,
        )

    def collect(self, nodes: list, prefix: str, body_kind: Optional[str]) -> list[ChunkSpan]:
        """Emit spans for a run of sibling nodes."""
        spans: list[ChunkSpan] = []
        gap: list = []

        def _flush() -> None:
            if not gap:
                return
            kind = body_kind or ChunkKind.MODULE
            symbol = f"{prefix}.<body>" if prefix else "<module>"
            span = self._span(gap[0].start_byte, gap[-1].end_byte, kind, symbol)
            if span is not None:
                spans.extend(split_span(span, self._limits.max_chars))
            gap.clear()

        for node in nodes:
            kind, inner = _definition_kind(node, self._language)
            if kind is None:
                gap.append(node)
                continue
            _flush()
            name = _node_name(inner)
            symbol = f"{prefix}.{name}" if prefix else name
            spans.extend(self._definition(node, inner, kind, symbol))
        _flush()
        return spans

    def _definition(self, outer, inner, kind: str, symbol: str) -> list[ChunkSpan]:
        span = self._span(outer.start_byte, outer.end_byte, kind, symbol)
        if span is None:
            return []
        if len(span.content) <= self._limits.max_chars:
            return [span]

        children = _body_children(inner)
        if not children:
            return split_span(span, self._limits.max_chars)

        # Split at member boundaries: header, members (recursive), tail
        spans: list[ChunkSpan] = []
        header = self._span(outer.start_byte, children[0].start_byte, kind, symbol)
        if header is not None:
            spans.extend(split_span(header, self._limits.max_chars))
        spans.extend(self.collect(children, prefix=symbol, body_kind=kind))
        tail = self._span(children[-1].end_byte, outer.end_byte, kind, symbol)
        if tail is not None and tail.content.strip(_CLOSING_CHARS):
            spans.extend(split_span(tail, self._limits.max_chars))
        return spans
