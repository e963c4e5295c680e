"""Syntax-aware chunking of source files.

Chunks follow syntactic boundaries (functions, classes, top-level
statements) reported by tree-sitter. Every chunk covers a contiguous span of
the original text and the spans tile the whole document, so joining the
chunks' ``source_text`` reconstructs the input exactly. Whitespace and
comments between two nodes travel with the node that follows them.
"""

from __future__ import annotations

import logging
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

from codefinder.errors import ChunkingConfigError, ParseFailure, UnsupportedLanguage
from codefinder.models import Chunk
from codefinder.parsing.languages import LINE_FALLBACK_LANGUAGES, Language
from codefinder.parsing.parser import GrammarRegistry, default_registry
from codefinder.utils.text import split_lines

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_SIZE = 1000
DEFAULT_MIN_CHUNK_SIZE = 50
DEFAULT_OVERLAP = 0

_JS_BOUNDARIES = frozenset(
    {
        "function_declaration",
        "generator_function_declaration",
        "class_declaration",
        "method_definition",
        "lexical_declaration",
        "variable_declaration",
        "export_statement",
        "comment",
    }
)
_TS_BOUNDARIES = _JS_BOUNDARIES | {
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
    "abstract_class_declaration",
}

BOUNDARY_TYPES: Mapping[Language, frozenset[str]] = {
    Language.JAVASCRIPT: _JS_BOUNDARIES,
    Language.TYPESCRIPT: _TS_BOUNDARIES,
    Language.TSX: _TS_BOUNDARIES | {"jsx_element", "jsx_self_closing_element"},
    Language.PYTHON: frozenset(
        {"function_definition", "class_definition", "decorated_definition", "comment"}
    ),
    Language.JSON: frozenset({"object", "array", "pair"}),
    Language.CSS: frozenset(
        {
            "rule_set",
            "media_statement",
            "keyframes_statement",
            "supports_statement",
            "import_statement",
            "at_rule",
            "comment",
        }
    ),
    Language.HTML: frozenset({"element", "script_element", "style_element", "comment"}),
}


@dataclass(slots=True)
class ChunkingOptions:
    """Chunk size budget, measured in characters of source text.

    ``overlap`` characters of the preceding text are prepended to every chunk
    after the first; they are not counted against ``max_chunk_size``.
    """

    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE
    overlap: int = DEFAULT_OVERLAP

    @property
    def fingerprint(self) -> str:
        """Compact form stored with indexed chunks to detect option changes."""
        return f"{self.max_chunk_size}:{self.min_chunk_size}:{self.overlap}"

    def validate(self) -> None:
        if self.max_chunk_size < 1:
            raise ChunkingConfigError(
                f"max_chunk_size must be positive, got {self.max_chunk_size}"
            )
        if not 0 <= self.min_chunk_size <= self.max_chunk_size:
            raise ChunkingConfigError(
                f"min_chunk_size must be between 0 and max_chunk_size "
                f"({self.max_chunk_size}), got {self.min_chunk_size}"
            )
        if not 0 <= self.overlap < self.max_chunk_size:
            raise ChunkingConfigError(
                f"overlap must be non-negative and smaller than max_chunk_size "
                f"({self.max_chunk_size}), got {self.overlap}"
            )


@dataclass(slots=True)
class _Unit:
    start: int
    end: int
    node_type: str | None
    boundary: bool = False
    warning: str | None = None
    error: str | None = None
    cut: bool = False
    config_error: str | None = None

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(slots=True)
class _Group:
    units: List[_Unit] = field(default_factory=list)

    @property
    def start(self) -> int:
        return self.units[0].start

    @property
    def end(self) -> int:
        return self.units[-1].end

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def has_boundary(self) -> bool:
        return any(unit.boundary for unit in self.units)

    @property
    def has_error(self) -> bool:
        return any(unit.error for unit in self.units)


class _Offsets:
    """Translate tree-sitter byte offsets into string indices."""

    def __init__(self, text: str, data: bytes) -> None:
        self._table: List[int] | None = None
        if len(data) != len(text):
            table = [0]
            for char in text:
                table.append(table[-1] + len(char.encode("utf-8", errors="surrogatepass")))
            self._table = table

    def char(self, byte_offset: int) -> int:
        if self._table is None:
            return byte_offset
        return bisect_left(self._table, byte_offset)


class AstChunker:
    """Split documents into retrieval-sized chunks along syntax boundaries."""

    def __init__(
        self,
        options: ChunkingOptions | None = None,
        *,
        registry: GrammarRegistry | None = None,
    ) -> None:
        self.options = options or ChunkingOptions()
        self.options.validate()
        self._registry = registry

    @property
    def registry(self) -> GrammarRegistry:
        if self._registry is None:
            self._registry = default_registry()
        return self._registry

    def chunk(
        self,
        content: str,
        language: Language | str | None,
        base_metadata: Mapping[str, Any] | None = None,
    ) -> List[Chunk]:
        """Return the ordered chunk sequence for ``content``.

        Never raises for bad input: unknown languages and parse failures fall
        back to line-based splitting and record a ``warning`` on each chunk;
        a sub-tree that cannot be processed becomes a chunk carrying ``error``.
        """
        if not content:
            return []
        if not isinstance(language, Language):
            language = Language.from_tag(language)
        base = dict(base_metadata or {})

        data = content.encode("utf-8", errors="surrogatepass")
        try:
            tree = self.registry.parse(data, language)
        except UnsupportedLanguage:
            if language in LINE_FALLBACK_LANGUAGES:
                LOGGER.debug("Line splitting %s source", language.value)
            else:
                LOGGER.warning("No grammar for %s, applying line splitting", language.value)
            return self._line_fallback(
                content, language, base, "Fallback line splitting applied (no grammar for language)"
            )
        except ParseFailure as exc:
            LOGGER.warning("Parsing failed for %s: %s", base.get("file_path", "<memory>"), exc)
            return self._line_fallback(
                content, language, base, f"Fallback line splitting applied (parse error: {exc})"
            )

        offsets = _Offsets(content, data)
        root = tree.root_node
        if not root.children:
            return self._line_fallback(
                content, language, base, "Fallback line splitting applied (no syntax nodes)"
            )

        units = self._split(root, 0, len(content), content, language, offsets, top=True)
        forced = [unit for unit in units if unit.cut]
        if forced:
            message = (
                f"max_chunk_size={self.options.max_chunk_size} is smaller than an indivisible token "
                f"({forced[0].node_type}); {len(forced)} piece(s) were cut at the budget"
            )
            forced[0].config_error = message
            LOGGER.warning("%s in %s", message, base.get("file_path", "<memory>"))
        return self._emit(content, language, base, self._merge(units))

    def _split(
        self,
        node: Any,
        start: int,
        end: int,
        content: str,
        language: Language,
        offsets: _Offsets,
        *,
        top: bool = False,
    ) -> List[_Unit]:
        """Cover ``[start, end)`` with units, descending into oversized nodes."""
        boundaries = BOUNDARY_TYPES.get(language, frozenset())
        children = node.children
        if end - start <= self.options.max_chunk_size and not (top and children):
            warning = "Syntax error in this region" if node.has_error else None
            return [_Unit(start, end, node.type, node.type in boundaries, warning)]
        if not children:
            return self._oversized_leaf(start, end, node.type, content)

        units: List[_Unit] = []
        cursor = start
        last = len(children) - 1
        for position, child in enumerate(children):
            child_end = end if position == last else offsets.char(child.end_byte)
            if child_end <= cursor:
                continue
            try:
                units.extend(self._split(child, cursor, child_end, content, language, offsets))
            except (RecursionError, ValueError, UnicodeError) as exc:
                LOGGER.error("Could not chunk %s node at offset %d: %s", child.type, cursor, exc)
                units.append(
                    _Unit(cursor, child_end, child.type, error=f"Chunking failed for sub-tree: {exc}")
                )
            cursor = child_end
        return units

    def _oversized_leaf(self, start: int, end: int, node_type: str, content: str) -> List[_Unit]:
        units = []
        for span in split_lines(content[start:end], max_chars=self.options.max_chunk_size, offset=start):
            warning = None
            if not span.forced:
                warning = f"Fallback line splitting applied to oversized {node_type} node"
            units.append(_Unit(span.start, span.end, node_type, warning=warning, cut=span.forced))
        return units

    def _merge(self, units: Sequence[_Unit]) -> List[_Group]:
        """Merge fragments into their following sibling while the budget allows.

        A group keeps absorbing the next unit while it is smaller than
        ``min_chunk_size`` or holds no boundary node. A trailing group that is
        still too small joins the previous one when it fits.
        """
        limit = self.options.max_chunk_size
        groups: List[_Group] = []
        current = _Group()
        for unit in units:
            if unit.error:
                if current.units:
                    groups.append(current)
                groups.append(_Group([unit]))
                current = _Group()
                continue
            if current.units and self._wants_more(current) and current.size + unit.size <= limit:
                current.units.append(unit)
                continue
            if current.units:
                groups.append(current)
            current = _Group([unit])
        if current.units:
            groups.append(current)

        if len(groups) > 1:
            tail, previous = groups[-1], groups[-2]
            if (
                self._wants_more(tail)
                and not (tail.has_error or previous.has_error)
                and previous.size + tail.size <= limit
            ):
                previous.units.extend(tail.units)
                groups.pop()
        return groups

    def _wants_more(self, group: _Group) -> bool:
        return group.size < self.options.min_chunk_size or not group.has_boundary

    def _emit(
        self, content: str, language: Language, base: Dict[str, Any], groups: Sequence[_Group]
    ) -> List[Chunk]:
        chunks: List[Chunk] = []
        for group in groups:
            dominant = max(group.units, key=lambda unit: unit.size)
            warnings = [unit.warning for unit in group.units if unit.warning]
            errors = [unit.error for unit in group.units if unit.error]
            config_errors = [unit.config_error for unit in group.units if unit.config_error]
            chunks.append(
                self._make_chunk(
                    content,
                    group.start,
                    group.end,
                    len(chunks),
                    language,
                    base,
                    node_type=dominant.node_type,
                    warning=warnings[0] if warnings else None,
                    error=errors[0] if errors else None,
                    config_error=config_errors[0] if config_errors else None,
                )
            )
        return chunks

    def _line_fallback(
        self, content: str, language: Language, base: Dict[str, Any], warning: str
    ) -> List[Chunk]:
        chunks: List[Chunk] = []
        for span in split_lines(content, max_chars=self.options.max_chunk_size):
            chunks.append(
                self._make_chunk(
                    content, span.start, span.end, len(chunks), language, base, warning=warning
                )
            )
        return chunks

    def _make_chunk(
        self,
        content: str,
        start: int,
        end: int,
        index: int,
        language: Language,
        base: Dict[str, Any],
        *,
        node_type: str | None = None,
        warning: str | None = None,
        error: str | None = None,
        config_error: str | None = None,
    ) -> Chunk:
        overlap = content[max(0, start - self.options.overlap) : start] if index else ""
        metadata: Dict[str, Any] = dict(base)
        metadata.update(
            chunk_index=index,
            language=language.value,
            start_line=content.count("\n", 0, start) + 1,
            end_line=content.count("\n", 0, max(start, end - 1)) + 1,
            overlap=len(overlap),
        )
        for key, value in (
            ("node_type", node_type),
            ("warning", warning),
            ("error", error),
            ("config_error", config_error),
        ):
            if value is not None:
                metadata[key] = value
        return Chunk(content=overlap + content[start:end], metadata=metadata)


def chunk_code(
    content: str,
    language: Language | str | None,
    options: ChunkingOptions | None = None,
    base_metadata: Mapping[str, Any] | None = None,
) -> List[Chunk]:
    """Convenience wrapper around :class:`AstChunker`."""
    return AstChunker(options).chunk(content, language, base_metadata)
