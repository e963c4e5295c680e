"""Map file paths to supported language tags."""

from __future__ import annotations

from enum import Enum
from pathlib import PurePath


class Language(str, Enum):
    """Closed set of language tags understood by the chunker.

    ``JAVASCRIPT`` also covers JSX (the JavaScript grammar parses JSX
    natively) and ``TSX`` uses the TypeScript superset grammar with JSX.
    ``MARKDOWN`` and ``XML`` have no bundled grammar and are always split
    by lines.
    """

    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    TSX = "tsx"
    PYTHON = "python"
    JSON = "json"
    CSS = "css"
    HTML = "html"
    MARKDOWN = "markdown"
    XML = "xml"
    UNKNOWN = "unknown"

    @classmethod
    def from_tag(cls, tag: str | None) -> "Language":
        if not tag:
            return cls.UNKNOWN
        try:
            return cls(tag.lower())
        except ValueError:
            return cls.UNKNOWN


EXTENSION_MAP: dict[str, Language] = {
    ".js": Language.JAVASCRIPT,
    ".jsx": Language.JAVASCRIPT,
    ".mjs": Language.JAVASCRIPT,
    ".cjs": Language.JAVASCRIPT,
    ".ts": Language.TYPESCRIPT,
    ".mts": Language.TYPESCRIPT,
    ".cts": Language.TYPESCRIPT,
    ".tsx": Language.TSX,
    ".py": Language.PYTHON,
    ".pyi": Language.PYTHON,
    ".json": Language.JSON,
    ".css": Language.CSS,
    ".html": Language.HTML,
    ".htm": Language.HTML,
    ".md": Language.MARKDOWN,
    ".markdown": Language.MARKDOWN,
    ".xml": Language.XML,
}

LINE_FALLBACK_LANGUAGES = frozenset({Language.MARKDOWN, Language.XML, Language.UNKNOWN})

_INTERPRETERS: dict[str, Language] = {
    "python": Language.PYTHON,
    "node": Language.JAVASCRIPT,
    "deno": Language.TYPESCRIPT,
}


def detect_language(file_path: str | PurePath, content: str | None = None) -> Language:
    """Return the language tag for ``file_path``; never raises.

    The extension table is authoritative. Extension-less files fall back to
    the shebang line of ``content`` when one is given.
    """
    suffix = PurePath(file_path).suffix.lower()
    language = EXTENSION_MAP.get(suffix)
    if language is not None:
        return language
    if not suffix and content and content.startswith("#!"):
        return _INTERPRETERS.get(_shebang_interpreter(content), Language.UNKNOWN)
    return Language.UNKNOWN


def _shebang_interpreter(content: str) -> str:
    words = [word for word in content.splitlines()[0][2:].split() if not word.startswith("-")]
    if not words:
        return ""
    name = PurePath(words[0]).name
    if name == "env" and len(words) > 1:
        name = PurePath(words[1]).name
    return name.rstrip("0123456789.")
