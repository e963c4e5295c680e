"""Tree-sitter grammar registry and parsing entry point."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Mapping

import tree_sitter_css
import tree_sitter_html
import tree_sitter_javascript
import tree_sitter_json
import tree_sitter_python
import tree_sitter_typescript
from tree_sitter import Language as Grammar
from tree_sitter import Parser, Tree

from codefinder.errors import ParseFailure, UnsupportedLanguage
from codefinder.parsing.languages import Language

LOGGER = logging.getLogger(__name__)

GRAMMAR_FACTORIES: Mapping[Language, Callable[[], object]] = {
    Language.PYTHON: tree_sitter_python.language,
    Language.JAVASCRIPT: tree_sitter_javascript.language,
    Language.TYPESCRIPT: tree_sitter_typescript.language_typescript,
    Language.TSX: tree_sitter_typescript.language_tsx,
    Language.JSON: tree_sitter_json.language,
    Language.CSS: tree_sitter_css.language,
    Language.HTML: tree_sitter_html.language,
}


class GrammarRegistry:
    """Maps language tags to loaded tree-sitter grammars.

    Grammars are loaded once when the registry is built; ``parse`` only looks
    them up. A fresh ``Parser`` is created per call so concurrent callers
    never share parser state.
    """

    def __init__(self, factories: Mapping[Language, Callable[[], object]] | None = None) -> None:
        self._grammars: Dict[Language, Grammar] = {}
        for language, factory in (factories or GRAMMAR_FACTORIES).items():
            self._grammars[language] = Grammar(factory())
            LOGGER.debug("Registered grammar for %s", language.value)

    @property
    def languages(self) -> frozenset[Language]:
        return frozenset(self._grammars)

    def supports(self, language: Language) -> bool:
        return language in self._grammars

    def parse(self, source: str | bytes, language: Language) -> Tree:
        """Parse ``source`` with the grammar registered for ``language``.

        Raises ``UnsupportedLanguage`` when no grammar is registered and
        ``ParseFailure`` when the grammar itself fails.
        """
        grammar = self._grammars.get(language)
        if grammar is None:
            raise UnsupportedLanguage(language.value)

        data = source.encode("utf-8") if isinstance(source, str) else source
        try:
            tree = Parser(grammar).parse(data)
        except Exception as exc:
            raise ParseFailure(f"Failed to parse {language.value} source: {exc}") from exc
        if tree is None:
            raise ParseFailure(f"Parser returned no tree for {language.value} source")
        return tree


_DEFAULT_REGISTRY: GrammarRegistry | None = None


def default_registry() -> GrammarRegistry:
    """Process-wide registry holding every bundled grammar."""
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is None:
        _DEFAULT_REGISTRY = GrammarRegistry()
    return _DEFAULT_REGISTRY


def parse(source: str | bytes, language: Language) -> Tree:
    return default_registry().parse(source, language)
