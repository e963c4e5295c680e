"""Language detection and syntax parsing."""

from codefinder.parsing.languages import Language, detect_language
from codefinder.parsing.parser import GrammarRegistry, default_registry, parse

__all__ = ["GrammarRegistry", "Language", "default_registry", "detect_language", "parse"]
