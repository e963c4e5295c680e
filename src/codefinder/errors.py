"""Exception hierarchy for the indexing pipeline."""

from __future__ import annotations


class CodeFinderError(Exception):
    """Base class for every error raised by CodeFinder.

    ``suggestion`` carries an optional remediation hint that user-facing
    surfaces (CLI, web API, per-file outcomes) display next to the message.
    """

    suggestion: str | None = None

    def __init__(self, message: str, *, suggestion: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if suggestion is not None:
            self.suggestion = suggestion


class ConfigError(CodeFinderError):
    suggestion = "Check the CodeFinder configuration values and environment variables."


# Parsing / chunking


class UnsupportedLanguage(CodeFinderError):
    """No grammar is registered for the requested language tag."""

    def __init__(self, language: str) -> None:
        super().__init__(f"No grammar registered for language '{language}'")
        self.language = language


class ParseFailure(CodeFinderError):
    """The grammar raised while parsing; callers fall back to plain-text chunking."""


class ChunkingConfigError(CodeFinderError):
    suggestion = "Adjust max_chunk_size, min_chunk_size and overlap."


# Embedding


class EmbeddingError(CodeFinderError):
    suggestion = "Check the embedding provider configuration."


class ProviderAuthError(EmbeddingError):
    suggestion = "Check provider credentials (API key or key environment variable)."


class ProviderRequestError(EmbeddingError):
    suggestion = "Check that the embedding endpoint is reachable and the model exists."


class DimensionMismatch(EmbeddingError):
    suggestion = (
        "The configured embedding dimension does not match the model or the index; "
        "fix the dimension setting or rebuild the collection."
    )

    def __init__(self, expected: int, actual: int, *, context: str = "vector") -> None:
        super().__init__(f"Expected {context} dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


# Index


class IndexStoreError(CodeFinderError):
    suggestion = "Check vector store configuration and connectivity."


class DuplicateId(IndexStoreError):
    suggestion = "Each item in a single upsert call must have a distinct id."

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Duplicate item id in upsert batch: {item_id}")
        self.item_id = item_id


class AdapterError(IndexStoreError):
    """Wraps failures raised by a vector-store backend."""
