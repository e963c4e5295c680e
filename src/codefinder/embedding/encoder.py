"""Embedding model management."""

from __future__ import annotations

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Literal, Sequence

import httpx
import numpy as np

from codefinder.errors import (
    ConfigError,
    DimensionMismatch,
    ProviderAuthError,
    ProviderRequestError,
)

DEFAULT_MODEL = "sentence-transformers/all-mpnet-base-v2"
DEFAULT_MOCK_DIMENSION = 768
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OPENAI_URL = "https://api.openai.com/v1"

ProviderName = Literal["mock", "sentence-transformers", "ollama", "openai", "http"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingConfig:
    """Provider selection plus the knobs shared by every provider.

    ``dimension`` may be left unset for providers that can report it
    (sentence-transformers); every other provider needs it configured so
    vectors can be validated before they reach the index.
    """

    provider: ProviderName = "mock"
    model_name: str = DEFAULT_MODEL
    dimension: int | None = None
    max_batch_size: int = 32
    normalize: bool = True
    api_key: str | None = None
    api_key_env: str | None = None
    base_url: str | None = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    device: str | None = None

    def resolve_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None


class EmbeddingProvider(ABC):
    """One backend call per batch; batching and validation live in EmbeddingModel."""

    name: str = "provider"
    dimension: int | None = None

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> Sequence[Sequence[float]] | np.ndarray:
        """Return one vector per input text, in input order."""

    def close(self) -> None:
        return None


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic vectors keyed on text content, for tests and dry runs."""

    name = "mock"

    def __init__(self, dimension: int = DEFAULT_MOCK_DIMENSION) -> None:
        self.dimension = dimension

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        vectors = np.empty((len(texts), self.dimension), dtype="float32")
        for row, text in enumerate(texts):
            seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
            vectors[row] = np.random.default_rng(seed).standard_normal(self.dimension)
        return vectors


class SentenceTransformerProvider(EmbeddingProvider):
    """Thin wrapper around `SentenceTransformer` running locally."""

    name = "sentence-transformers"

    def __init__(self, config: EmbeddingConfig) -> None:
        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(config.model_name, device=config.device)
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        self._batch_size = config.max_batch_size
        logger.info("Loaded %s (dimension %d)", config.model_name, self.dimension)

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        return self._model.encode(
            list(texts),
            batch_size=self._batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=False,
        )


class _HttpProvider(EmbeddingProvider):
    """Shared transport and error mapping for HTTP embedding APIs."""

    def __init__(
        self,
        config: EmbeddingConfig,
        *,
        base_url: str,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.dimension = config.dimension
        headers = {"Content-Type": "application/json", **config.headers}
        api_key = config.resolve_api_key()
        if api_key:
            headers.setdefault("Authorization", f"Bearer {api_key}")
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            response = self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            raise ProviderRequestError(
                f"{self.name} embedding request timed out after {self.config.timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestError(f"{self.name} embedding request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise ProviderAuthError(
                f"{self.name} rejected the credentials (HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{self.name} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderRequestError(f"{self.name} returned a non-JSON response") from exc


class OllamaProvider(_HttpProvider):
    name = "ollama"

    def __init__(self, config: EmbeddingConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(config, base_url=config.base_url or DEFAULT_OLLAMA_URL, transport=transport)

    def embed_batch(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        data = self._post("/api/embed", {"model": self.config.model_name, "input": list(texts)})
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise ProviderRequestError("Invalid response from Ollama: missing 'embeddings'")
        return embeddings


class OpenAIProvider(_HttpProvider):
    """OpenAI-compatible ``/embeddings`` endpoint; an API key is mandatory."""

    name = "openai"

    def __init__(self, config: EmbeddingConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        if config.api_key_env is None:
            config.api_key_env = "OPENAI_API_KEY"
        if not config.resolve_api_key():
            raise ProviderAuthError(
                f"No API key for the openai provider (set {config.api_key_env} or api_key)"
            )
        super().__init__(config, base_url=config.base_url or DEFAULT_OPENAI_URL, transport=transport)

    def embed_batch(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        payload: Dict[str, Any] = {"model": self.config.model_name, "input": list(texts)}
        if self.config.dimension:
            payload["dimensions"] = self.config.dimension
        data = self._post("/embeddings", payload)
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise ProviderRequestError("Invalid response from openai: missing 'data'")
        return [row["embedding"] for row in sorted(rows, key=lambda row: row.get("index", 0))]


class HttpProvider(_HttpProvider):
    """Generic endpoint accepting ``{"texts": [...]}`` and returning ``{"embeddings": [...]}``."""

    name = "http"

    def __init__(self, config: EmbeddingConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        if not config.base_url:
            raise ConfigError("The http embedding provider requires base_url")
        super().__init__(config, base_url="", transport=transport)

    def embed_batch(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        data = self._post(str(self.config.base_url), {"texts": list(texts)})
        embeddings = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(embeddings, list):
            raise ProviderRequestError(
                'Invalid response format from embedding API. Expected {"embeddings": [...]}.'
            )
        return embeddings


def _build_mock(config: EmbeddingConfig, transport: Any) -> EmbeddingProvider:
    return MockEmbeddingProvider(config.dimension or DEFAULT_MOCK_DIMENSION)


PROVIDERS: Dict[str, Callable[[EmbeddingConfig, Any], EmbeddingProvider]] = {
    "mock": _build_mock,
    "sentence-transformers": lambda config, transport: SentenceTransformerProvider(config),
    "ollama": lambda config, transport: OllamaProvider(config, transport=transport),
    "openai": lambda config, transport: OpenAIProvider(config, transport=transport),
    "http": lambda config, transport: HttpProvider(config, transport=transport),
}


def create_provider(
    config: EmbeddingConfig, *, transport: httpx.BaseTransport | None = None
) -> EmbeddingProvider:
    factory = PROVIDERS.get(config.provider)
    if factory is None:
        raise ConfigError(
            f"Unknown embedding provider '{config.provider}' "
            f"(expected one of: {', '.join(sorted(PROVIDERS))})"
        )
    return factory(config, transport)


class EmbeddingModel:
    """Batching, order-preserving front end over an embedding provider.

    - ``embed([])`` returns an empty array without touching the provider.
    - Inputs are sent in batches of at most ``max_batch_size``; outputs are
      concatenated in input order.
    - Every vector is checked against the configured dimension.
    """

    def __init__(
        self,
        config: EmbeddingConfig | None = None,
        *,
        provider: EmbeddingProvider | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or EmbeddingConfig()
        if self.config.max_batch_size < 1:
            raise ConfigError("max_batch_size must be positive")
        self.provider = provider or create_provider(self.config, transport=transport)
        dimension = self.config.dimension or self.provider.dimension
        if not dimension:
            raise ConfigError(
                f"Embedding dimension is not configured for provider '{self.provider.name}'"
            )
        if self.provider.dimension and self.provider.dimension != dimension:
            raise DimensionMismatch(dimension, self.provider.dimension, context="model")
        self.dimension = int(dimension)
        self.calls = 0

    def close(self) -> None:
        self.provider.close()

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings with shape ``(len(texts), dimension)``."""
        sentences = list(texts)
        if not sentences:
            return np.empty((0, self.dimension), dtype="float32")

        batch_size = self.config.max_batch_size
        total = (len(sentences) + batch_size - 1) // batch_size
        batches = []
        for number, start in enumerate(range(0, len(sentences), batch_size), start=1):
            batch = sentences[start : start + batch_size]
            logger.debug(
                "Embedding batch %d/%d (%d texts) via %s", number, total, len(batch), self.provider.name
            )
            self.calls += 1
            batches.append(self._validate(self.provider.embed_batch(batch), len(batch)))

        embeddings = np.vstack(batches)
        if self.config.normalize:
            norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
            embeddings = embeddings / np.where(norms == 0, 1.0, norms)
        return embeddings.astype("float32", copy=False)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def _validate(self, raw: Sequence[Sequence[float]] | np.ndarray, expected: int) -> np.ndarray:
        if len(raw) != expected:
            raise ProviderRequestError(
                f"{self.provider.name} embedding count mismatch: expected {expected}, got {len(raw)}"
            )
        for vector in raw:
            if len(vector) != self.dimension:
                raise DimensionMismatch(self.dimension, len(vector))
        return np.asarray(raw, dtype="float32").reshape(expected, self.dimension)
