"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from codefinder.chunking.chunker import (
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    DEFAULT_OVERLAP,
    ChunkingOptions,
)
from codefinder.embedding.encoder import DEFAULT_MODEL, PROVIDERS, EmbeddingConfig
from codefinder.errors import ConfigError
from codefinder.index.manager import BACKENDS, DEFAULT_COLLECTION, IndexState

ENV_PREFIX = "CODEFINDER_"

# Backends addressed by a name rather than a filesystem path.
NAMED_LOCATIONS = {"memory": ":memory:", "pinecone": "codefinder"}


def _get_default_db_path(backend: str = "sqlite") -> Path:
    """Prefer a project-local index when one exists, otherwise the user's home."""
    name = "chroma" if backend == "chroma" else "codefinder.db"
    local_db = Path(".codefinder") / name
    if local_db.exists():
        return local_db
    return Path.home() / ".codefinder" / name


def _is_url(value: object) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def _optional_int(value: str) -> int | None:
    return int(value) if value.strip() else None


def _flag(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


_ENV_FIELDS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "DB_PATH": ("db_path", str),
    "BACKEND": ("backend", str),
    "COLLECTION": ("collection_name", str),
    "MAX_CHUNK_SIZE": ("max_chunk_size", int),
    "MIN_CHUNK_SIZE": ("min_chunk_size", int),
    "OVERLAP": ("overlap", int),
    "PROVIDER": ("provider", str),
    "MODEL": ("model_name", str),
    "DIMENSION": ("dimension", _optional_int),
    "BATCH_SIZE": ("max_batch_size", int),
    "NORMALIZE": ("normalize", _flag),
    "API_KEY": ("api_key", str),
    "API_KEY_ENV": ("api_key_env", str),
    "BASE_URL": ("base_url", str),
    "TIMEOUT": ("timeout", float),
}


@dataclass(slots=True)
class AppConfig:
    db_path: Path | str | None = None
    backend: str = "sqlite"
    collection_name: str = DEFAULT_COLLECTION
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE
    overlap: int = DEFAULT_OVERLAP
    provider: str = "sentence-transformers"
    model_name: str = DEFAULT_MODEL
    dimension: int | None = None
    max_batch_size: int = 32
    normalize: bool = True
    api_key: str | None = None
    api_key_env: str | None = None
    base_url: str | None = None
    timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(
                f"Unknown store backend '{self.backend}' (expected one of: {', '.join(BACKENDS)})"
            )
        if self.provider not in PROVIDERS:
            raise ConfigError(
                f"Unknown embedding provider '{self.provider}' "
                f"(expected one of: {', '.join(sorted(PROVIDERS))})"
            )
        if self.backend in NAMED_LOCATIONS:
            self.db_path = NAMED_LOCATIONS[self.backend] if self.db_path is None else str(self.db_path)
        elif self.db_path is None:
            self.db_path = _get_default_db_path(self.backend)
        elif not _is_url(self.db_path):
            self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "AppConfig":
        """Build a config from ``CODEFINDER_*`` variables; explicit overrides win."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for suffix, (name, convert) in _ENV_FIELDS.items():
            raw = environ.get(ENV_PREFIX + suffix)
            if raw is None:
                continue
            try:
                values[name] = convert(raw)
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {ENV_PREFIX}{suffix}: {raw!r}") from exc
        known = {item.name for item in fields(cls)}
        values.update({key: value for key, value in overrides.items() if key in known and value is not None})
        return cls(**values)

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path(self.backend)
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def resolve_location(self, base_dir: Path | None = None) -> str:
        """Storage location handed to the store adapter."""
        if self.backend in NAMED_LOCATIONS or _is_url(self.db_path):
            return str(self.db_path)
        return str(self.resolve_db_path(base_dir))

    def store_exists(self, base_dir: Path | None = None) -> bool:
        location = self.resolve_location(base_dir)
        if self.backend in NAMED_LOCATIONS or _is_url(location):
            return True
        return Path(location).exists()

    def chunking_options(self) -> ChunkingOptions:
        options = ChunkingOptions(
            max_chunk_size=self.max_chunk_size,
            min_chunk_size=self.min_chunk_size,
            overlap=self.overlap,
        )
        options.validate()
        return options

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            provider=self.provider,  # type: ignore[arg-type]
            model_name=self.model_name,
            dimension=self.dimension,
            max_batch_size=self.max_batch_size,
            normalize=self.normalize,
            api_key=self.api_key,
            api_key_env=self.api_key_env,
            base_url=self.base_url,
            timeout=self.timeout,
        )

    def index_state(self, base_dir: Path | None = None) -> IndexState:
        return IndexState(
            self.resolve_location(base_dir),
            self.collection_name,
            backend=self.backend,
        )
