"""Core CodeFinder data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Union

import numpy as np

Scalar = Union[str, int, float, bool]
MetadataFilter = Dict[str, Scalar]

ID_SEPARATOR = "::"


def make_item_id(file_path: str, chunk_index: int) -> str:
    """Deterministic identity of an indexed chunk."""
    return f"{file_path}{ID_SEPARATOR}{chunk_index}"


def split_item_id(item_id: str) -> tuple[str, int]:
    path, _, index = item_id.rpartition(ID_SEPARATOR)
    return path, int(index)


@dataclass(slots=True)
class Document:
    """Source file handed to the pipeline by the loader.

    ``id`` is the workspace-relative path; ``metadata`` carries at least
    ``file_path`` and ``file_mod_time``.
    """

    id: str
    content: str
    metadata: Dict[str, Scalar] = field(default_factory=dict)

    @property
    def file_path(self) -> str:
        return str(self.metadata.get("file_path", self.id))

    @property
    def file_mod_time(self) -> float:
        return float(self.metadata.get("file_mod_time", 0.0))


class ChunkStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True)
class Chunk:
    """Contiguous slice of a document with positional and provenance metadata."""

    content: str
    metadata: Dict[str, Any]

    @property
    def chunk_index(self) -> int:
        return int(self.metadata["chunk_index"])

    @property
    def node_type(self) -> str | None:
        return self.metadata.get("node_type")

    @property
    def warning(self) -> str | None:
        return self.metadata.get("warning")

    @property
    def error(self) -> str | None:
        return self.metadata.get("error")

    @property
    def config_error(self) -> str | None:
        """Set on the first chunk whose text had to be cut inside a single token."""
        return self.metadata.get("config_error")

    @property
    def status(self) -> ChunkStatus:
        if self.error:
            return ChunkStatus.ERROR
        if self.warning or self.config_error:
            return ChunkStatus.WARNING
        return ChunkStatus.OK

    @property
    def source_text(self) -> str:
        """Chunk content without the overlap copied from the previous chunk."""
        return self.content[int(self.metadata.get("overlap", 0)) :]


@dataclass(slots=True)
class IndexedItem:
    id: str
    vector: np.ndarray
    content: str
    metadata: Dict[str, Scalar]

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: np.ndarray) -> "IndexedItem":
        metadata = {key: value for key, value in chunk.metadata.items() if value is not None}
        return cls(
            id=make_item_id(str(metadata["file_path"]), chunk.chunk_index),
            vector=np.asarray(vector, dtype="float32"),
            content=chunk.content,
            metadata=metadata,
        )


@dataclass(slots=True)
class StoredRecord:
    """Identity and metadata of an item already present in a collection."""

    id: str
    metadata: Dict[str, Scalar]


@dataclass(slots=True)
class QueryResult:
    """Similarity hit; ``vector`` is only populated when the backend returns it."""

    id: str
    content: str
    metadata: Dict[str, Scalar]
    score: float
    vector: np.ndarray | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": dict(self.metadata),
            "score": self.score,
        }


def sort_results(results: List[QueryResult]) -> List[QueryResult]:
    """Order by decreasing score, ties broken by id for stable output."""
    return sorted(results, key=lambda result: (-result.score, result.id))
