"""Semantic search interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

from codefinder.embedding.encoder import EmbeddingModel
from codefinder.index.manager import IndexManager
from codefinder.models import MetadataFilter, QueryResult


@dataclass(slots=True)
class SearchResult:
    id: str
    path: str
    chunk_index: int
    score: float
    text: str
    metadata: dict

    @classmethod
    def from_query_result(cls, result: QueryResult) -> "SearchResult":
        return cls(
            id=result.id,
            path=str(result.metadata.get("file_path", "")),
            chunk_index=int(result.metadata.get("chunk_index", 0)),
            score=result.score,
            text=result.content,
            metadata=dict(result.metadata),
        )

    @property
    def lines(self) -> str:
        start, end = self.metadata.get("start_line"), self.metadata.get("end_line")
        if start is None:
            return ""
        return f"{start}-{end}" if end != start else str(start)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "chunk_index": self.chunk_index,
            "score": self.score,
            "text": self.text,
            "metadata": self.metadata,
        }


class Searcher:
    """High-level API to query the index."""

    def __init__(self, embedder: EmbeddingModel, manager: IndexManager) -> None:
        self.embedder = embedder
        self.manager = manager

    def search(
        self, query: str, *, top_k: int = 10, where: MetadataFilter | None = None
    ) -> List[SearchResult]:
        embedding = self.embedder.embed_query(query)
        results = self.manager.query(embedding, top_k, where)
        return [SearchResult.from_query_result(result) for result in results]
