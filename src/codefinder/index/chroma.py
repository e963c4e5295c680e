"""ChromaDB vector store backend."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence
from urllib.parse import urlparse

import chromadb
import numpy as np

from codefinder.errors import AdapterError
from codefinder.index.storage import (
    CollectionHandle,
    VectorStoreAdapter,
    scalar_metadata,
    validate_filter,
)
from codefinder.models import IndexedItem, MetadataFilter, QueryResult, StoredRecord, sort_results

LOGGER = logging.getLogger(__name__)


def to_chroma_where(where: MetadataFilter | None) -> Dict[str, Any] | None:
    """Translate an equality filter into Chroma's ``where`` syntax."""
    where = validate_filter(where)
    clauses = [{key: {"$eq": value}} for key, value in where.items()]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorStore(VectorStoreAdapter):
    """ChromaDB-backed store; a local directory or a ``http(s)://host:port`` server."""

    backend = "chroma"

    def __init__(self, location: str | Path, *, client: Any = None) -> None:
        self._location = str(location)
        try:
            self.client = client or self._connect(self._location)
        except Exception as exc:
            raise AdapterError(f"Cannot open Chroma store at {self._location}: {exc}") from exc

    @staticmethod
    def _connect(location: str) -> Any:
        parsed = urlparse(location)
        if parsed.scheme in ("http", "https"):
            return chromadb.HttpClient(
                host=parsed.hostname or "localhost",
                port=parsed.port or 8000,
                ssl=parsed.scheme == "https",
            )
        path = Path(location)
        path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(path))

    @property
    def location(self) -> str:
        return self._location

    def _call(self, action: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except AdapterError:
            raise
        except Exception as exc:
            raise AdapterError(f"Chroma {action} failed: {exc}") from exc

    def get_or_create_collection(self, name: str, embedding_function: Any = None) -> CollectionHandle:
        collection = self._call(
            "get_or_create_collection",
            self.client.get_or_create_collection,
            name=name,
            embedding_function=embedding_function,
            metadata={"hnsw:space": "cosine"},
        )
        dimension = None
        if self._call("count", collection.count):
            sample = self._call("peek", collection.peek, limit=1)
            embeddings = sample.get("embeddings")
            if embeddings is not None and len(embeddings):
                dimension = len(embeddings[0])
        return CollectionHandle(name=name, dimension=dimension, native=collection)

    def upsert(self, handle: CollectionHandle, items: Sequence[IndexedItem]) -> None:
        self._call(
            "upsert",
            handle.native.upsert,
            ids=[item.id for item in items],
            embeddings=[np.asarray(item.vector, dtype="float32").tolist() for item in items],
            documents=[item.content for item in items],
            metadatas=[scalar_metadata(item.metadata) or None for item in items],
        )

    def query(
        self,
        handle: CollectionHandle,
        vector: np.ndarray,
        top_k: int,
        where: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        where_clause = to_chroma_where(where)
        total = self.count(handle)
        if total == 0 or top_k <= 0:
            return []
        raw = self._call(
            "query",
            handle.native.query,
            query_embeddings=[np.asarray(vector, dtype="float32").tolist()],
            n_results=min(top_k, total),
            where=where_clause,
            include=["documents", "metadatas", "distances"],
        )
        ids = (raw.get("ids") or [[]])[0]
        documents = (raw.get("documents") or [[]])[0]
        metadatas = (raw.get("metadatas") or [[]])[0]
        distances = (raw.get("distances") or [[]])[0]
        results = [
            QueryResult(
                id=item_id,
                content=documents[i] if documents else "",
                metadata=dict(metadatas[i] or {}) if metadatas else {},
                score=1.0 - float(distances[i]) if distances else 0.0,
            )
            for i, item_id in enumerate(ids)
        ]
        return sort_results(results)

    def count(self, handle: CollectionHandle) -> int:
        return int(self._call("count", handle.native.count))

    def delete(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> None:
        where_clause = to_chroma_where(where)
        if ids is not None and not ids:
            return
        if ids is None and where_clause is None:
            ids = [record.id for record in self.get(handle)]
            if not ids:
                return
        self._call(
            "delete",
            handle.native.delete,
            ids=list(ids) if ids is not None else None,
            where=where_clause,
        )

    def get(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> List[StoredRecord]:
        if ids is not None and not ids:
            return []
        raw = self._call(
            "get",
            handle.native.get,
            ids=list(ids) if ids is not None else None,
            where=to_chroma_where(where),
            include=["metadatas"],
        )
        metadatas = raw.get("metadatas") or []
        records = [
            StoredRecord(id=item_id, metadata=dict(metadatas[i] or {}) if metadatas else {})
            for i, item_id in enumerate(raw.get("ids") or [])
        ]
        return sorted(records, key=lambda record: record.id)

    def delete_collection(self, name: str) -> None:
        try:
            self.client.delete_collection(name=name)
        except Exception as exc:
            LOGGER.debug("Chroma collection %s not deleted: %s", name, exc)
