"""Pinecone vector store backend.

One Pinecone index holds every collection; each collection is a namespace.
Pinecone keeps no document text, so chunk content travels in the metadata
under ``CONTENT_KEY`` and is stripped again on the way out.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterator, List, Sequence

import numpy as np
from pinecone import Pinecone

from codefinder.errors import AdapterError, ConfigError
from codefinder.index.storage import (
    CollectionHandle,
    VectorStoreAdapter,
    matches_filter,
    scalar_metadata,
    validate_filter,
)
from codefinder.models import IndexedItem, MetadataFilter, QueryResult, StoredRecord, sort_results

LOGGER = logging.getLogger(__name__)

API_KEY_ENV = "PINECONE_API_KEY"
CONTENT_KEY = "_content"
UPSERT_BATCH = 100
FETCH_BATCH = 100
DELETE_BATCH = 1000


def to_pinecone_filter(where: MetadataFilter | None) -> Dict[str, Any] | None:
    """Translate an equality filter into Pinecone's filter syntax."""
    where = validate_filter(where)
    if not where:
        return None
    return {key: {"$eq": value} for key, value in where.items()}


def _batches(values: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _split_metadata(raw: Dict[str, Any] | None) -> tuple[str, Dict[str, Any]]:
    metadata = dict(raw or {})
    content = metadata.pop(CONTENT_KEY, "")
    return str(content), metadata


class PineconeVectorStore(VectorStoreAdapter):
    """Pinecone-backed store addressed by index name."""

    backend = "pinecone"

    def __init__(self, location: str, *, api_key: str | None = None, index: Any = None) -> None:
        self._location = location
        if index is None:
            api_key = api_key or os.environ.get(API_KEY_ENV)
            if not api_key:
                raise ConfigError(
                    f"No Pinecone API key for index '{location}'",
                    suggestion=f"Set {API_KEY_ENV} or pass --backend sqlite.",
                )
            try:
                index = Pinecone(api_key=api_key).Index(location)
            except Exception as exc:
                raise AdapterError(f"Cannot open Pinecone index '{location}': {exc}") from exc
        self.index = index

    @property
    def location(self) -> str:
        return self._location

    def _call(self, action: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except AdapterError:
            raise
        except Exception as exc:
            raise AdapterError(f"Pinecone {action} failed: {exc}") from exc

    def _namespace_stats(self, namespace: str) -> tuple[int, int | None]:
        stats = self._call("describe_index_stats", self.index.describe_index_stats)
        summary = (getattr(stats, "namespaces", None) or {}).get(namespace)
        count = int(getattr(summary, "vector_count", 0) or 0)
        return count, getattr(stats, "dimension", None)

    def get_or_create_collection(self, name: str, embedding_function: Any = None) -> CollectionHandle:
        count, dimension = self._namespace_stats(name)
        return CollectionHandle(name=name, dimension=dimension if count else None, native=name)

    def upsert(self, handle: CollectionHandle, items: Sequence[IndexedItem]) -> None:
        vectors = [
            {
                "id": item.id,
                "values": np.asarray(item.vector, dtype="float32").tolist(),
                "metadata": {**scalar_metadata(item.metadata), CONTENT_KEY: item.content},
            }
            for item in items
        ]
        for batch in _batches(vectors, UPSERT_BATCH):
            self._call("upsert", self.index.upsert, vectors=list(batch), namespace=handle.name)

    def query(
        self,
        handle: CollectionHandle,
        vector: np.ndarray,
        top_k: int,
        where: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        pinecone_filter = to_pinecone_filter(where)
        if top_k <= 0:
            return []
        response = self._call(
            "query",
            self.index.query,
            vector=np.asarray(vector, dtype="float32").tolist(),
            top_k=top_k,
            filter=pinecone_filter,
            include_metadata=True,
            namespace=handle.name,
        )
        results = []
        for match in getattr(response, "matches", None) or []:
            content, metadata = _split_metadata(match.metadata)
            results.append(
                QueryResult(id=match.id, content=content, metadata=metadata, score=float(match.score))
            )
        return sort_results(results)

    def count(self, handle: CollectionHandle) -> int:
        return self._namespace_stats(handle.name)[0]

    def _all_ids(self, namespace: str) -> List[str]:
        ids: List[str] = []
        for page in self._call("list", self.index.list, namespace=namespace):
            ids.extend(page)
        return ids

    def get(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> List[StoredRecord]:
        where = validate_filter(where)
        if ids is None:
            ids = self._all_ids(handle.name)
        records = []
        for batch in _batches(list(ids), FETCH_BATCH):
            response = self._call("fetch", self.index.fetch, ids=list(batch), namespace=handle.name)
            for item_id, vector in (getattr(response, "vectors", None) or {}).items():
                _, metadata = _split_metadata(vector.metadata)
                if matches_filter(metadata, where):
                    records.append(StoredRecord(id=item_id, metadata=metadata))
        return sorted(records, key=lambda record: record.id)

    def delete(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> None:
        where = validate_filter(where)
        if ids is not None and not ids:
            return
        if ids is None and not where:
            if self.count(handle):
                self._call("delete", self.index.delete, delete_all=True, namespace=handle.name)
            return
        if where:
            ids = [record.id for record in self.get(handle, ids=ids, where=where)]
        for batch in _batches(list(ids or []), DELETE_BATCH):
            self._call("delete", self.index.delete, ids=list(batch), namespace=handle.name)

    def delete_collection(self, name: str) -> None:
        try:
            self.index.delete(delete_all=True, namespace=name)
        except Exception as exc:
            LOGGER.debug("Pinecone namespace %s not deleted: %s", name, exc)
