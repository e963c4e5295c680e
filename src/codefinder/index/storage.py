"""Vector store adapters: a narrow interface plus SQLite and in-memory backends."""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence

import numpy as np

from codefinder.errors import AdapterError
from codefinder.models import IndexedItem, MetadataFilter, QueryResult, StoredRecord, sort_results

_FILTER_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(slots=True)
class CollectionHandle:
    """Reference to an open collection.

    ``dimension`` is the vector size already stored in the collection, or
    ``None`` while it is empty.
    """

    name: str
    dimension: int | None = None
    native: Any = field(default=None, repr=False)


class VectorStoreAdapter(ABC):
    """Interface every vector-store backend implements."""

    backend: str = "abstract"

    @property
    @abstractmethod
    def location(self) -> str:
        """Storage path or endpoint identifying this store."""

    @abstractmethod
    def get_or_create_collection(self, name: str, embedding_function: Any = None) -> CollectionHandle:
        ...

    @abstractmethod
    def upsert(self, handle: CollectionHandle, items: Sequence[IndexedItem]) -> None:
        ...

    @abstractmethod
    def query(
        self,
        handle: CollectionHandle,
        vector: np.ndarray,
        top_k: int,
        where: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        """Return at most ``top_k`` results ordered by decreasing similarity."""

    @abstractmethod
    def count(self, handle: CollectionHandle) -> int:
        ...

    @abstractmethod
    def delete(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> None:
        """Remove matching items; unknown ids are ignored."""

    @abstractmethod
    def get(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> List[StoredRecord]:
        """Return ids and metadata of matching items, without vectors."""

    @abstractmethod
    def delete_collection(self, name: str) -> None:
        ...

    def close(self) -> None:
        return None


def validate_filter(where: MetadataFilter | None) -> MetadataFilter:
    """Check an equality filter; keys must be plain identifiers."""
    if not where:
        return {}
    for key, value in where.items():
        if not _FILTER_KEY.match(key):
            raise AdapterError(f"Invalid metadata filter key: {key!r}")
        if not isinstance(value, (str, int, float, bool)):
            raise AdapterError(f"Filter values must be scalars, got {type(value).__name__} for {key!r}")
    return dict(where)


def matches_filter(metadata: Dict[str, Any], where: MetadataFilter) -> bool:
    return all(key in metadata and metadata[key] == value for key, value in where.items())


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    query = np.asarray(query, dtype="float32")
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    scores = matrix @ query
    return np.divide(scores, norms, out=np.zeros_like(scores), where=norms != 0)


def top_indices(scores: np.ndarray, top_k: int) -> np.ndarray:
    if top_k < len(scores):
        indices = np.argpartition(scores, -top_k)[-top_k:]
        return indices[np.argsort(scores[indices])[::-1]]
    return np.argsort(scores)[::-1]


def scalar_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the scalar values vector stores can hold."""
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class MemoryVectorStore(VectorStoreAdapter):
    """Process-local store, mostly for tests and throwaway indexes."""

    backend = "memory"

    def __init__(self, name: str = ":memory:") -> None:
        self._name = name
        self._collections: Dict[str, Dict[str, IndexedItem]] = {}
        self._lock = threading.Lock()

    @property
    def location(self) -> str:
        return self._name

    def _items(self, handle: CollectionHandle) -> Dict[str, IndexedItem]:
        try:
            return self._collections[handle.name]
        except KeyError as exc:
            raise AdapterError(f"Collection '{handle.name}' does not exist") from exc

    def get_or_create_collection(self, name: str, embedding_function: Any = None) -> CollectionHandle:
        with self._lock:
            items = self._collections.setdefault(name, {})
        dimension = next((len(item.vector) for item in items.values()), None)
        return CollectionHandle(name=name, dimension=dimension)

    def upsert(self, handle: CollectionHandle, items: Sequence[IndexedItem]) -> None:
        stored = self._items(handle)
        with self._lock:
            for item in items:
                stored[item.id] = IndexedItem(
                    id=item.id,
                    vector=np.asarray(item.vector, dtype="float32").copy(),
                    content=item.content,
                    metadata=scalar_metadata(item.metadata),
                )

    def query(
        self,
        handle: CollectionHandle,
        vector: np.ndarray,
        top_k: int,
        where: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        where = validate_filter(where)
        candidates = [item for item in self._items(handle).values() if matches_filter(item.metadata, where)]
        if not candidates or top_k <= 0:
            return []
        scores = cosine_scores(np.vstack([item.vector for item in candidates]), vector)
        results = [
            QueryResult(
                id=candidates[idx].id,
                content=candidates[idx].content,
                metadata=dict(candidates[idx].metadata),
                score=float(scores[idx]),
                vector=candidates[idx].vector,
            )
            for idx in top_indices(scores, top_k)
        ]
        return sort_results(results)

    def count(self, handle: CollectionHandle) -> int:
        return len(self._items(handle))

    def delete(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> None:
        stored = self._items(handle)
        where = validate_filter(where)
        with self._lock:
            targets = set(ids) if ids is not None else set(stored)
            for item_id in list(targets):
                item = stored.get(item_id)
                if item is not None and matches_filter(item.metadata, where):
                    del stored[item_id]

    def get(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> List[StoredRecord]:
        stored = self._items(handle)
        where = validate_filter(where)
        keys = list(ids) if ids is not None else list(stored)
        return [
            StoredRecord(id=key, metadata=dict(stored[key].metadata))
            for key in keys
            if key in stored and matches_filter(stored[key].metadata, where)
        ]

    def delete_collection(self, name: str) -> None:
        with self._lock:
            self._collections.pop(name, None)


class SQLiteVectorStore(VectorStoreAdapter):
    """Persistent store: one SQLite file, items keyed by (collection, id)."""

    backend = "sqlite"

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise AdapterError(f"Cannot open SQLite store at {self.db_path}: {exc}") from exc

    @property
    def location(self) -> str:
        return str(self.db_path)

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise AdapterError(f"SQLite operation failed: {exc}") from exc
        except Exception:
            self._conn.rollback()
            raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collections (
                    name TEXT PRIMARY KEY,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS items (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    embedding BLOB NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (collection, id),
                    FOREIGN KEY(collection) REFERENCES collections(name) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_items_file_path
                    ON items(collection, json_extract(metadata, '$.file_path'))
                """
            )

    @staticmethod
    def _where_sql(where: MetadataFilter) -> tuple[str, list[Any]]:
        clauses = []
        params: list[Any] = []
        for key, value in where.items():
            clauses.append(f"json_extract(metadata, '$.{key}') = ?")
            params.append(value)
        return "".join(f" AND {clause}" for clause in clauses), params

    def _select(
        self,
        columns: str,
        handle: CollectionHandle,
        ids: Sequence[str] | None,
        where: MetadataFilter | None,
    ) -> List[sqlite3.Row]:
        where_sql, params = self._where_sql(validate_filter(where))
        sql = f"SELECT {columns} FROM items WHERE collection = ?{where_sql}"
        args: list[Any] = [handle.name, *params]
        if ids is not None:
            if not ids:
                return []
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            args.extend(ids)
        try:
            return self._conn.execute(sql + " ORDER BY id", args).fetchall()
        except sqlite3.Error as exc:
            raise AdapterError(f"SQLite query failed: {exc}") from exc

    def get_or_create_collection(self, name: str, embedding_function: Any = None) -> CollectionHandle:
        with self.transaction() as conn:
            conn.execute("INSERT OR IGNORE INTO collections(name) VALUES (?)", (name,))
            row = conn.execute(
                "SELECT length(embedding) AS size FROM items WHERE collection = ? LIMIT 1", (name,)
            ).fetchone()
        dimension = row["size"] // 4 if row is not None else None
        return CollectionHandle(name=name, dimension=dimension)

    def upsert(self, handle: CollectionHandle, items: Sequence[IndexedItem]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO items(collection, id, content, metadata, embedding)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(collection, id) DO UPDATE SET
                    content = excluded.content,
                    metadata = excluded.metadata,
                    embedding = excluded.embedding,
                    updated_at = CURRENT_TIMESTAMP
                """,
                [
                    (
                        handle.name,
                        item.id,
                        item.content,
                        json.dumps(scalar_metadata(item.metadata), ensure_ascii=True, sort_keys=True),
                        sqlite3.Binary(np.asarray(item.vector, dtype="float32").tobytes()),
                    )
                    for item in items
                ],
            )

    def query(
        self,
        handle: CollectionHandle,
        vector: np.ndarray,
        top_k: int,
        where: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        rows = self._select("id, content, metadata, embedding", handle, None, where)
        if not rows or top_k <= 0:
            return []

        embeddings = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        scores = cosine_scores(embeddings, vector)
        results = []
        for idx in top_indices(scores, top_k):
            row = rows[idx]
            results.append(
                QueryResult(
                    id=row["id"],
                    content=row["content"],
                    metadata=json.loads(row["metadata"]),
                    score=float(scores[idx]),
                    vector=embeddings[idx],
                )
            )
        return sort_results(results)

    def count(self, handle: CollectionHandle) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS total FROM items WHERE collection = ?", (handle.name,)
        ).fetchone()
        return int(row["total"])

    def delete(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> None:
        where_sql, params = self._where_sql(validate_filter(where))
        sql = f"DELETE FROM items WHERE collection = ?{where_sql}"
        args: list[Any] = [handle.name, *params]
        if ids is not None:
            if not ids:
                return
            sql += f" AND id IN ({', '.join('?' for _ in ids)})"
            args.extend(ids)
        with self.transaction() as conn:
            conn.execute(sql, args)

    def get(
        self,
        handle: CollectionHandle,
        *,
        ids: Sequence[str] | None = None,
        where: MetadataFilter | None = None,
    ) -> List[StoredRecord]:
        return [
            StoredRecord(id=row["id"], metadata=json.loads(row["metadata"]))
            for row in self._select("id, metadata", handle, ids, where)
        ]

    def delete_collection(self, name: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM items WHERE collection = ?", (name,))
            conn.execute("DELETE FROM collections WHERE name = ?", (name,))
