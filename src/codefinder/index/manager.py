"""Index state ownership and the operations exposed over one collection."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

import numpy as np

from codefinder.errors import AdapterError, ConfigError, DimensionMismatch, DuplicateId
from codefinder.index.storage import (
    CollectionHandle,
    MemoryVectorStore,
    SQLiteVectorStore,
    VectorStoreAdapter,
)
from codefinder.models import IndexedItem, MetadataFilter, QueryResult, StoredRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION = "codefinder"
BACKENDS = ("sqlite", "chroma", "memory", "pinecone")

StoreOpener = Callable[[str], VectorStoreAdapter]


def open_store(backend: str, location: str | Path) -> VectorStoreAdapter:
    """Instantiate the adapter for ``backend`` at ``location``."""
    if backend == "sqlite":
        path = Path(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        return SQLiteVectorStore(path)
    if backend == "chroma":
        from codefinder.index.chroma import ChromaVectorStore

        return ChromaVectorStore(location)
    if backend == "pinecone":
        from codefinder.index.pinecone_store import PineconeVectorStore

        return PineconeVectorStore(str(location))
    if backend == "memory":
        return MemoryVectorStore(str(location))
    raise ConfigError(f"Unknown store backend '{backend}' (expected one of: {', '.join(BACKENDS)})")


class IndexState:
    """Owned handle to one vector-store collection.

    The adapter is opened lazily on first use. Collection handles are cached
    per ``(location, collection name)``; :meth:`reinitialize` with another
    location closes the adapter and drops every cached handle.
    """

    def __init__(
        self,
        location: str | Path,
        collection_name: str = DEFAULT_COLLECTION,
        *,
        backend: str = "sqlite",
        opener: StoreOpener | None = None,
    ) -> None:
        self.location = str(location)
        self.collection_name = collection_name
        self.backend = backend
        self._opener = opener or (lambda location: open_store(self.backend, location))
        self._adapter: VectorStoreAdapter | None = None
        self._handles: Dict[Tuple[str, str], CollectionHandle] = {}

    @property
    def key(self) -> Tuple[str, str]:
        return (self.location, self.collection_name)

    @property
    def is_open(self) -> bool:
        return self.key in self._handles

    @property
    def adapter(self) -> VectorStoreAdapter | None:
        return self._adapter

    def open(self) -> Tuple[VectorStoreAdapter, CollectionHandle]:
        """Return the adapter and collection handle, creating them on first use."""
        handle = self._handles.get(self.key)
        if handle is not None and self._adapter is not None:
            return self._adapter, handle
        if self._adapter is None:
            self._adapter = self._opener(self.location)
            LOGGER.debug("Opened %s store at %s", self._adapter.backend, self.location)
        handle = self._adapter.get_or_create_collection(self.collection_name)
        self._handles[self.key] = handle
        LOGGER.info("Collection '%s' ready at %s", self.collection_name, self.location)
        return self._adapter, handle

    def reinitialize(self, location: str | Path | None = None, collection_name: str | None = None) -> None:
        """Point the state at a new location or collection; cached handles are invalidated."""
        new_location = str(location) if location is not None else self.location
        if new_location != self.location:
            self.close()
            self.location = new_location
        if collection_name is not None:
            self._handles.pop((self.location, collection_name), None)
            self.collection_name = collection_name
        self._handles.pop(self.key, None)

    def forget_handle(self) -> None:
        self._handles.pop(self.key, None)

    def close(self) -> None:
        self._handles.clear()
        if self._adapter is not None:
            self._adapter.close()
            self._adapter = None


class ManagerStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"


class IndexManager:
    """Validated operations over the collection owned by an :class:`IndexState`.

    The manager adds no locking: concurrent calls are only as safe as the
    underlying adapter makes them.
    """

    def __init__(self, state: IndexState, *, dimension: int | None = None) -> None:
        self.state = state
        self.dimension = dimension

    @property
    def status(self) -> ManagerStatus:
        return ManagerStatus.READY if self.state.is_open else ManagerStatus.UNINITIALIZED

    def _ready(self) -> Tuple[VectorStoreAdapter, CollectionHandle]:
        try:
            adapter, handle = self.state.open()
        except AdapterError:
            LOGGER.error("Index initialization failed for %s", self.state.location)
            raise
        if self.dimension and handle.dimension and handle.dimension != self.dimension:
            self.state.forget_handle()
            raise DimensionMismatch(handle.dimension, self.dimension, context="collection")
        return adapter, handle

    def _expected_dimension(self, handle: CollectionHandle) -> int | None:
        return self.dimension or handle.dimension

    def upsert_items(self, items: Sequence[IndexedItem]) -> int:
        """Insert or overwrite ``items`` by id; returns the number written."""
        if not items:
            return 0
        seen = set()
        for item in items:
            if item.id in seen:
                raise DuplicateId(item.id)
            seen.add(item.id)

        adapter, handle = self._ready()
        expected = self._expected_dimension(handle) or len(items[0].vector)
        for item in items:
            if len(item.vector) != expected:
                raise DimensionMismatch(expected, len(item.vector))

        adapter.upsert(handle, items)
        if handle.dimension is None:
            handle.dimension = expected
        return len(items)

    def query(
        self,
        vector: np.ndarray | Sequence[float],
        top_k: int = 10,
        metadata_filter: MetadataFilter | None = None,
    ) -> List[QueryResult]:
        adapter, handle = self._ready()
        query = np.asarray(vector, dtype="float32")
        expected = self._expected_dimension(handle)
        if expected and query.shape[-1] != expected:
            raise DimensionMismatch(expected, int(query.shape[-1]), context="query")
        return adapter.query(handle, query, top_k, metadata_filter)

    def count(self) -> int:
        adapter, handle = self._ready()
        return adapter.count(handle)

    def get(
        self, *, ids: Sequence[str] | None = None, metadata_filter: MetadataFilter | None = None
    ) -> List[StoredRecord]:
        adapter, handle = self._ready()
        return adapter.get(handle, ids=ids, where=metadata_filter)

    def delete_by_ids(self, ids: Iterable[str]) -> None:
        ids = list(ids)
        if not ids:
            return
        adapter, handle = self._ready()
        adapter.delete(handle, ids=ids)

    def delete_by_filter(self, metadata_filter: MetadataFilter) -> None:
        if not metadata_filter:
            raise AdapterError(
                "delete_by_filter needs at least one constraint",
                suggestion="Use clear() to empty the whole collection.",
            )
        adapter, handle = self._ready()
        adapter.delete(handle, where=metadata_filter)

    def clear(self) -> None:
        adapter, handle = self._ready()
        adapter.delete(handle)
        handle.dimension = None

    def file_records(self, file_path: str) -> List[StoredRecord]:
        return self.get(metadata_filter={"file_path": file_path})

    def chunk_metadata(self, file_path: str) -> List[Dict[str, Any]]:
        """Stored metadata of every chunk of ``file_path``, ordered by ``chunk_index``."""
        records = sorted(self.file_records(file_path), key=lambda record: record.metadata.get("chunk_index", 0))
        return [{"id": record.id, **record.metadata} for record in records]

    def replace_file(self, file_path: str, items: Sequence[IndexedItem]) -> int:
        """Store ``items`` as the full chunk set of ``file_path``.

        Items previously stored for the file whose ids are not in ``items``
        are deleted after the upsert. Returns the number of stale ids removed.
        """
        for item in items:
            if item.metadata.get("file_path") != file_path:
                raise AdapterError(
                    f"Item {item.id} does not belong to {file_path}",
                    suggestion="Pass only the chunks of one file to replace_file.",
                )
        self.upsert_items(items)
        keep = {item.id for item in items}
        stale = [record.id for record in self.file_records(file_path) if record.id not in keep]
        if stale:
            LOGGER.debug("Removing %d stale chunk(s) of %s", len(stale), file_path)
            self.delete_by_ids(stale)
        return len(stale)

    def delete_file(self, file_path: str) -> int:
        ids = [record.id for record in self.file_records(file_path)]
        self.delete_by_ids(ids)
        return len(ids)

    def indexed_files(self) -> List[str]:
        paths = {str(record.metadata["file_path"]) for record in self.get() if "file_path" in record.metadata}
        return sorted(paths)

    def prune_missing(self, root: Path) -> List[str]:
        """Delete items of indexed files that no longer exist under ``root``."""
        removed = []
        for file_path in self.indexed_files():
            candidate = Path(file_path)
            if not candidate.is_absolute():
                candidate = root / candidate
            if not candidate.exists():
                self.delete_file(file_path)
                removed.append(file_path)
        if removed:
            LOGGER.info("Pruned %d missing file(s)", len(removed))
        return removed

    def close(self) -> None:
        self.state.close()
