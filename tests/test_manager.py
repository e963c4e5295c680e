"""Tests for IndexState and IndexManager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from codefinder.errors import AdapterError, ConfigError, DimensionMismatch, DuplicateId
from codefinder.index.manager import IndexManager, IndexState, ManagerStatus, open_store
from codefinder.index.storage import MemoryVectorStore, SQLiteVectorStore
from codefinder.models import IndexedItem


def make_item(file_path: str, index: int, vector, content: str | None = None) -> IndexedItem:
    return IndexedItem(
        id=f"{file_path}::{index}",
        vector=np.asarray(vector, dtype="float32"),
        content=content or f"{file_path} chunk {index}",
        metadata={"file_path": file_path, "chunk_index": index},
    )


@pytest.fixture
def store() -> MemoryVectorStore:
    return MemoryVectorStore()


@pytest.fixture
def manager(store: MemoryVectorStore) -> IndexManager:
    return IndexManager(IndexState(":memory:", "code", opener=lambda location: store), dimension=3)


class TestOpenStore:
    def test_sqlite_creates_parent(self, tmp_path: Path) -> None:
        adapter = open_store("sqlite", tmp_path / "nested" / "index.db")
        assert isinstance(adapter, SQLiteVectorStore)
        assert (tmp_path / "nested" / "index.db").exists()
        adapter.close()

    def test_memory(self) -> None:
        assert isinstance(open_store("memory", ":memory:"), MemoryVectorStore)

    def test_pinecone_is_lazy(self) -> None:
        with patch("codefinder.index.pinecone_store.PineconeVectorStore") as store_class:
            adapter = open_store("pinecone", "code-index")
        store_class.assert_called_once_with("code-index")
        assert adapter is store_class.return_value

    def test_unknown_backend(self) -> None:
        with pytest.raises(ConfigError):
            open_store("redis", "somewhere")


class TestIndexState:
    def test_lazy_open_and_cache(self) -> None:
        opener = MagicMock(side_effect=lambda location: MemoryVectorStore(location))
        state = IndexState("loc-a", "code", opener=opener)

        assert not state.is_open
        opener.assert_not_called()

        adapter, handle = state.open()
        again_adapter, again_handle = state.open()

        assert opener.call_count == 1
        assert adapter is again_adapter
        assert handle is again_handle
        assert state.is_open

    def test_reinitialize_with_new_location_invalidates(self) -> None:
        opener = MagicMock(side_effect=lambda location: MemoryVectorStore(location))
        state = IndexState("loc-a", "code", opener=opener)
        first_adapter, _ = state.open()

        state.reinitialize("loc-b")

        assert not state.is_open
        assert state.adapter is None
        second_adapter, _ = state.open()
        assert second_adapter is not first_adapter
        assert second_adapter.location == "loc-b"
        assert opener.call_count == 2

    def test_reinitialize_collection_keeps_adapter(self) -> None:
        opener = MagicMock(side_effect=lambda location: MemoryVectorStore(location))
        state = IndexState("loc-a", "code", opener=opener)
        adapter, _ = state.open()

        state.reinitialize(collection_name="other")
        same_adapter, handle = state.open()

        assert same_adapter is adapter
        assert handle.name == "other"
        assert opener.call_count == 1

    def test_close(self) -> None:
        adapter = MagicMock()
        state = IndexState("loc", "code", opener=lambda location: adapter)
        state.open()
        state.close()
        adapter.close.assert_called_once()
        assert not state.is_open


class TestManagerState:
    def test_starts_uninitialized(self, manager: IndexManager) -> None:
        assert manager.status is ManagerStatus.UNINITIALIZED
        manager.count()
        assert manager.status is ManagerStatus.READY

    def test_failed_initialization_is_retryable(self) -> None:
        attempts = []

        def flaky(location: str) -> MemoryVectorStore:
            attempts.append(location)
            if len(attempts) == 1:
                raise AdapterError("store unavailable")
            return MemoryVectorStore(location)

        manager = IndexManager(IndexState("loc", "code", opener=flaky))

        with pytest.raises(AdapterError):
            manager.count()
        assert manager.status is ManagerStatus.UNINITIALIZED

        assert manager.count() == 0
        assert manager.status is ManagerStatus.READY

    def test_collection_dimension_mismatch(self, store: MemoryVectorStore, manager: IndexManager) -> None:
        manager.upsert_items([make_item("a.py", 0, [1, 0, 0])])

        other = IndexManager(IndexState(":memory:", "code", opener=lambda location: store), dimension=4)
        with pytest.raises(DimensionMismatch):
            other.count()
        assert other.status is ManagerStatus.UNINITIALIZED


class TestUpsert:
    def test_duplicate_ids_rejected_before_adapter(self, store: MemoryVectorStore, manager: IndexManager) -> None:
        items = [make_item("a.py", 0, [1, 0, 0]), make_item("a.py", 0, [0, 1, 0])]
        with pytest.raises(DuplicateId) as exc_info:
            manager.upsert_items(items)
        assert exc_info.value.item_id == "a.py::0"
        assert manager.count() == 0

    def test_wrong_dimension_rejected(self, manager: IndexManager) -> None:
        with pytest.raises(DimensionMismatch):
            manager.upsert_items([make_item("a.py", 0, [1, 0, 0]), make_item("a.py", 1, [1, 0])])
        assert manager.count() == 0

    def test_dimension_learned_from_first_upsert(self, store: MemoryVectorStore) -> None:
        manager = IndexManager(IndexState(":memory:", "code", opener=lambda location: store))
        manager.upsert_items([make_item("a.py", 0, [1, 0])])
        with pytest.raises(DimensionMismatch):
            manager.upsert_items([make_item("a.py", 1, [1, 0, 0])])

    def test_idempotent(self, manager: IndexManager) -> None:
        item = make_item("a.py", 0, [1, 0, 0])
        assert manager.upsert_items([item]) == 1
        manager.upsert_items([item])
        assert manager.count() == 1

    def test_empty_call(self, manager: IndexManager) -> None:
        assert manager.upsert_items([]) == 0


class TestQueryAndDelete:
    @pytest.fixture
    def filled(self, manager: IndexManager) -> IndexManager:
        manager.upsert_items(
            [
                make_item("a.py", 0, [1, 0, 0]),
                make_item("a.py", 1, [0.8, 0.2, 0]),
                make_item("b.py", 0, [0, 1, 0]),
                make_item("b.py", 1, [0, 0.9, 0.1]),
                make_item("c.py", 0, [0, 0, 1]),
            ]
        )
        return manager

    def test_query_top_k(self, filled: IndexManager) -> None:
        results = filled.query([1, 0, 0], top_k=2)
        assert [result.id for result in results] == ["a.py::0", "a.py::1"]
        assert results[0].score > results[1].score

    def test_query_filter(self, filled: IndexManager) -> None:
        results = filled.query([1, 0, 0], top_k=5, metadata_filter={"file_path": "c.py"})
        assert [result.id for result in results] == ["c.py::0"]

    def test_query_dimension_checked(self, filled: IndexManager) -> None:
        with pytest.raises(DimensionMismatch):
            filled.query([1, 0], top_k=1)

    def test_query_empty(self, manager: IndexManager) -> None:
        assert manager.query([1, 0, 0], top_k=3) == []

    def test_delete_by_ids(self, filled: IndexManager) -> None:
        filled.delete_by_ids(["a.py::0", "zzz::9"])
        filled.delete_by_ids([])
        assert filled.count() == 4

    def test_delete_by_filter(self, filled: IndexManager) -> None:
        filled.delete_by_filter({"file_path": "b.py"})
        assert filled.count() == 3

    def test_delete_by_empty_filter_refused(self, filled: IndexManager) -> None:
        with pytest.raises(AdapterError):
            filled.delete_by_filter({})
        assert filled.count() == 5

    def test_clear(self, filled: IndexManager) -> None:
        filled.clear()
        assert filled.count() == 0

    def test_indexed_files(self, filled: IndexManager) -> None:
        assert filled.indexed_files() == ["a.py", "b.py", "c.py"]


class TestFileOperations:
    def test_replace_file_prunes_stale_chunks(self, manager: IndexManager) -> None:
        manager.replace_file(
            "a.py", [make_item("a.py", i, [1, 0, 0]) for i in range(3)]
        )
        manager.replace_file("b.py", [make_item("b.py", 0, [0, 1, 0])])

        removed = manager.replace_file("a.py", [make_item("a.py", 0, [1, 0, 0], content="short")])

        assert removed == 2
        assert [record.id for record in manager.file_records("a.py")] == ["a.py::0"]
        assert manager.count() == 2

    def test_replace_file_rejects_foreign_items(self, manager: IndexManager) -> None:
        with pytest.raises(AdapterError):
            manager.replace_file("a.py", [make_item("b.py", 0, [1, 0, 0])])

    def test_replace_with_nothing_empties_file(self, manager: IndexManager) -> None:
        manager.replace_file("a.py", [make_item("a.py", 0, [1, 0, 0])])
        assert manager.replace_file("a.py", []) == 1
        assert manager.count() == 0

    def test_chunk_metadata_ordered_by_index(self, manager: IndexManager) -> None:
        manager.replace_file("a.py", [make_item("a.py", i, [1, 0, 0]) for i in range(12)])
        manager.replace_file("b.py", [make_item("b.py", 0, [0, 1, 0])])

        metadata = manager.chunk_metadata("a.py")

        assert [entry["chunk_index"] for entry in metadata] == list(range(12))
        assert metadata[10]["id"] == "a.py::10"
        assert {entry["file_path"] for entry in metadata} == {"a.py"}
        assert manager.chunk_metadata("missing.py") == []

    def test_delete_file(self, manager: IndexManager) -> None:
        manager.replace_file("a.py", [make_item("a.py", i, [1, 0, 0]) for i in range(2)])
        assert manager.delete_file("a.py") == 2
        assert manager.delete_file("a.py") == 0

    def test_prune_missing(self, manager: IndexManager, tmp_path: Path) -> None:
        (tmp_path / "kept.py").write_text("x = 1\n")
        manager.replace_file("kept.py", [make_item("kept.py", 0, [1, 0, 0])])
        manager.replace_file("gone.py", [make_item("gone.py", 0, [0, 1, 0])])

        removed = manager.prune_missing(tmp_path)

        assert removed == ["gone.py"]
        assert manager.indexed_files() == ["kept.py"]
