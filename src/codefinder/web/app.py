"""FastAPI application exposing the index, query and status tools."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from codefinder.chunking.chunker import AstChunker
from codefinder.config import AppConfig
from codefinder.embedding.encoder import EmbeddingModel
from codefinder.errors import (
    ChunkingConfigError,
    CodeFinderError,
    ConfigError,
    EmbeddingError,
)
from codefinder.index.indexer import Indexer, IndexStats
from codefinder.index.manager import IndexManager, IndexState
from codefinder.index.search import Searcher
from codefinder.ingestion.loader import document_id
from codefinder.models import Document, Scalar

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="CodeFinder API", version="0.1.0")

# Memory stores must outlive a single request.
_SHARED_STATES: Dict[Tuple[str, str, str], IndexState] = {}
_SHARED_LOCK = threading.Lock()


class StoreSelection(BaseModel):
    db: str | None = None
    backend: str | None = None
    collection: str | None = None


class DocumentPayload(BaseModel):
    file_path: str
    content: str
    file_mod_time: float = 0.0


class IndexPayload(StoreSelection):
    paths: List[str] = Field(default_factory=list)
    documents: List[DocumentPayload] = Field(default_factory=list)
    force: bool = False


class QueryPayload(StoreSelection):
    query: str
    top_k: int = 10
    filter: Dict[str, Scalar] | None = None


def _load_config(selection: StoreSelection) -> AppConfig:
    return AppConfig.from_env(
        db_path=selection.db,
        backend=selection.backend,
        collection_name=selection.collection,
    )


def _index_state(config: AppConfig) -> IndexState:
    """Fresh state per request, except for the memory backend which is shared app-wide."""
    state = config.index_state(Path.cwd())
    if config.backend != "memory":
        return state
    key = (config.backend, state.location, state.collection_name)
    with _SHARED_LOCK:
        shared = _SHARED_STATES.get(key)
        if shared is None:
            shared = _SHARED_STATES[key] = state
            shared.open()
    return shared


def _release(manager: IndexManager) -> None:
    if manager.state.backend != "memory":
        manager.close()


def _status_code(exc: CodeFinderError) -> int:
    if isinstance(exc, (ConfigError, ChunkingConfigError)):
        return 400
    if isinstance(exc, EmbeddingError):
        return 502
    return 500


@app.exception_handler(CodeFinderError)
async def codefinder_error_handler(request: Request, exc: CodeFinderError) -> JSONResponse:
    LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=_status_code(exc),
        content={"success": False, "error": exc.message, "suggestion": exc.suggestion},
    )


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


def _validate_paths(raw_paths: List[str]) -> List[Path]:
    resolved = []
    for raw in raw_paths:
        clean = raw.strip().replace("\r", "").replace("\n", "")
        if not clean:
            continue
        if "\0" in clean:
            raise HTTPException(status_code=400, detail="Invalid path: contains null byte")
        path = Path(os.path.realpath(os.path.expanduser(clean)))
        if not path.exists():
            raise HTTPException(status_code=404, detail=f"Path not found: {clean}")
        resolved.append(path)
    return resolved


def _stats_payload(stats: IndexStats) -> Dict[str, Any]:
    return {
        "inserted": stats.inserted,
        "updated": stats.updated,
        "skipped": stats.skipped,
        "deleted": stats.deleted,
        "failed": stats.failed,
        "cancelled": stats.cancelled,
        "files": [
            {
                "path": outcome.path,
                "status": outcome.status,
                "chunks": outcome.chunks,
                "removed": outcome.removed,
                "error": outcome.error,
                "suggestion": outcome.suggestion,
            }
            for outcome in stats.outcomes
        ],
    }


def _run_index_job(config: AppConfig, paths: List[Path], documents: List[Document], force: bool) -> IndexStats:
    chunker = AstChunker(config.chunking_options())
    embedder = EmbeddingModel(config.embedding_config())
    manager = IndexManager(_index_state(config), dimension=embedder.dimension)
    indexer = Indexer(embedder, manager, chunker)
    try:
        stats = indexer.index_documents(documents, force=force)
        if paths:
            path_stats = indexer.index(paths, root=Path.cwd(), force=force)
            for outcome in path_stats.outcomes:
                stats.increment(outcome)
    finally:
        _release(manager)
        embedder.close()
    return stats


@app.post("/index")
async def index_files(payload: IndexPayload) -> Dict[str, Any]:
    if not payload.paths and not payload.documents:
        raise HTTPException(status_code=400, detail="No path or document provided")

    config = _load_config(payload)
    paths = _validate_paths(payload.paths)
    documents = [
        Document(
            id=item.file_path,
            content=item.content,
            metadata={"file_path": item.file_path, "file_mod_time": item.file_mod_time},
        )
        for item in payload.documents
    ]
    stats = await asyncio.to_thread(_run_index_job, config, paths, documents, payload.force)
    return {
        "success": stats.failed == 0,
        "collection": config.collection_name,
        "stats": _stats_payload(stats),
    }


def _run_query(config: AppConfig, payload: QueryPayload) -> List[Dict[str, Any]]:
    embedder = EmbeddingModel(config.embedding_config())
    manager = IndexManager(_index_state(config), dimension=embedder.dimension)
    try:
        results = Searcher(embedder, manager).search(
            payload.query.strip(), top_k=max(1, min(payload.top_k, 50)), where=payload.filter
        )
    finally:
        _release(manager)
        embedder.close()
    return [result.to_dict() for result in results]


@app.post("/query")
async def query_index(payload: QueryPayload) -> Dict[str, Any]:
    if not payload.query.strip():
        raise HTTPException(status_code=400, detail="Empty query")

    config = _load_config(payload)
    if not config.store_exists(Path.cwd()):
        raise HTTPException(
            status_code=404,
            detail=f"Index not found at {config.resolve_location(Path.cwd())}. Index some files first.",
        )
    results = await asyncio.to_thread(_run_query, config, payload)
    return {"success": True, "results": results}


def _run_status(config: AppConfig) -> Dict[str, Any]:
    manager = IndexManager(_index_state(config))
    try:
        return {"count": manager.count(), "files": len(manager.indexed_files())}
    finally:
        _release(manager)


@app.get("/status")
async def index_status(
    db: str | None = None, backend: str | None = None, collection: str | None = None
) -> Dict[str, Any]:
    config = _load_config(StoreSelection(db=db, backend=backend, collection=collection))
    location = config.resolve_location(Path.cwd())
    if not config.store_exists(Path.cwd()):
        return {
            "success": True,
            "collection": config.collection_name,
            "location": location,
            "count": 0,
            "files": 0,
        }
    counts = await asyncio.to_thread(_run_status, config)
    return {"success": True, "collection": config.collection_name, "location": location, **counts}


def _document_key(raw: str) -> str:
    path = Path(raw)
    if path.is_absolute():
        return document_id(path, Path.cwd())
    return path.as_posix()


def _run_chunks(config: AppConfig, file_path: str) -> List[Dict[str, Any]]:
    manager = IndexManager(_index_state(config))
    try:
        return manager.chunk_metadata(file_path)
    finally:
        _release(manager)


@app.get("/chunks")
async def file_chunks(
    file_path: str, db: str | None = None, backend: str | None = None, collection: str | None = None
) -> Dict[str, Any]:
    if not file_path.strip():
        raise HTTPException(status_code=400, detail="Empty file_path")

    config = _load_config(StoreSelection(db=db, backend=backend, collection=collection))
    if not config.store_exists(Path.cwd()):
        raise HTTPException(
            status_code=404,
            detail=f"Index not found at {config.resolve_location(Path.cwd())}. Index some files first.",
        )
    key = _document_key(file_path.strip())
    chunks = await asyncio.to_thread(_run_chunks, config, key)
    return {"success": True, "file_path": key, "chunk_count": len(chunks), "chunks_metadata": chunks}
