"""Document indexing pipeline."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence

from codefinder.chunking.chunker import AstChunker
from codefinder.embedding.encoder import EmbeddingModel
from codefinder.errors import CodeFinderError
from codefinder.index.manager import IndexManager
from codefinder.ingestion.loader import document_id, iter_documents
from codefinder.models import ChunkStatus, Document, IndexedItem, StoredRecord
from codefinder.parsing.languages import detect_language
from codefinder.utils.files import sha256_text

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class FileOutcome:
    """Result of indexing one file; failures carry the error and a remediation hint."""

    path: str
    status: str
    chunks: int = 0
    removed: int = 0
    warnings: int = 0
    error: str | None = None
    suggestion: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    deleted: int = 0
    failed: int = 0
    cancelled: bool = False
    outcomes: List[FileOutcome] = field(default_factory=list)

    def increment(self, outcome: FileOutcome) -> None:
        if outcome.status == "inserted":
            self.inserted += 1
        elif outcome.status == "updated":
            self.updated += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        elif outcome.status == "deleted":
            self.deleted += 1
        else:
            self.failed += 1
        self.outcomes.append(outcome)

    @property
    def processed_files(self) -> List[str]:
        return [outcome.path for outcome in self.outcomes]


def _failure(path: str, exc: Exception) -> FileOutcome:
    if isinstance(exc, CodeFinderError):
        return FileOutcome(path, "failed", error=exc.message, suggestion=exc.suggestion)
    return FileOutcome(path, "failed", error=str(exc) or type(exc).__name__)


class Indexer:
    """Coordinates chunking, embedding and persistence, one file at a time."""

    def __init__(
        self,
        embedder: EmbeddingModel,
        manager: IndexManager,
        chunker: AstChunker | None = None,
    ) -> None:
        self.embedder = embedder
        self.manager = manager
        self.chunker = chunker or AstChunker()

    def index(
        self,
        paths: Sequence[Path],
        *,
        root: Path | None = None,
        cancel_event: threading.Event | None = None,
        force: bool = False,
    ) -> IndexStats:
        """Index every text file found under ``paths``; ids are relative to ``root``."""
        root = root or Path.cwd()
        stats = IndexStats()

        def unreadable(path: Path, exc: OSError) -> None:
            LOGGER.error("Failed to read %s: %s", path, exc)
            stats.increment(_failure(document_id(path, root), exc))

        documents = iter_documents(paths, root=root, on_error=unreadable)
        self._run(documents, stats, cancel_event, force)
        if not stats.outcomes and not stats.cancelled:
            LOGGER.warning("No source files found")
        return stats

    def index_documents(
        self,
        documents: Iterable[Document],
        *,
        cancel_event: threading.Event | None = None,
        force: bool = False,
    ) -> IndexStats:
        """Index already loaded documents; one failing file never aborts the batch.

        ``cancel_event`` is checked between files: the current file always
        completes, the next one is not started.
        """
        stats = IndexStats()
        self._run(documents, stats, cancel_event, force)
        return stats

    def remove_paths(self, file_paths: Iterable[str]) -> IndexStats:
        """Drop every indexed chunk of ``file_paths``; unknown paths count as skipped."""
        stats = IndexStats()
        for file_path in file_paths:
            try:
                removed = self.manager.delete_file(file_path)
            except CodeFinderError as exc:
                LOGGER.error("Failed to remove %s: %s", file_path, exc)
                stats.increment(_failure(file_path, exc))
                continue
            LOGGER.info("Removed %d chunk(s) of %s", removed, file_path)
            stats.increment(FileOutcome(file_path, "deleted" if removed else "skipped", removed=removed))
        return stats

    def _run(
        self,
        documents: Iterable[Document],
        stats: IndexStats,
        cancel_event: threading.Event | None,
        force: bool,
    ) -> None:
        for document in documents:
            if self._cancelled(cancel_event, stats):
                break
            stats.increment(self._process(document, force))

    @staticmethod
    def _cancelled(cancel_event: threading.Event | None, stats: IndexStats) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            LOGGER.info("Indexing cancelled after %d file(s)", len(stats.outcomes))
            stats.cancelled = True
            return True
        return False

    def _process(self, document: Document, force: bool) -> FileOutcome:
        LOGGER.info("Processing: %s", document.file_path)
        try:
            return self._index_single(document, force)
        except Exception as exc:
            LOGGER.error("Failed to process %s: %s", document.file_path, exc)
            return _failure(document.file_path, exc)

    def _index_single(self, document: Document, force: bool) -> FileOutcome:
        file_path = document.file_path
        digest = sha256_text(document.content)
        fingerprint = self.chunker.options.fingerprint
        existing = self.manager.file_records(file_path)
        if existing and not force and _unchanged(existing, document, digest, fingerprint):
            LOGGER.debug("Unchanged: %s", file_path)
            return FileOutcome(file_path, "skipped", chunks=len(existing))

        base = dict(document.metadata)
        base.update(
            file_path=file_path,
            file_mod_time=document.file_mod_time,
            content_sha256=digest,
            chunking_options=fingerprint,
        )
        language = detect_language(file_path, document.content)
        chunks = self.chunker.chunk(document.content, language, base)
        if not chunks:
            removed = self.manager.delete_file(file_path)
            return FileOutcome(file_path, "updated" if removed else "skipped", removed=removed)

        vectors = self.embedder.embed([chunk.content for chunk in chunks])
        items = [IndexedItem.from_chunk(chunk, vector) for chunk, vector in zip(chunks, vectors)]
        removed = self.manager.replace_file(file_path, items)
        return FileOutcome(
            file_path,
            "updated" if existing else "inserted",
            chunks=len(items),
            removed=removed,
            warnings=sum(1 for chunk in chunks if chunk.status is not ChunkStatus.OK),
        )


def _unchanged(
    records: Sequence[StoredRecord], document: Document, digest: str, fingerprint: str
) -> bool:
    """Whether every stored record was built from this exact content and chunking options."""
    return all(
        record.metadata.get("content_sha256") == digest
        and record.metadata.get("file_mod_time") == document.file_mod_time
        and record.metadata.get("chunking_options") == fingerprint
        for record in records
    )
