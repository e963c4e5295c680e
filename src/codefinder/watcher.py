"""Keep an index in sync with a workspace while files change."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from codefinder.index.indexer import FileOutcome, Indexer, IndexStats
from codefinder.ingestion.loader import DEFAULT_MAX_BYTES, document_id, read_document
from codefinder.utils.files import DEFAULT_IGNORES, ignore_spec, is_ignored, workspace_patterns

LOGGER = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 1.0

BatchCallback = Callable[[List[Path], List[Path]], None]


class ChangeHandler(FileSystemEventHandler):
    """Collects file events under ``directory`` and debounces them into batches.

    The callback receives the changed and the deleted paths of one batch. A
    path touched several times within a batch keeps only its last state.
    """

    def __init__(
        self,
        directory: Path,
        callback: BatchCallback,
        *,
        debounce: float = DEFAULT_DEBOUNCE,
        patterns: Sequence[str] = DEFAULT_IGNORES,
    ) -> None:
        super().__init__()
        self.directory = directory.resolve()
        self._spec = ignore_spec(workspace_patterns(self.directory, patterns))
        self._pending: Dict[Path, bool] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._debounce = debounce
        self._callback = callback

    def _relevant(self, raw: str | bytes) -> Path | None:
        path = Path(os.fsdecode(raw))
        try:
            relative = path.relative_to(self.directory).as_posix()
        except ValueError:
            return None
        if is_ignored(relative, self._spec):
            return None
        return path

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._add(event.src_path, deleted=False)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._add(event.src_path, deleted=False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._add(event.src_path, deleted=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._add(event.src_path, deleted=True)
            self._add(event.dest_path, deleted=False)

    def _add(self, raw: str | bytes, *, deleted: bool) -> None:
        path = self._relevant(raw)
        if path is None:
            return
        with self._lock:
            self._pending[path] = deleted
            LOGGER.debug("Detected %s: %s", "deletion" if deleted else "change", path)
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self.flush)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self) -> None:
        """Hand the pending batch to the callback right away."""
        with self._lock:
            pending = dict(self._pending)
            self._pending.clear()
            if self._timer:
                self._timer.cancel()
                self._timer = None
        if not pending:
            return
        changed = sorted(path for path, deleted in pending.items() if not deleted)
        deleted = sorted(path for path, deleted in pending.items() if deleted)
        self._callback(changed, deleted)


class WorkspaceWatcher:
    """Watches ``directory`` and re-indexes what changes; ids stay relative to ``root``."""

    def __init__(
        self,
        indexer: Indexer,
        directory: Path,
        *,
        root: Path | None = None,
        debounce: float = DEFAULT_DEBOUNCE,
        max_bytes: int = DEFAULT_MAX_BYTES,
        on_batch: Callable[[IndexStats], None] | None = None,
    ) -> None:
        self.indexer = indexer
        self.directory = directory.resolve()
        self.root = (root or Path.cwd()).resolve()
        self.max_bytes = max_bytes
        self.on_batch = on_batch
        self.handler = ChangeHandler(self.directory, self.apply, debounce=debounce)
        self.observer = Observer()

    def apply(self, changed: Sequence[Path], deleted: Sequence[Path]) -> IndexStats:
        """Drop deleted files from the index, then re-index the changed ones."""
        gone = [document_id(path, self.root) for path in deleted]
        documents = []
        failures: List[FileOutcome] = []
        for path in changed:
            try:
                document = read_document(path, self.root, max_bytes=self.max_bytes)
            except FileNotFoundError:
                gone.append(document_id(path, self.root))
                continue
            except OSError as exc:
                LOGGER.error("Failed to read %s: %s", path, exc)
                failures.append(FileOutcome(document_id(path, self.root), "failed", error=str(exc)))
                continue
            if document is not None:
                documents.append(document)

        stats = self.indexer.remove_paths(gone)
        for outcome in failures:
            stats.increment(outcome)
        for outcome in self.indexer.index_documents(documents).outcomes:
            stats.increment(outcome)
        LOGGER.info(
            "Synced %d change(s): %d inserted, %d updated, %d deleted, %d failed",
            len(stats.outcomes),
            stats.inserted,
            stats.updated,
            stats.deleted,
            stats.failed,
        )
        if self.on_batch is not None:
            self.on_batch(stats)
        return stats

    def start(self) -> None:
        self.observer.schedule(self.handler, str(self.directory), recursive=True)
        self.observer.start()
        LOGGER.info("Watching %s", self.directory)

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join()
        self.handler.flush()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Watch until ``stop_event`` is set or the process is interrupted."""
        stop_event = stop_event or threading.Event()
        self.start()
        try:
            while not stop_event.wait(0.5):
                pass
        except KeyboardInterrupt:
            LOGGER.info("Stopping watcher")
        finally:
            self.stop()
