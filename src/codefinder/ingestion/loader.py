"""Workspace walker producing documents for the indexing pipeline."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Sequence

from codefinder.models import Document
from codefinder.utils.files import DEFAULT_IGNORES, iter_source_paths

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1_000_000
_BINARY_SNIFF = 8192


def document_id(path: Path, root: Path) -> str:
    """Posix path of ``path`` relative to ``root``, or absolute when outside it."""
    resolved = path.resolve()
    try:
        return resolved.relative_to(root.resolve()).as_posix()
    except ValueError:
        return resolved.as_posix()


def read_document(path: Path, root: Path, *, max_bytes: int = DEFAULT_MAX_BYTES) -> Document | None:
    """Load one file; returns ``None`` for binary, undecodable or oversized files."""
    stat = path.stat()
    if stat.st_size > max_bytes:
        LOGGER.info("Skipping %s: %d bytes exceeds %d", path, stat.st_size, max_bytes)
        return None
    data = path.read_bytes()
    if b"\0" in data[:_BINARY_SNIFF]:
        LOGGER.debug("Skipping binary file %s", path)
        return None
    try:
        content = data.decode("utf-8")
    except UnicodeDecodeError:
        LOGGER.debug("Skipping non UTF-8 file %s", path)
        return None

    doc_id = document_id(path, root)
    return Document(
        id=doc_id,
        content=content,
        metadata={"file_path": doc_id, "file_mod_time": stat.st_mtime, "size": stat.st_size},
    )


def iter_documents(
    inputs: Iterable[Path],
    *,
    root: Path | None = None,
    ignore: Sequence[str] = DEFAULT_IGNORES,
    max_bytes: int = DEFAULT_MAX_BYTES,
    on_error: Callable[[Path, OSError], None] | None = None,
) -> Iterator[Document]:
    """Yield a document for every readable text file under ``inputs``.

    Document ids are relative to ``root`` (the current directory by default).
    Files that cannot be read are passed to ``on_error``, or logged and
    skipped when no callback is given.
    """
    root = root or Path.cwd()
    for path in iter_source_paths(inputs, ignore):
        try:
            document = read_document(path, root, max_bytes=max_bytes)
        except OSError as exc:
            if on_error is None:
                LOGGER.warning("Could not read %s: %s", path, exc)
            else:
                on_error(path, exc)
            continue
        if document is not None:
            yield document


def load_documents(root: Path, **kwargs) -> List[Document]:
    """Load every document of the workspace rooted at ``root``."""
    return list(iter_documents([root], root=root, **kwargs))
