"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Iterable, Iterator, Sequence

import pathspec

DEFAULT_IGNORES = (
    ".git/",
    "node_modules/",
    "dist/",
    "__pycache__/",
    ".venv/",
    "venv/",
    ".mypy_cache/",
    ".pytest_cache/",
)


def ignore_spec(patterns: Iterable[str]) -> pathspec.GitIgnoreSpec:
    """Compile gitignore-style ``patterns``.

    Later ``!`` patterns re-include paths matched by earlier ones, as git does.
    """
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def is_ignored(relative: str, spec: pathspec.PathSpec) -> bool:
    """Return True when the posix ``relative`` path is excluded by ``spec``.

    Directories are tested with a trailing ``/``.
    """
    return spec.match_file(relative)


def read_gitignore(directory: Path) -> list[str]:
    """Return the raw lines of ``directory/.gitignore``, or an empty list."""
    path = directory / ".gitignore"
    if not path.is_file():
        return []
    return path.read_text(encoding="utf-8", errors="replace").splitlines()


def workspace_patterns(directory: Path, patterns: Sequence[str] = DEFAULT_IGNORES) -> list[str]:
    return [*patterns, *read_gitignore(directory)]


def _negations(patterns: Iterable[str]) -> list[str]:
    return [line.strip()[1:].lstrip("/") for line in patterns if line.strip().startswith("!")]


def _can_prune(relative_dir: str, spec: pathspec.PathSpec, negations: Sequence[str]) -> bool:
    """Whether a whole directory may be skipped without walking it.

    An ignored directory is still walked when a negation could re-include
    something below it.
    """
    if not spec.match_file(relative_dir + "/"):
        return False
    for negation in negations:
        body = negation.rstrip("/")
        if "/" not in body or body.startswith("**") or body.startswith(relative_dir + "/"):
            return False
    return True


def iter_source_paths(inputs: Iterable[Path], patterns: Sequence[str] = DEFAULT_IGNORES) -> Iterator[Path]:
    """Yield files from input paths, descending into directories and skipping ignored entries."""
    for item in inputs:
        if item.is_dir():
            local = workspace_patterns(item, patterns)
            spec = ignore_spec(local)
            negations = _negations(local)
            for dirpath, dirnames, filenames in os.walk(item):
                base = Path(dirpath)
                relative_dir = base.relative_to(item).as_posix()
                prefix = "" if relative_dir == "." else relative_dir + "/"
                dirnames[:] = sorted(
                    name for name in dirnames if not _can_prune(prefix + name, spec, negations)
                )
                for name in sorted(filenames):
                    if not is_ignored(prefix + name, spec):
                        yield base / name
        elif item.is_file():
            yield item


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()
