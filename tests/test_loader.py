"""Tests for the workspace loader."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from codefinder.ingestion.loader import document_id, iter_documents, load_documents, read_document


def write(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


class TestDocumentId:
    def test_relative_to_root(self, tmp_path: Path) -> None:
        target = write(tmp_path / "pkg" / "mod.py", "x = 1\n")
        assert document_id(target, tmp_path) == "pkg/mod.py"

    def test_outside_root_is_absolute(self, tmp_path: Path) -> None:
        target = write(tmp_path / "a" / "mod.py", "x = 1\n")
        assert document_id(target, tmp_path / "b") == target.resolve().as_posix()


class TestReadDocument:
    def test_reads_text(self, tmp_path: Path) -> None:
        target = write(tmp_path / "mod.py", "print('hi')\n")

        document = read_document(target, tmp_path)

        assert document is not None
        assert document.id == "mod.py"
        assert document.content == "print('hi')\n"
        assert document.file_path == "mod.py"
        assert document.metadata["size"] == len("print('hi')\n")
        assert document.file_mod_time == target.stat().st_mtime

    def test_binary_skipped(self, tmp_path: Path) -> None:
        target = write(tmp_path / "blob.bin", b"abc\x00def")
        assert read_document(target, tmp_path) is None

    def test_non_utf8_skipped(self, tmp_path: Path) -> None:
        target = write(tmp_path / "latin.txt", "caf\xe9".encode("latin-1"))
        assert read_document(target, tmp_path) is None

    def test_oversized_skipped(self, tmp_path: Path) -> None:
        target = write(tmp_path / "big.py", "x" * 200)
        assert read_document(target, tmp_path, max_bytes=100) is None
        assert read_document(target, tmp_path, max_bytes=200) is not None


class TestIterDocuments:
    def test_respects_ignores(self, tmp_path: Path) -> None:
        write(tmp_path / "src" / "main.py", "main = 1\n")
        write(tmp_path / "src" / "generated.py", "gen = 1\n")
        write(tmp_path / "build" / "out.js", "out = 1\n")
        write(tmp_path / ".git" / "config", "[core]\n")
        write(tmp_path / "node_modules" / "lib" / "index.js", "lib = 1\n")
        write(tmp_path / ".gitignore", "# comment\nbuild/\ngenerated.py\n!keep.py\n")

        ids = [document.id for document in load_documents(tmp_path)]

        assert ids == [".gitignore", "src/main.py"]

    def test_custom_ignore(self, tmp_path: Path) -> None:
        write(tmp_path / "a.py", "a = 1\n")
        write(tmp_path / "b.log", "log\n")
        ids = [document.id for document in iter_documents([tmp_path], root=tmp_path, ignore=["*.log"])]
        assert ids == ["a.py"]

    def test_explicit_file_input(self, tmp_path: Path) -> None:
        target = write(tmp_path / "one.py", "one = 1\n")
        assert [document.id for document in iter_documents([target], root=tmp_path)] == ["one.py"]

    def test_unreadable_file_skipped(self, tmp_path: Path) -> None:
        write(tmp_path / "a.py", "a = 1\n")
        with patch("codefinder.ingestion.loader.read_document", side_effect=PermissionError("denied")):
            assert list(iter_documents([tmp_path], root=tmp_path)) == []
