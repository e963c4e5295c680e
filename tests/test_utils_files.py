"""Tests for file utilities."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from codefinder.utils.files import (
    DEFAULT_IGNORES,
    ignore_spec,
    is_ignored,
    iter_source_paths,
    read_gitignore,
    sha256_text,
    workspace_patterns,
)


def _found(root: Path) -> list[str]:
    return [path.relative_to(root).as_posix() for path in iter_source_paths([root])]


class TestIgnoreSpec:
    @pytest.mark.parametrize(
        ("relative", "patterns", "expected"),
        [
            ("debug.log", ["*.log"], True),
            ("logs/app/debug.log", ["*.log"], True),
            ("src/app.py", ["*.log"], False),
            ("node_modules/", ["node_modules/"], True),
            ("pkg/node_modules/", ["node_modules/"], True),
            ("node_modules", ["node_modules/"], False),
            ("build/out/a.js", ["build/out"], True),
            ("dist/bundle.js", ["dist/**"], True),
            ("src/app.py", ["/src/app.py"], True),
            ("keep.log", ["*.log", "!keep.log"], False),
            ("other.log", ["*.log", "!keep.log"], True),
            ("gen/keep.py", ["gen/*", "!gen/keep.py"], False),
            ("gen/drop.py", ["gen/*", "!gen/keep.py"], True),
        ],
    )
    def test_patterns(self, relative: str, patterns: list[str], expected: bool) -> None:
        assert is_ignored(relative, ignore_spec(patterns)) is expected

    def test_comments_and_blank_lines_ignored(self) -> None:
        spec = ignore_spec(["# *.py", "", "*.tmp"])
        assert not is_ignored("a.py", spec)
        assert is_ignored("a/b.tmp", spec)


class TestReadGitignore:
    def test_returns_raw_lines(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("# comment\n\n*.log\n!keep.log\nbuild/\n")
        assert read_gitignore(tmp_path) == ["# comment", "", "*.log", "!keep.log", "build/"]

    def test_missing_file(self, tmp_path: Path) -> None:
        assert read_gitignore(tmp_path) == []

    def test_workspace_patterns_appends_gitignore(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("*.log\n")
        assert workspace_patterns(tmp_path) == [*DEFAULT_IGNORES, "*.log"]


class TestIterSourcePaths:
    def test_walks_directories_and_skips_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.py").write_text("x = 1\n")
        (tmp_path / "src" / "b.ts").write_text("let y = 2;\n")
        (tmp_path / "node_modules" / "lib").mkdir(parents=True)
        (tmp_path / "node_modules" / "lib" / "index.js").write_text("module.exports = 1;\n")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / "debug.log").write_text("noise\n")
        (tmp_path / ".gitignore").write_text("*.log\n")

        assert _found(tmp_path) == [".gitignore", "src/a.py", "src/b.ts"]

    def test_negation_reincludes_file_in_ignored_directory(self, tmp_path: Path) -> None:
        (tmp_path / "gen").mkdir()
        (tmp_path / "gen" / "keep.py").write_text("KEEP = 1\n")
        (tmp_path / "gen" / "drop.py").write_text("DROP = 1\n")
        (tmp_path / ".gitignore").write_text("gen/*\n!gen/keep.py\n")

        assert _found(tmp_path) == [".gitignore", "gen/keep.py"]

    def test_negated_log_kept(self, tmp_path: Path) -> None:
        (tmp_path / "logs").mkdir()
        (tmp_path / "logs" / "keep.log").write_text("x\n")
        (tmp_path / "logs" / "noise.log").write_text("x\n")
        (tmp_path / ".gitignore").write_text("*.log\n!keep.log\n")

        assert _found(tmp_path) == [".gitignore", "logs/keep.log"]

    def test_ignored_directory_is_pruned(self, tmp_path: Path) -> None:
        (tmp_path / "build" / "deep").mkdir(parents=True)
        (tmp_path / "build" / "deep" / "out.js").write_text("1;\n")
        (tmp_path / "main.py").write_text("pass\n")
        (tmp_path / ".gitignore").write_text("build/\n")

        assert _found(tmp_path) == [".gitignore", "main.py"]

    def test_accepts_single_file(self, tmp_path: Path) -> None:
        target = tmp_path / "one.js"
        target.write_text("1;\n")
        assert list(iter_source_paths([target])) == [target]

    def test_missing_input_yields_nothing(self, tmp_path: Path) -> None:
        assert list(iter_source_paths([tmp_path / "missing"])) == []


class TestHashing:
    def test_sha256_text(self) -> None:
        assert sha256_text("hello") == hashlib.sha256(b"hello").hexdigest()
        assert sha256_text("x=1") != sha256_text("x=2")
