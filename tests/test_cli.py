"""Tests for CLI commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from codefinder.cli import _setup_logging, app, parse_filter

runner = CliRunner()

SOURCE = '''def load_config(path):
    """Read the configuration file."""
    with open(path) as handle:
        return handle.read()


def save_config(path, data):
    with open(path, "w") as handle:
        handle.write(data)
'''


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A small project with a mock embedding provider configured."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CODEFINDER_PROVIDER", "mock")
    monkeypatch.setenv("CODEFINDER_DIMENSION", "16")
    project = tmp_path / "project"
    project.mkdir()
    (project / "config.py").write_text(SOURCE)
    (project / "app.js").write_text("function main() {\n  return 42;\n}\n")
    return tmp_path


def _index(workspace: Path, *extra: str):
    return runner.invoke(app, ["index", str(workspace / "project"), "--db", str(workspace / "index.db"), *extra])


class TestSetupLogging:
    """Tests for _setup_logging helper."""

    def test_setup_logging_verbose(self) -> None:
        with patch("codefinder.cli.logging.basicConfig") as mock_config:
            _setup_logging(verbose=True)
            assert mock_config.call_args[1]["level"] == logging.DEBUG

    def test_setup_logging_normal(self) -> None:
        with patch("codefinder.cli.logging.basicConfig") as mock_config:
            _setup_logging(verbose=False)
            assert mock_config.call_args[1]["level"] == logging.INFO


class TestParseFilter:
    def test_coerces_values(self) -> None:
        assert parse_filter(["language=python", "chunk_index=2", "score=0.5", "flag=true"]) == {
            "language": "python",
            "chunk_index": 2,
            "score": 0.5,
            "flag": True,
        }

    def test_empty(self) -> None:
        assert parse_filter(None) == {}

    def test_rejects_missing_separator(self) -> None:
        with pytest.raises(typer.BadParameter):
            parse_filter(["language"])


class TestIndexCommand:
    """Tests for the index command."""

    def test_index_and_reindex(self, workspace: Path) -> None:
        result = _index(workspace)
        assert result.exit_code == 0, result.output
        assert "Inserted: 2, updated: 0, skipped: 0, failed: 0" in result.output

        again = _index(workspace)
        assert again.exit_code == 0, again.output
        assert "skipped: 2" in again.output

    def test_index_no_sources_found(self, workspace: Path) -> None:
        empty = workspace / "empty"
        empty.mkdir()
        result = runner.invoke(app, ["index", str(empty), "--db", str(workspace / "index.db")])
        assert result.exit_code == 0
        assert "No source files found." in result.output

    def test_invalid_chunking_options(self, workspace: Path) -> None:
        result = _index(workspace, "--max-chunk-size", "10", "--min-chunk-size", "50")
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_unknown_backend(self, workspace: Path) -> None:
        result = _index(workspace, "--backend", "redis")
        assert result.exit_code == 1
        assert "Unknown store backend" in result.output


class TestSearchCommand:
    def test_search(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(
            app, ["search", "read configuration", "--db", str(workspace / "index.db"), "--top-k", "3"]
        )
        assert result.exit_code == 0, result.output
        assert "Score" in result.output
        assert "No matches found." not in result.output

    def test_search_with_filter(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(
            app,
            ["search", "main", "--db", str(workspace / "index.db"), "--filter", "language=rust"],
        )
        assert result.exit_code == 0, result.output
        assert "No matches found." in result.output

    def test_bad_filter(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(app, ["search", "main", "--db", str(workspace / "index.db"), "--filter", "oops"])
        assert result.exit_code == 2

    def test_missing_index(self, workspace: Path) -> None:
        result = runner.invoke(app, ["search", "main", "--db", str(workspace / "missing.db")])
        assert result.exit_code != 0
        assert "Index not found" in result.output


class TestStatusCommand:
    def test_status(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(app, ["status", "--db", str(workspace / "index.db")])
        assert result.exit_code == 0, result.output
        assert "from 2 files" in result.output

    def test_status_without_index(self, workspace: Path) -> None:
        result = runner.invoke(app, ["status", "--db", str(workspace / "missing.db")])
        assert result.exit_code == 0
        assert "Index not found" in result.output


class TestPruneCommand:
    def test_prune_removed_file(self, workspace: Path) -> None:
        _index(workspace)
        (workspace / "project" / "app.js").unlink()

        result = runner.invoke(app, ["prune", "--db", str(workspace / "index.db"), "--root", str(workspace)])

        assert result.exit_code == 0, result.output
        assert "Removed 1 orphaned files." in result.output
        status = runner.invoke(app, ["status", "--db", str(workspace / "index.db")])
        assert "from 1 files" in status.output


class TestChunksCommand:
    def test_table(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(app, ["chunks", "project/config.py", "--db", str(workspace / "index.db")])
        assert result.exit_code == 0, result.output
        assert "chunks for project/config.py" in result.output

    def test_json(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(
            app,
            ["chunks", str(workspace / "project" / "app.js"), "--db", str(workspace / "index.db"), "--json"],
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["success"] is True
        assert payload["file_path"] == "project/app.js"
        assert payload["chunk_count"] == len(payload["chunks_metadata"]) == 1
        assert payload["chunks_metadata"][0]["language"] == "javascript"

    def test_unknown_file(self, workspace: Path) -> None:
        _index(workspace)
        result = runner.invoke(app, ["chunks", "nope.py", "--db", str(workspace / "index.db")])
        assert result.exit_code == 0
        assert "No chunks indexed for nope.py." in result.output

    def test_missing_index(self, workspace: Path) -> None:
        result = runner.invoke(app, ["chunks", "a.py", "--db", str(workspace / "missing.db")])
        assert result.exit_code == 1
        assert "Index not found" in result.output


class TestWatchCommand:
    def test_initial_index_then_watch(self, workspace: Path) -> None:
        with patch("codefinder.cli.WorkspaceWatcher") as watcher_class:
            result = runner.invoke(
                app, ["watch", str(workspace / "project"), "--db", str(workspace / "index.db"), "--debounce", "0.2"]
            )

        assert result.exit_code == 0, result.output
        assert "Inserted: 2, updated: 0, skipped: 0, failed: 0" in result.output
        assert "Watcher stopped." in result.output
        args, kwargs = watcher_class.call_args
        assert args[1] == workspace / "project"
        assert kwargs["root"] == workspace
        assert kwargs["debounce"] == 0.2
        watcher_class.return_value.run.assert_called_once_with()

    def test_missing_directory(self, workspace: Path) -> None:
        result = runner.invoke(app, ["watch", str(workspace / "nope"), "--db", str(workspace / "index.db")])
        assert result.exit_code == 2


class TestServeCommand:
    def test_serve_runs_uvicorn(self) -> None:
        with patch("uvicorn.run") as mock_run:
            result = runner.invoke(app, ["serve", "--port", "9001"])
        assert result.exit_code == 0
        assert mock_run.call_args.kwargs["port"] == 9001
