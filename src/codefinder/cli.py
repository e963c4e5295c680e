"""Command line interface for CodeFinder."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from codefinder.chunking.chunker import AstChunker
from codefinder.config import AppConfig
from codefinder.embedding.encoder import EmbeddingModel
from codefinder.errors import CodeFinderError
from codefinder.index.indexer import Indexer, IndexStats
from codefinder.index.manager import IndexManager
from codefinder.index.search import Searcher
from codefinder.ingestion.loader import document_id
from codefinder.models import MetadataFilter, Scalar
from codefinder.watcher import DEFAULT_DEBOUNCE, WorkspaceWatcher

console = Console()
app = typer.Typer(help="CodeFinder - syntax-aware semantic search over source code")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


@contextmanager
def _reported_errors() -> Iterator[None]:
    try:
        yield
    except CodeFinderError as exc:
        console.print(f"[red]Error:[/red] {exc.message}")
        if exc.suggestion:
            console.print(f"[dim]Suggestion: {exc.suggestion}[/dim]")
        raise typer.Exit(code=1) from exc


def _coerce(value: str) -> Scalar:
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return value


def parse_filter(entries: List[str] | None) -> MetadataFilter:
    """Turn ``key=value`` options into an equality filter."""
    where: MetadataFilter = {}
    for entry in entries or []:
        key, sep, value = entry.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Filters must look like key=value, got {entry!r}")
        where[key.strip()] = _coerce(value.strip())
    return where


def _load_config(**overrides) -> AppConfig:
    with _reported_errors():
        return AppConfig.from_env(**overrides)


def _summary(stats: IndexStats) -> str:
    return (
        f"Inserted: {stats.inserted}, updated: {stats.updated}, "
        f"skipped: {stats.skipped}, failed: {stats.failed}"
    )


def _report_failures(stats: IndexStats) -> None:
    for outcome in stats.outcomes:
        if not outcome.ok:
            console.print(f"[red]Failed:[/red] {outcome.path}: {outcome.error}")
            if outcome.suggestion:
                console.print(f"[dim]Suggestion: {outcome.suggestion}[/dim]")


@app.command()
def index(
    inputs: List[Path] = typer.Argument(..., help="Files or directories to index.", resolve_path=True),
    db: Optional[str] = typer.Option(None, "--db", help="Index location (SQLite file, Chroma directory/URL or Pinecone index)"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend: sqlite, chroma, pinecone or memory"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
    provider: Optional[str] = typer.Option(None, help="Embedding provider"),
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    dimension: Optional[int] = typer.Option(None, help="Embedding dimension"),
    max_chunk_size: Optional[int] = typer.Option(None, help="Chunk size budget in characters"),
    min_chunk_size: Optional[int] = typer.Option(None, help="Minimum chunk size in characters"),
    overlap: Optional[int] = typer.Option(None, help="Characters shared between adjacent chunks"),
    force: bool = typer.Option(False, "--force", help="Re-index files even when unchanged"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index one or more paths containing source files."""
    _setup_logging(verbose)
    config = _load_config(
        db_path=db,
        backend=backend,
        collection_name=collection,
        provider=provider,
        model_name=model,
        dimension=dimension,
        max_chunk_size=max_chunk_size,
        min_chunk_size=min_chunk_size,
        overlap=overlap,
    )
    with _reported_errors():
        chunker = AstChunker(config.chunking_options())
        embedder = EmbeddingModel(config.embedding_config())
        manager = IndexManager(config.index_state(Path.cwd()), dimension=embedder.dimension)
        console.print(f"Indexing into [bold]{manager.state.location}[/bold]...")
        try:
            stats = Indexer(embedder, manager, chunker).index(inputs, root=Path.cwd(), force=force)
        finally:
            manager.close()
            embedder.close()

    _report_failures(stats)
    if not stats.outcomes:
        console.print("[yellow]No source files found.[/yellow]")
        return
    console.print(_summary(stats))


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Optional[str] = typer.Option(None, "--db", help="Index location"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
    provider: Optional[str] = typer.Option(None, help="Embedding provider"),
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    dimension: Optional[int] = typer.Option(None, help="Embedding dimension"),
    top_k: int = typer.Option(10, help="Number of results to display"),
    filters: Optional[List[str]] = typer.Option(None, "--filter", help="Metadata constraint key=value"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic search."""
    _setup_logging(verbose)
    where = parse_filter(filters)
    config = _load_config(
        db_path=db,
        backend=backend,
        collection_name=collection,
        provider=provider,
        model_name=model,
        dimension=dimension,
    )
    if not config.store_exists(Path.cwd()):
        raise typer.BadParameter(f"Index not found: {config.resolve_location(Path.cwd())}")

    with _reported_errors():
        embedder = EmbeddingModel(config.embedding_config())
        manager = IndexManager(config.index_state(Path.cwd()), dimension=embedder.dimension)
        try:
            results = Searcher(embedder, manager).search(query, top_k=top_k, where=where or None)
        finally:
            manager.close()
            embedder.close()

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("File")
    table.add_column("Lines")
    table.add_column("Node")
    table.add_column("Snippet")

    for result in results:
        snippet = result.text.replace("\n", " ")
        table.add_row(
            f"{result.score:.4f}",
            result.path,
            result.lines,
            str(result.metadata.get("node_type", "")),
            snippet[:180],
        )

    console.print(table)


@app.command()
def status(
    db: Optional[str] = typer.Option(None, "--db", help="Index location"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
) -> None:
    """Show the number of indexed chunks; no embedding provider is needed."""
    config = _load_config(db_path=db, backend=backend, collection_name=collection)
    if not config.store_exists(Path.cwd()):
        console.print("[yellow]Index not found, nothing indexed yet.[/yellow]")
        return

    with _reported_errors():
        manager = IndexManager(config.index_state(Path.cwd()))
        try:
            total = manager.count()
            files = len(manager.indexed_files())
        finally:
            manager.close()
    console.print(f"{total} chunks from {files} files")
    console.print(f"Collection [bold]{config.collection_name}[/bold] at {config.resolve_location(Path.cwd())}")


@app.command()
def prune(
    db: Optional[str] = typer.Option(None, "--db", help="Index location"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
    root: Path = typer.Option(Path("."), help="Workspace root the indexed paths are relative to"),
) -> None:
    """Remove chunks of files that no longer exist on disk."""
    config = _load_config(db_path=db, backend=backend, collection_name=collection)
    if not config.store_exists(Path.cwd()):
        console.print("[yellow]Index not found, nothing to prune.[/yellow]")
        return

    with _reported_errors():
        manager = IndexManager(config.index_state(Path.cwd()))
        try:
            removed = manager.prune_missing(root.resolve())
        finally:
            manager.close()
    console.print(f"Removed {len(removed)} orphaned files.")


@app.command()
def chunks(
    file_path: str = typer.Argument(..., help="Indexed file, relative to the workspace root or absolute"),
    db: Optional[str] = typer.Option(None, "--db", help="Index location"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
    as_json: bool = typer.Option(False, "--json", help="Print the chunk metadata as JSON"),
) -> None:
    """Show the stored chunks of one indexed file."""
    config = _load_config(db_path=db, backend=backend, collection_name=collection)
    if not config.store_exists(Path.cwd()):
        console.print("[yellow]Index not found, nothing indexed yet.[/yellow]")
        raise typer.Exit(code=1)

    key = file_path
    if Path(file_path).is_absolute():
        key = document_id(Path(file_path), Path.cwd())
    with _reported_errors():
        manager = IndexManager(config.index_state(Path.cwd()))
        try:
            metadata = manager.chunk_metadata(key)
        finally:
            manager.close()

    if as_json:
        payload = {"success": True, "file_path": key, "chunk_count": len(metadata), "chunks_metadata": metadata}
        typer.echo(json.dumps(payload, indent=2))
        return
    if not metadata:
        console.print(f"[yellow]No chunks indexed for {key}.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#")
    table.add_column("Lines")
    table.add_column("Node")
    table.add_column("Notes")
    for entry in metadata:
        notes = entry.get("error") or entry.get("config_error") or entry.get("warning") or ""
        table.add_row(
            str(entry.get("chunk_index", "")),
            f"{entry.get('start_line', '')}-{entry.get('end_line', '')}",
            str(entry.get("node_type", "")),
            str(notes)[:80],
        )
    console.print(table)
    console.print(f"{len(metadata)} chunks for {key}")


@app.command()
def watch(
    directory: Path = typer.Argument(
        Path("."), help="Directory to keep indexed.", exists=True, file_okay=False, resolve_path=True
    ),
    db: Optional[str] = typer.Option(None, "--db", help="Index location"),
    backend: Optional[str] = typer.Option(None, help="Vector store backend"),
    collection: Optional[str] = typer.Option(None, help="Collection name"),
    provider: Optional[str] = typer.Option(None, help="Embedding provider"),
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    dimension: Optional[int] = typer.Option(None, help="Embedding dimension"),
    max_chunk_size: Optional[int] = typer.Option(None, help="Chunk size budget in characters"),
    min_chunk_size: Optional[int] = typer.Option(None, help="Minimum chunk size in characters"),
    overlap: Optional[int] = typer.Option(None, help="Characters shared between adjacent chunks"),
    debounce: float = typer.Option(DEFAULT_DEBOUNCE, help="Seconds to wait for more changes before syncing"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index DIRECTORY, then keep the index in sync as files change (Ctrl+C to stop)."""
    _setup_logging(verbose)
    config = _load_config(
        db_path=db,
        backend=backend,
        collection_name=collection,
        provider=provider,
        model_name=model,
        dimension=dimension,
        max_chunk_size=max_chunk_size,
        min_chunk_size=min_chunk_size,
        overlap=overlap,
    )

    def report(stats: IndexStats) -> None:
        _report_failures(stats)
        console.print(f"{_summary(stats)}, deleted: {stats.deleted}")

    with _reported_errors():
        chunker = AstChunker(config.chunking_options())
        embedder = EmbeddingModel(config.embedding_config())
        manager = IndexManager(config.index_state(Path.cwd()), dimension=embedder.dimension)
        indexer = Indexer(embedder, manager, chunker)
        try:
            console.print(f"Indexing into [bold]{manager.state.location}[/bold]...")
            stats = indexer.index([directory], root=Path.cwd())
            _report_failures(stats)
            console.print(_summary(stats))
            watcher = WorkspaceWatcher(indexer, directory, root=Path.cwd(), debounce=debounce, on_batch=report)
            console.print(f"Watching [bold]{directory}[/bold] for changes... (Ctrl+C to stop)")
            watcher.run()
        finally:
            manager.close()
            embedder.close()
    console.print("[green]Watcher stopped.[/green]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
) -> None:
    """Start the HTTP tool surface (index, query, status, chunks)."""
    import uvicorn

    from codefinder.web.app import app as web_app

    console.print(f"Starting CodeFinder API on http://{host}:{port}")
    uvicorn.run(web_app, host=host, port=port, reload=False, log_level="info")
