"""Syntax-aware chunking."""

from codefinder.chunking.chunker import AstChunker, ChunkingOptions, chunk_code

__all__ = ["AstChunker", "ChunkingOptions", "chunk_code"]
