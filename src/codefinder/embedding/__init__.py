"""Embedding generation."""

from codefinder.embedding.encoder import EmbeddingConfig, EmbeddingModel, create_provider

__all__ = ["EmbeddingConfig", "EmbeddingModel", "create_provider"]
