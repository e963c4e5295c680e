"""Vector index: store adapters, index manager, indexing and search."""
