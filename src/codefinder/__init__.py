"""CodeFinder - syntax-aware semantic indexing of source code."""

__version__ = "0.1.0"
