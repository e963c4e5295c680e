"""Workspace document loading."""
