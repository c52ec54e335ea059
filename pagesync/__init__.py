"""Incremental page builds with source/canvas synchronization."""

__version__ = "0.1.0"
