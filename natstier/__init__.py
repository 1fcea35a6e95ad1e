"""Tiered block storage metadata, memory caching, retention and retrieval."""

__version__ = "0.1.0"