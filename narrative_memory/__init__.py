"""Temporal fact store and relevance-ranked retrieval for narrative memory."""

__version__ = "0.1.0"
