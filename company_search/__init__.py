"""Unified company search: database lookup, web search fallback, entity matching."""

__version__ = "0.1.0"
