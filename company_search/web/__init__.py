"""Web search fallback: raw search and structured entity extraction."""
