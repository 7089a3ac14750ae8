"""Matching of web-extracted entities to existing company records."""
