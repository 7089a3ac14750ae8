"""Structured search over the company datastore."""
