"""
Global fixtures for all unit tests.

This conftest provides autouse fixtures that prevent real external service calls:
- MongoDB connection attempts (would cause 5-30s timeout per test)
- Environment variable isolation (prevents credential leakage)
- Shared repository/cache singletons leaking between tests

These fixtures apply automatically to ALL tests in tests/unit/.
"""

import pytest
from unittest.mock import patch, MagicMock


@pytest.fixture(autouse=True)
def mock_mongodb():
    """
    Prevent MongoDB connection attempts in all unit tests.

    MongoClient("") defaults to localhost:27017, causing 5-30s timeout per test.
    """
    with patch("pymongo.MongoClient") as mock_client:
        mock_instance = MagicMock()
        mock_db = MagicMock()
        mock_collection = MagicMock()

        # Setup chain: client["db"]["collection"]
        mock_instance.__getitem__ = MagicMock(return_value=mock_db)
        mock_db.__getitem__ = MagicMock(return_value=mock_collection)
        mock_collection.find_one = MagicMock(return_value=None)
        mock_collection.find = MagicMock(return_value=[])

        mock_client.return_value = mock_instance
        yield mock_client


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Isolate test environment from real credentials and configurations.

    This prevents:
    - Real API keys being used if tests accidentally call LLMs
    - A developer's .env changing pipeline tunables under test
    """
    # Use mock API keys to prevent accidental real API calls
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-mock-key")
    monkeypatch.delenv("OPENAI_BASE_URL", raising=False)
    monkeypatch.setenv("MONGODB_URI", "mongodb://localhost:27017/test")
    monkeypatch.setenv("CACHE_BACKEND", "memory")

    for name in (
        "SEARCH_DEFAULT_LIMIT",
        "SEARCH_MAX_LIMIT",
        "DB_QUERY_TIMEOUT_SECONDS",
        "LLM_TIMEOUT_SECONDS",
        "LLM_RETRY_ATTEMPTS",
        "WEB_SEARCH_RATE_LIMIT",
        "MATCH_SIMILARITY_THRESHOLD",
        "MATCH_MAX_MATCHES",
        "LLM_CACHING",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Drop repository and cache-store singletons after each test."""
    yield
    from company_search.common.repositories import reset_cache_store, reset_repository

    reset_repository()
    reset_cache_store()
