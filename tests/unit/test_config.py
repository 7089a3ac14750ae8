"""
Unit tests for configuration, the LLM client factories and run-scoped logging.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest

from company_search.common.config import Config, SearchConfig
from company_search.common.error_handling import NotConfiguredError
from company_search.common.llm_factory import LazyUpstreamClient, create_chat_llm, create_embeddings
from company_search.common.logger import get_logger


class TestSearchConfig:
    """Tests for SearchConfig defaults and env overrides."""

    def test_defaults(self):
        config = SearchConfig.from_env()

        assert config.default_limit == 20
        assert config.max_limit == 100
        assert config.db_timeout_seconds == 5.0
        assert config.retry_attempts == 3
        assert config.web_search_max_calls == 10
        assert config.similarity_threshold == 0.70
        assert config.max_matches == 3
        assert config.llm_caching is True
        assert config.web_search_ttl == 3600
        assert config.embedding_ttl == 30 * 24 * 3600

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SEARCH_MAX_LIMIT", "50")
        monkeypatch.setenv("DB_QUERY_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("MATCH_SIMILARITY_THRESHOLD", "0.8")
        monkeypatch.setenv("LLM_CACHING", "false")
        monkeypatch.setenv("CACHE_BACKEND", "MongoDB")

        config = SearchConfig.from_env()

        assert config.max_limit == 50
        assert config.db_timeout_seconds == 2.5
        assert config.similarity_threshold == 0.8
        assert config.llm_caching is False
        assert config.cache_backend == "mongodb"

    @pytest.mark.parametrize("requested,expected", [
        (None, 20),
        (0, 1),
        (-5, 1),
        (7, 7),
        ("7", 7),
        (500, 100),
        ("many", 20),
    ])
    def test_clamp_limit(self, requested, expected):
        assert SearchConfig().clamp_limit(requested) == expected


class TestConfigValidate:
    """Tests for Config.validate()."""

    def test_passes_with_credentials(self):
        Config.validate()

    def test_reports_every_missing_setting(self, monkeypatch):
        monkeypatch.setenv("MONGODB_URI", "")
        monkeypatch.setenv("OPENAI_API_KEY", "")

        with pytest.raises(NotConfiguredError, match="MONGODB_URI, OPENAI_API_KEY"):
            Config.validate()

    def test_summary_never_contains_secrets(self):
        summary = Config.summary()

        assert "sk-test-mock-key" not in summary
        assert "OpenAI: ✓ Configured" in summary


class TestLLMFactory:
    """Tests for create_chat_llm() and create_embeddings()."""

    @patch("company_search.common.llm_factory.ChatOpenAI")
    def test_chat_llm_disables_provider_retries(self, mock_chat):
        create_chat_llm(model="gpt-4o-mini", stage="parsing", timeout=30)

        kwargs = mock_chat.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "sk-test-mock-key"
        assert kwargs["max_retries"] == 0
        assert kwargs["timeout"] == 30
        assert kwargs["temperature"] == 0.0
        assert kwargs["base_url"] is None

    @patch("company_search.common.llm_factory.ChatOpenAI")
    def test_chat_llm_without_temperature(self, mock_chat):
        create_chat_llm(temperature=None, stage="web_search")
        assert "temperature" not in mock_chat.call_args.kwargs

    @patch("company_search.common.llm_factory.ChatOpenAI")
    def test_base_url_override(self, mock_chat, monkeypatch):
        monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.example.com/v1")

        create_chat_llm()

        assert mock_chat.call_args.kwargs["base_url"] == "https://proxy.example.com/v1"

    @patch("company_search.common.llm_factory.OpenAIEmbeddings")
    def test_embeddings_batch_size(self, mock_embeddings):
        create_embeddings(batch_size=8)

        kwargs = mock_embeddings.call_args.kwargs
        assert kwargs["chunk_size"] == 8
        assert kwargs["max_retries"] == 0

    def test_missing_key_raises_not_configured(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "")

        with pytest.raises(NotConfiguredError) as exc_info:
            create_chat_llm(stage="entity_extraction")
        assert exc_info.value.stage == "entity_extraction"

        with pytest.raises(NotConfiguredError):
            create_embeddings()


class TestLazyUpstreamClient:
    """Tests for LazyUpstreamClient."""

    def test_creates_client_once(self):
        factory = MagicMock(return_value="client")
        holder = LazyUpstreamClient(factory, name="web_search")

        assert holder.get() == "client"
        assert holder.get() == "client"
        assert factory.call_count == 1
        assert holder.available is True

    def test_injected_client_skips_factory(self):
        factory = MagicMock()
        holder = LazyUpstreamClient(factory, name="matching", client="injected")

        assert holder.get() == "injected"
        factory.assert_not_called()

    def test_not_configured_is_remembered(self):
        factory = MagicMock(side_effect=NotConfiguredError("OPENAI_API_KEY is not set"))
        holder = LazyUpstreamClient(factory, name="web_search")

        for _ in range(3):
            with pytest.raises(NotConfiguredError):
                holder.get()

        assert factory.call_count == 1
        assert holder.available is False

    def test_other_errors_are_not_remembered(self):
        factory = MagicMock(side_effect=[RuntimeError("boom"), "client"])
        holder = LazyUpstreamClient(factory, name="web_search")

        with pytest.raises(RuntimeError):
            holder.get()
        assert holder.get() == "client"


class TestPipelineLogger:
    """Tests for run-scoped log prefixes."""

    def test_prefix_includes_run_and_stage(self, caplog):
        caplog.set_level(logging.INFO, logger="company_search.test")
        log = get_logger("company_search.test", run_id="abcdef1234567890", stage="matching")

        log.info("done")

        assert caplog.records[-1].getMessage() == "[run:abcdef12] [matching] done"

    def test_no_context_leaves_message_unchanged(self, caplog):
        caplog.set_level(logging.INFO, logger="company_search.test")

        get_logger("company_search.test").info("done")

        assert caplog.records[-1].getMessage() == "done"

    def test_with_stage_keeps_run_id(self, caplog):
        caplog.set_level(logging.INFO, logger="company_search.test")
        log = get_logger("company_search.test", run_id="0123456789abcdef")

        log.with_stage("db_search").warning("Database search failed")

        record = caplog.records[-1]
        assert record.getMessage() == "[run:01234567] [db_search] Database search failed"
        assert record.levelno == logging.WARNING
        assert record.name == "company_search.test"

    def test_debug_respects_logger_level(self, caplog):
        caplog.set_level(logging.INFO, logger="company_search.test")

        get_logger("company_search.test", run_id="r1").debug("hidden")

        assert caplog.records == []
