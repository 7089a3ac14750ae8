"""
Unit tests for the web search stage.

Covers payload normalization, the cache -> rate limiter -> retry order of
operations and the variation search.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from company_search.common.cache import InMemoryCacheStore, StageCache
from company_search.common.config import SearchConfig
from company_search.common.error_handling import (
    PermanentUpstreamError,
    StageTimeoutError,
    TransientUpstreamError,
)
from company_search.common.retry import RetryPolicy
from company_search.common.types import StructuredQuery
from company_search.web.prompts import build_web_search_prompt
from company_search.web.web_search import WebSearchResult, WebSearchStage, normalize_search_payload

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, jitter=0)


class ProviderError(Exception):
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _answer(companies):
    return AIMessage(content=json.dumps({"companies": companies}))


def _stage(llm, cache=None, rate_limiter=None, config=None):
    limiter = rate_limiter or MagicMock()
    if rate_limiter is None:
        limiter.acquire_async = AsyncMock(return_value=0.0)
    return WebSearchStage(
        llm=llm,
        cache=cache,
        config=config or SearchConfig(),
        retry_policy=NO_WAIT,
        rate_limiter=limiter,
    )


@pytest.fixture
def query():
    return StructuredQuery(industry="fintech", locality="Berlin", free_text="startups")


class TestNormalizeSearchPayload:
    """Tests for normalize_search_payload()."""

    def test_object_with_companies(self):
        companies, message = normalize_search_payload('{"companies": [{"name": "PayFlow"}]}')

        assert companies == [{"name": "PayFlow"}]
        assert message is None

    def test_bare_array(self):
        companies, message = normalize_search_payload('[{"name": "A"}, {"name": "B"}]')
        assert [c["name"] for c in companies] == ["A", "B"]
        assert message is None

    def test_entries_without_name_are_dropped(self):
        companies, _ = normalize_search_payload('{"companies": [{"name": "A"}, {"domain": "x.io"}, "junk"]}')
        assert companies == [{"name": "A"}]

    def test_missing_array_gives_diagnostic(self):
        companies, message = normalize_search_payload('{"results": "none"}')

        assert companies == []
        assert message == "No companies found or invalid response format"

    def test_prose_gives_diagnostic(self):
        companies, message = normalize_search_payload("Sorry, I could not find anything.")

        assert companies == []
        assert message.startswith("Web search response was not valid JSON")


class TestBuildWebSearchPrompt:
    """Tests for build_web_search_prompt()."""

    def test_full_query(self, query):
        assert build_web_search_prompt(query) == "Find startups companies. Industry: fintech. Location: Berlin."

    def test_defaults_to_companies(self):
        prompt = build_web_search_prompt(StructuredQuery(country="Germany", founded_min=2015))
        assert prompt == "Find companies. Location: Germany. Founded between 2015 and today."


class TestWebSearchStage:
    """Tests for WebSearchStage.search()."""

    @pytest.mark.asyncio
    async def test_returns_raw_companies_with_meta(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_answer([{"name": "PayFlow", "domain": "payflow.io"}]))
        stage = _stage(llm)

        result = await stage.search(query)

        assert result.companies == [{"name": "PayFlow", "domain": "payflow.io"}]
        assert result.message is None
        assert result.meta["result_count"] == 1
        assert result.meta["cached"] is False
        assert result.meta["params"] == {"industry": "fintech", "locality": "Berlin", "free_text": "startups"}
        stage.rate_limiter.acquire_async.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cache_hit_skips_limiter_and_llm(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_answer([{"name": "PayFlow"}]))
        stage = _stage(llm, cache=StageCache(InMemoryCacheStore()))

        await stage.search(query)
        reordered = StructuredQuery(free_text="Startups", locality="berlin", industry="Fintech")
        cached = await stage.search(reordered)

        assert cached.companies == [{"name": "PayFlow"}]
        assert cached.meta["cached"] is True
        assert llm.ainvoke.await_count == 1
        assert stage.rate_limiter.acquire_async.await_count == 1

    @pytest.mark.asyncio
    async def test_skip_cache_forces_fresh_call(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_answer([{"name": "PayFlow"}]))
        stage = _stage(llm, cache=StageCache(InMemoryCacheStore()))

        await stage.search(query)
        await stage.search(query, skip_cache=True)

        assert llm.ainvoke.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_answer_is_not_cached(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content="I found nothing."))
        stage = _stage(llm, cache=StageCache(InMemoryCacheStore()))

        first = await stage.search(query)
        await stage.search(query)

        assert first.companies == []
        assert first.message
        assert llm.ainvoke.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_rate_limited_calls_taking_a_permit_each_time(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=[ProviderError("slow down", 429), _answer([{"name": "A"}])])
        stage = _stage(llm)

        result = await stage.search(query)

        assert result.companies == [{"name": "A"}]
        assert llm.ainvoke.await_count == 2
        assert stage.rate_limiter.acquire_async.await_count == 2

    @pytest.mark.asyncio
    async def test_client_errors_propagate_without_retry(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=ProviderError("forbidden", 403))
        stage = _stage(llm)

        with pytest.raises(PermanentUpstreamError):
            await stage.search(query)
        assert llm.ainvoke.await_count == 1

    @pytest.mark.asyncio
    async def test_persistent_server_errors_raise_transient(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=ProviderError("unavailable", 503))
        stage = _stage(llm)

        with pytest.raises(TransientUpstreamError):
            await stage.search(query)
        assert llm.ainvoke.await_count == 3

    @pytest.mark.asyncio
    async def test_slow_answer_times_out_without_retry(self, query):
        async def slow(messages):
            await asyncio.sleep(0.5)
            return _answer([{"name": "A"}])

        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=slow)
        stage = _stage(llm, config=SearchConfig(llm_timeout_seconds=0.05))

        with pytest.raises(StageTimeoutError) as exc_info:
            await stage.search(query)
        assert exc_info.value.stage == "web_search"
        assert llm.ainvoke.await_count == 1


class TestSearchWithVariations:
    """Tests for WebSearchStage.search_with_variations()."""

    @pytest.mark.asyncio
    async def test_merges_variations_without_duplicates(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=[
            _answer([{"name": "PayFlow", "domain": "payflow.io"}]),
            _answer([{"name": "PayFlow GmbH", "domain": "www.payflow.io"}, {"name": "Lendly"}]),
            _answer([{"name": "lendly"}, {"name": "Coinbase"}]),
            _answer([]),
            _answer([]),
        ])
        stage = _stage(llm)

        result = await stage.search_with_variations(query, max_results=10)

        assert [c["name"] for c in result.companies] == ["PayFlow", "Lendly", "Coinbase"]
        assert result.meta["aggregated"] is True
        assert llm.ainvoke.await_count == 5

    @pytest.mark.asyncio
    async def test_stops_at_max_results(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=_answer([{"name": f"C{i}"} for i in range(5)]))
        stage = _stage(llm)

        result = await stage.search_with_variations(query, max_results=3)

        assert len(result.companies) == 3
        assert llm.ainvoke.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_variation_is_skipped(self, query):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=[
            _answer([{"name": "PayFlow"}]),
            ProviderError("bad", 400),
            _answer([{"name": "Lendly"}]),
            _answer([]),
            _answer([]),
        ])
        stage = _stage(llm)

        result = await stage.search_with_variations(query)

        assert [c["name"] for c in result.companies] == ["PayFlow", "Lendly"]


class TestWebSearchResult:
    def test_round_trip_through_dict(self):
        result = WebSearchResult(companies=[{"name": "A"}], meta={"query": "q"}, message="note")
        assert WebSearchResult.from_dict(result.to_dict()) == result
