"""
Unified Search Service

Runs one free-text company search end to end:

    PARSE -> DB_SEARCH -> WEB_SEARCH -> EXTRACT -> MATCH -> FUSE_AND_RANK

Web search runs only when the database stage failed or returned fewer
results than requested. Each stage is timed and its failure recorded in a
per-stage error map; a failed stage skips only the stages that consume its
output. The request fails hard (SearchUnavailableError) only when neither
the database nor the web produced anything.

Usage:
    service = UnifiedSearchService.from_env()
    response = await service.search(
        "fintech startups in Berlin",
        SearchOptions(limit=20),
    )
"""

import copy
import logging
import re
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from company_search.common.cache import StageCache, build_content_key
from company_search.common.config import SearchConfig
from company_search.common.error_handling import (
    InputError,
    SearchUnavailableError,
    StageErrorCollector,
)
from company_search.common.logger import PipelineLogger, get_logger
from company_search.common.rate_limiter import SlidingWindowRateLimiter
from company_search.common.repositories import (
    CompanyRepositoryInterface,
    get_cache_store,
    get_company_repository,
)
from company_search.common.retry import RetryPolicy
from company_search.common.stage_base import timed_execution
from company_search.common.types import MatchResult, StructuredQuery
from company_search.matching.company_matcher import CompanyMatcher
from company_search.matching.embeddings import EmbeddingClient
from company_search.search.database_search import DatabaseSearchResult, DatabaseSearchStage, PageOptions
from company_search.search.pagination import format_pagination
from company_search.search.query_parser import QueryParser
from company_search.web.entity_extractor import EntityExtractor
from company_search.web.web_search import WebSearchStage

from .ranking import RankingWeights, fuse_results, rank_results

logger = logging.getLogger(__name__)

PARSING = "parsing"
DB_SEARCH = "db_search"
WEB_SEARCH = "web_search"
ENTITY_EXTRACTION = "entity_extraction"
MATCHING = "matching"
FUSE_RANK = "fuse_rank"


@dataclass
class SearchOptions:
    """Caller options for a unified search."""

    limit: int = 20
    offset: int = 0  # accepted for compatibility; paging is cursor-based
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    sort: Optional[str] = None
    order: Optional[str] = None
    include_count: bool = False
    skip_cache: bool = False
    max_matches: Optional[int] = None
    similarity_threshold: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SearchOptions":
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def page_options(self, limit: int) -> PageOptions:
        return PageOptions(
            limit=limit,
            next_cursor=self.next_cursor,
            prev_cursor=self.prev_cursor,
            sort=self.sort,
            order=self.order,
            include_count=self.include_count,
        )

    def cache_params(self) -> Dict[str, Any]:
        """Options that change the response (offset and skip_cache do not)."""
        params = asdict(self)
        params.pop("offset")
        params.pop("skip_cache")
        return params


def _normalize_query_text(query: str) -> str:
    return re.sub(r"\s+", " ", query.strip()).lower()


class UnifiedSearchService:
    """Orchestrates the parse, database, web, extraction and matching stages."""

    def __init__(
        self,
        repository: CompanyRepositoryInterface,
        parser: QueryParser,
        db_stage: DatabaseSearchStage,
        web_stage: WebSearchStage,
        extractor: EntityExtractor,
        matcher: CompanyMatcher,
        cache: Optional[StageCache] = None,
        config: Optional[SearchConfig] = None,
        weights: Optional[RankingWeights] = None,
    ):
        self.repository = repository
        self.parser = parser
        self.db_stage = db_stage
        self.web_stage = web_stage
        self.extractor = extractor
        self.matcher = matcher
        self.cache = cache
        self.config = config or SearchConfig.from_env()
        self.weights = weights or RankingWeights()

    @classmethod
    def from_env(
        cls,
        config: Optional[SearchConfig] = None,
        repository: Optional[CompanyRepositoryInterface] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> "UnifiedSearchService":
        """
        Build a service wired to the shared repository, cache store and
        rate limiter. Upstream clients are created on first use, so a
        missing API key only disables the stages that need it.
        """
        config = config or SearchConfig.from_env()
        repository = repository or get_company_repository()
        store = get_cache_store(config.cache_backend, config.cache_max_size)

        stage_cache = StageCache(store, key_prefix=config.cache_key_prefix, enabled=config.llm_caching)
        response_cache = StageCache(store, key_prefix=config.cache_key_prefix)
        retry_policy = RetryPolicy.from_search_config(config)
        rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_calls=config.web_search_max_calls,
            window_seconds=config.web_search_window_seconds,
            name=WEB_SEARCH,
        )

        embedding_client = EmbeddingClient(
            batch_size=config.embedding_batch_size,
            timeout_seconds=config.embedding_timeout_seconds,
            retry_policy=retry_policy,
            cache=stage_cache,
            cache_ttl=config.embedding_ttl,
        )

        return cls(
            repository=repository,
            parser=QueryParser(cache=stage_cache, config=config, retry_policy=retry_policy),
            db_stage=DatabaseSearchStage(repository, config=config),
            web_stage=WebSearchStage(
                rate_limiter=rate_limiter, cache=stage_cache, config=config, retry_policy=retry_policy
            ),
            extractor=EntityExtractor(cache=stage_cache, config=config, retry_policy=retry_policy),
            matcher=CompanyMatcher(repository, embedding_client=embedding_client, config=config),
            cache=response_cache,
            config=config,
        )

    def _cache_key(self, query: str, options: SearchOptions) -> str:
        # Cursors are case-sensitive, so options are hashed verbatim
        return build_content_key(
            "unified_search",
            {"query": _normalize_query_text(query), "options": options.cache_params()},
        )

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> Dict[str, Any]:
        """
        Run a unified search.

        Args:
            query: Free-text company search
            options: Paging, sort and matching options

        Returns:
            {success, companies, pagination?, meta}

        Raises:
            InputError: If the query is blank
            SearchUnavailableError: If both database and web search failed
        """
        if not query or not query.strip():
            raise InputError("Search query must not be empty")
        options = options or SearchOptions(limit=self.config.default_limit)
        query = query.strip()

        cache_key = self._cache_key(query, options)
        if self.cache is not None and not options.skip_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Using cached unified search result for: '{query}'")
                cached["meta"]["cached"] = True
                return cached

        run_id = uuid.uuid4().hex
        run_log = get_logger(__name__, run_id=run_id)
        errors = StageErrorCollector()
        stages: Dict[str, int] = {}
        sources = {
            "nl_parser": False,
            "database": False,
            "web_search": False,
            "entity_extractor": False,
            "company_matcher": False,
        }
        limit = self.config.clamp_limit(options.limit)
        meta: Dict[str, Any] = {"query": query, "run_id": run_id}

        with timed_execution() as total_timer:
            # PARSE: degrades to free text, never aborts
            with timed_execution() as timer:
                outcome = await self.parser.parse_with_status(query)
            stages[PARSING] = timer.duration_ms
            parsed = outcome.query
            if outcome.degraded:
                errors.add(PARSING, outcome.error)
            else:
                sources["nl_parser"] = True
            meta["parsed_query"] = parsed.to_dict()
            run_log.with_stage(PARSING).info(f"Parsed query: {parsed.to_dict()}")

            # DB_SEARCH: failure behaves as zero results
            db_result: Optional[DatabaseSearchResult] = None
            with timed_execution() as timer:
                try:
                    db_result = await self.db_stage.search(parsed, options.page_options(limit))
                    sources["database"] = True
                except Exception as e:
                    errors.add(DB_SEARCH, e)
                    run_log.with_stage(DB_SEARCH).warning(f"Database search failed: {e}")
            stages[DB_SEARCH] = timer.duration_ms
            db_companies = db_result.results if db_result is not None else []

            matches: List[MatchResult] = []
            if db_result is None or len(db_companies) < limit:
                matches = await self._enrich_from_web(parsed, options, meta, stages, sources, errors, run_log)
            else:
                run_log.with_stage(WEB_SEARCH).debug(
                    f"Skipping web search: database returned a full page of {len(db_companies)}"
                )

            if errors.has_error(DB_SEARCH) and errors.has_error(WEB_SEARCH):
                run_log.error("Database and web search both failed")
                raise SearchUnavailableError(
                    "Company search is unavailable: database and web search both failed",
                    errors=errors.to_error_map(),
                )

            # FUSE_AND_RANK
            with timed_execution() as timer:
                fused = fuse_results(db_companies, matches)
                companies = rank_results(fused, query, parsed, self.weights)
            stages[FUSE_RANK] = timer.duration_ms

        meta["stages"] = stages
        meta["sources"] = sources
        meta["cached"] = False
        meta["total_duration_ms"] = total_timer.duration_ms
        if errors:
            meta["errors"] = errors.to_error_map()

        response: Dict[str, Any] = {"success": True, "companies": companies}
        if db_result is not None:
            response["pagination"] = format_pagination(db_result.pagination)
        response["meta"] = meta

        run_log.info(
            f"Unified search returned {len(companies)} companies in {total_timer.duration_ms}ms "
            f"({len(errors)} stage errors)"
        )

        if self.cache is not None and not errors:
            self.cache.put(cache_key, copy.deepcopy(response), self.config.unified_search_ttl)
        return response

    async def _enrich_from_web(
        self,
        parsed: StructuredQuery,
        options: SearchOptions,
        meta: Dict[str, Any],
        stages: Dict[str, int],
        sources: Dict[str, bool],
        errors: StageErrorCollector,
        run_log: PipelineLogger,
    ) -> List[MatchResult]:
        """WEB_SEARCH -> EXTRACT -> MATCH; each step needs the previous one's output."""
        with timed_execution() as timer:
            try:
                web_result = await self.web_stage.search(parsed, skip_cache=options.skip_cache)
            except Exception as e:
                errors.add(WEB_SEARCH, e)
                run_log.with_stage(WEB_SEARCH).warning(f"Web search failed: {e}")
                web_result = None
        stages[WEB_SEARCH] = timer.duration_ms
        if web_result is None:
            return []
        sources["web_search"] = True
        meta["web_results_count"] = len(web_result.companies)
        if web_result.message:
            meta["web_search_message"] = web_result.message
        if not web_result.companies:
            return []

        with timed_execution() as timer:
            try:
                extraction = await self.extractor.extract(web_result)
            except Exception as e:
                errors.add(ENTITY_EXTRACTION, e)
                run_log.with_stage(ENTITY_EXTRACTION).warning(f"Entity extraction failed: {e}")
                extraction = None
        stages[ENTITY_EXTRACTION] = timer.duration_ms
        if extraction is None:
            return []
        sources["entity_extractor"] = True
        meta["extracted_count"] = len(extraction.companies)
        if not extraction.companies:
            return []

        with timed_execution() as timer:
            try:
                matching = await self.matcher.match(
                    extraction.companies,
                    max_matches=options.max_matches,
                    similarity_threshold=options.similarity_threshold,
                )
            except Exception as e:
                errors.add(MATCHING, e)
                run_log.with_stage(MATCHING).warning(f"Company matching failed: {e}")
                matching = None
        stages[MATCHING] = timer.duration_ms
        if matching is None:
            return []
        sources["company_matcher"] = True
        meta["matching"] = {
            k: matching.meta[k]
            for k in ("exact_matches", "fuzzy_matches", "no_matches")
            if k in matching.meta
        }
        return matching.matched_companies
