"""
Natural-language query parser.

Turns a free-text company search ("fintech startups in Berlin founded
after 2015") into a StructuredQuery using an LLM with a tool-call schema.

Parsing is best effort and never raises: if the LLM is unavailable,
times out, or returns nothing usable, the query degrades to
`StructuredQuery(free_text=text)` and the error is reported alongside.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from company_search.common.cache import build_params_key
from company_search.common.error_handling import SearchPipelineError, classify_upstream_error
from company_search.common.stage_base import LLMStage
from company_search.common.types import StructuredQuery

logger = logging.getLogger(__name__)


QUERY_PARSER_SYSTEM_PROMPT = """You parse natural language queries about companies into structured search parameters.

Extract only parameters that are explicitly mentioned or strongly implied by the query.
Do not guess parameters that are not mentioned; leave them empty.
Put words that describe the companies but fit no other field into `query`.
Use `locality` for cities, `region` for states or provinces, `country` for countries.
Founding years are integers; use founded for an exact year and founded_min/founded_max for ranges."""


class SearchParameters(BaseModel):
    """Extract structured search parameters from a natural language query about companies."""

    query: Optional[str] = Field(default=None, description="General text search term, if any")
    industry: Optional[str] = Field(default=None, description="Industry or sector of the company")
    country: Optional[str] = Field(default=None, description="Country where the company is located")
    region: Optional[str] = Field(default=None, description="Region, state, or province")
    locality: Optional[str] = Field(default=None, description="City or specific locality")
    size: Optional[str] = Field(default=None, description="Company size category, e.g. 11-50")
    founded: Optional[int] = Field(default=None, description="Exact founding year")
    founded_min: Optional[int] = Field(default=None, description="Minimum founding year for a range")
    founded_max: Optional[int] = Field(default=None, description="Maximum founding year for a range")
    sort: Optional[Literal["relevance", "name", "founded"]] = Field(default=None, description="Field to sort by")
    order: Optional[Literal["asc", "desc"]] = Field(default=None, description="Sort order")

    def to_structured_query(self) -> StructuredQuery:
        return StructuredQuery.from_dict({
            "free_text": self.query,
            "industry": self.industry,
            "country": self.country,
            "region": self.region,
            "locality": self.locality,
            "size": self.size,
            "founded_year": self.founded,
            "founded_min": self.founded_min,
            "founded_max": self.founded_max,
            "sort": self.sort,
            "order": self.order,
        })


@dataclass
class ParseOutcome:
    """Parsed query plus the reason parsing degraded, if it did."""

    query: StructuredQuery
    error: Optional[SearchPipelineError] = None
    cached: bool = False

    @property
    def degraded(self) -> bool:
        return self.error is not None


class QueryParser(LLMStage):
    """LLM-backed parser from free text to StructuredQuery."""

    stage_name = "parsing"

    async def parse(self, text: str) -> StructuredQuery:
        """Parse `text`; never raises for string input."""
        outcome = await self.parse_with_status(text)
        return outcome.query

    async def parse_with_status(self, text: str) -> ParseOutcome:
        text = (text or "").strip()
        fallback = StructuredQuery(free_text=text or None)
        if not text:
            return ParseOutcome(query=fallback)

        cache_key = build_params_key("query_parse", {"query": text})
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Using cached parse result for query: '{text}'")
                return ParseOutcome(query=StructuredQuery.from_dict(cached), cached=True)

        try:
            parsed = await self._parse_with_llm(text)
        except Exception as e:
            error = classify_upstream_error(e, stage=self.stage_name)
            logger.warning(f"Query parsing degraded to free text for '{text}': {error}")
            return ParseOutcome(query=fallback, error=error)

        if parsed.is_empty():
            # Facet-less parse keeps the original text as the search term
            parsed.free_text = text

        if self.cache is not None:
            self.cache.put(cache_key, parsed.to_dict(), self.config.query_parse_ttl)

        logger.info(f"Parsed query '{text}' into {parsed.to_dict()}")
        return ParseOutcome(query=parsed)

    async def _parse_with_llm(self, text: str) -> StructuredQuery:
        structured_llm = self.llm.with_structured_output(SearchParameters, method="function_calling")
        messages = [
            SystemMessage(content=QUERY_PARSER_SYSTEM_PROMPT),
            HumanMessage(content=text),
        ]
        result = await self._invoke(structured_llm, messages, name="query parser LLM call")
        params = result.unwrap()
        if params is None:
            return StructuredQuery()
        if isinstance(params, dict):
            params = SearchParameters(**params)
        return params.to_structured_query()
