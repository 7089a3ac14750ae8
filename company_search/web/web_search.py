"""
Web search stage.

Asks a search-capable LLM for companies matching a structured query and
returns the raw per-company blobs it reports. The order of operations for
every call is fixed:

1. cache lookup by normalized query facets (hit returns immediately)
2. rate-limiter permit (blocks the caller while the window is full)
3. LLM call, retried on 429/5xx with exponential backoff and jitter

Responses without a `companies` array are normalized to an empty result
with a diagnostic `message` instead of failing the stage.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from langchain_core.messages import HumanMessage, SystemMessage

from company_search.common.cache import build_params_key
from company_search.common.config import Config
from company_search.common.dedupe import normalize_domain, normalize_name
from company_search.common.json_utils import parse_llm_json
from company_search.common.rate_limiter import SlidingWindowRateLimiter
from company_search.common.stage_base import LLMStage
from company_search.common.types import StructuredQuery

from .prompts import WEB_SEARCH_SYSTEM_PROMPT, build_web_search_prompt

logger = logging.getLogger(__name__)


@dataclass
class WebSearchResult:
    """Raw web search output: unstructured per-company blobs plus meta."""

    companies: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"companies": self.companies, "meta": self.meta}
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebSearchResult":
        return cls(
            companies=list(data.get("companies") or []),
            meta=dict(data.get("meta") or {}),
            message=data.get("message"),
        )


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, list):
        # Multi-part content: keep the text parts
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return content if isinstance(content, str) else ""


def normalize_search_payload(text: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Extract the company list from a raw LLM answer.

    Returns:
        (companies, message); message is set when the answer had no usable
        company array
    """
    try:
        payload = parse_llm_json(text)
    except ValueError as e:
        return [], f"Web search response was not valid JSON: {e}"

    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("companies"), list):
        items = payload["companies"]
    else:
        return [], "No companies found or invalid response format"

    companies = [item for item in items if isinstance(item, dict) and item.get("name")]
    if len(companies) < len(items):
        logger.debug(f"Dropped {len(items) - len(companies)} malformed web search entries")
    return companies, None


class WebSearchStage(LLMStage):
    """Cached, rate-limited, retried web search for companies."""

    stage_name = "web_search"
    model = Config.WEB_SEARCH_MODEL
    temperature = None

    def __init__(self, rate_limiter: Optional[SlidingWindowRateLimiter] = None, **kwargs):
        super().__init__(**kwargs)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_calls=self.config.web_search_max_calls,
            window_seconds=self.config.web_search_window_seconds,
            name=self.stage_name,
        )

    async def search(self, query: StructuredQuery, skip_cache: bool = False) -> WebSearchResult:
        """
        Search the web for companies matching `query`.

        Raises:
            TransientUpstreamError: 429/5xx persisted through every retry
            PermanentUpstreamError: Non-retryable provider error
            StageTimeoutError: An attempt exceeded the LLM timeout
            NotConfiguredError: No API key configured
        """
        search_text = build_web_search_prompt(query)
        cache_key = build_params_key("web_search", query.facets())

        if self.cache is not None and not skip_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Using cached web search result for: '{search_text}'")
                result = WebSearchResult.from_dict(cached)
                result.meta["cached"] = True
                return result

        llm = self.llm
        messages = [
            SystemMessage(content=WEB_SEARCH_SYSTEM_PROMPT),
            HumanMessage(content=search_text),
        ]
        logger.info(f"Web search: '{search_text}'")
        response = (await self._invoke(
            llm,
            messages,
            name="web search LLM call",
            before_attempt=self.rate_limiter.acquire_async,
        )).unwrap()

        companies, message = normalize_search_payload(_message_text(response))
        result = WebSearchResult(
            companies=companies,
            meta={
                "query": search_text,
                "params": query.facets(),
                "result_count": len(companies),
                "timestamp": datetime.utcnow().isoformat(),
                "cached": False,
            },
            message=message,
        )

        if message:
            logger.warning(f"Web search returned no usable companies: {message}")
        elif self.cache is not None:
            self.cache.put(cache_key, result.to_dict(), self.config.web_search_ttl)

        logger.info(f"Web search found {len(companies)} companies")
        return result

    async def search_with_variations(self, query: StructuredQuery, max_results: int = 20) -> WebSearchResult:
        """
        Broaden a search with phrasing variations until `max_results` blobs.

        Variation failures are logged and skipped; the base search failing
        fails the call.
        """
        base = await self.search(query)
        companies = list(base.companies)
        seen_domains = {normalize_domain(c.get("domain")) for c in companies} - {""}
        seen_names = {normalize_name(c.get("name")) for c in companies} - {""}

        for variation in self._variations(query):
            if len(companies) >= max_results:
                break
            try:
                extra = await self.search(variation)
            except Exception as e:
                logger.warning(f"Web search variation {variation.facets()} failed: {e}")
                continue
            for company in extra.companies:
                domain = normalize_domain(company.get("domain"))
                name = normalize_name(company.get("name"))
                if (domain and domain in seen_domains) or (name and name in seen_names):
                    continue
                companies.append(company)
                if domain:
                    seen_domains.add(domain)
                if name:
                    seen_names.add(name)

        return WebSearchResult(
            companies=companies[:max_results],
            meta={
                **base.meta,
                "result_count": min(len(companies), max_results),
                "aggregated": True,
            },
            message=None if companies else base.message,
        )

    @staticmethod
    def _variations(query: StructuredQuery) -> List[StructuredQuery]:
        facets = query.to_dict()
        variations = []
        if query.industry:
            variations.append(StructuredQuery.from_dict({**facets, "industry": f"{query.industry} companies"}))
            variations.append(StructuredQuery.from_dict({**facets, "industry": f"top {query.industry} companies"}))

        location = query.locality or query.region or query.country or query.location
        if location:
            variations.append(StructuredQuery.from_dict({**facets, "free_text": f"companies in {location}"}))
            if query.industry:
                variations.append(StructuredQuery.from_dict(
                    {**facets, "free_text": f"{query.industry} companies in {location}"}
                ))
        return variations
