"""
Entity extraction stage.

Converts raw web search blobs into ExtractedEntity records by calling the
LLM with the ExtractionOutput tool schema. A response that does not fit
the schema fails the stage; nothing is coerced. Extracted entities are
deduplicated (see company_search.common.dedupe) and cached by a hash of
the input blobs, so the same raw content always maps to the same entities.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Union

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from company_search.common.cache import build_content_key
from company_search.common.dedupe import dedupe_entities
from company_search.common.error_handling import InputError, PermanentUpstreamError
from company_search.common.stage_base import LLMStage
from company_search.common.types import ExtractedEntity, ExtractionOutput

from .prompts import EXTRACTION_SYSTEM_PROMPT, build_extraction_prompt
from .web_search import WebSearchResult

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    companies: List[ExtractedEntity] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "companies": [c.model_dump() for c in self.companies],
            "meta": self.meta,
        }


def _raw_companies(raw: Union[WebSearchResult, Mapping[str, Any]]) -> List[Dict[str, Any]]:
    if isinstance(raw, WebSearchResult):
        return raw.companies
    if not isinstance(raw, Mapping):
        raise InputError("Raw search result must be a mapping with a 'companies' array", stage="entity_extraction")
    companies = raw.get("companies")
    if not isinstance(companies, list):
        raise InputError("Raw search result has no 'companies' array", stage="entity_extraction")
    return companies


class EntityExtractor(LLMStage):
    """Schema-constrained extraction of company entities."""

    stage_name = "entity_extraction"

    async def extract(self, raw: Union[WebSearchResult, Mapping[str, Any]]) -> ExtractionResult:
        """
        Extract and deduplicate company entities from raw search output.

        Raises:
            InputError: If `raw` has no companies array (not retried)
            PermanentUpstreamError: If the LLM output violates the schema
            TransientUpstreamError: 429/5xx persisted through every retry
            StageTimeoutError: An attempt exceeded the LLM timeout
        """
        companies = _raw_companies(raw)
        if not companies:
            return ExtractionResult(meta=self._meta(0, 0, 0, cached=False))

        cache_key = build_content_key("entity_extraction", companies)
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info(f"Using cached extraction for {len(companies)} raw companies")
                entities = [ExtractedEntity.model_validate(c) for c in cached.get("companies", [])]
                meta = dict(cached.get("meta") or {})
                meta["cached"] = True
                return ExtractionResult(companies=entities, meta=meta)

        extracted = await self._extract_with_llm(companies)
        unique = dedupe_entities(extracted)
        logger.info(
            f"Extracted {len(extracted)} entities from {len(companies)} raw companies "
            f"({len(unique)} after deduplication)"
        )

        result = ExtractionResult(
            companies=unique,
            meta=self._meta(len(companies), len(extracted), len(unique), cached=False),
        )
        if self.cache is not None:
            self.cache.put(cache_key, result.to_dict(), self.config.extraction_ttl)
        return result

    async def _extract_with_llm(self, companies: List[Dict[str, Any]]) -> List[ExtractedEntity]:
        structured_llm = self.llm.with_structured_output(ExtractionOutput, method="function_calling")
        messages = [
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
            HumanMessage(content=build_extraction_prompt(companies)),
        ]
        result = await self._invoke(structured_llm, messages, name="entity extraction LLM call")

        # Schema violations surface as PermanentUpstreamError and are not retried
        output = result.unwrap()

        if isinstance(output, dict):
            try:
                output = ExtractionOutput.model_validate(output)
            except ValidationError as e:
                raise PermanentUpstreamError(
                    f"Extraction output does not match schema: {e}", stage=self.stage_name
                ) from e
        if not isinstance(output, ExtractionOutput):
            raise PermanentUpstreamError(
                f"Extraction returned {type(output).__name__}, expected ExtractionOutput",
                stage=self.stage_name,
            )
        return list(output.companies)

    @staticmethod
    def _meta(input_count: int, extracted: int, unique: int, cached: bool) -> Dict[str, Any]:
        return {
            "input_count": input_count,
            "extracted_count": extracted,
            "deduplicated_count": unique,
            "cached": cached,
            "timestamp": datetime.utcnow().isoformat(),
        }
