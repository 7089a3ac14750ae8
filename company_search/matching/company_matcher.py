"""
Company matcher.

Links entities extracted from web search to existing company records.

Per entity:
1. Exact match on normalized domain, then on case-insensitive name. An
   exact hit scores 1.0 and ends matching for that entity.
2. Otherwise, fuzzy match: cosine similarity between the entity's
   embedding and the embeddings of candidates selected by a coarse
   pre-filter (same industry or location). Candidates at or above the
   similarity threshold are kept, best first, up to `max_matches`.

Embedding calls are batched across all entities and all candidates. An
embedding failure leaves only the affected entities without matches.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from company_search.common.config import SearchConfig
from company_search.common.error_handling import InputError
from company_search.common.repositories import CompanyRepositoryInterface
from company_search.common.retry import RetryPolicy
from company_search.common.types import (
    CompanyMatch,
    ExtractedEntity,
    MatchField,
    MatchResult,
    MatchType,
)
from company_search.search.filter_builder import text_predicate

from .embeddings import EmbeddingClient, cosine_similarity

logger = logging.getLogger(__name__)

LOCATION_FIELDS = ("locality", "region", "country")


def _public(company: Dict[str, Any]) -> Dict[str, Any]:
    """Record as exposed in match results (stored vectors stripped)."""
    return {k: v for k, v in company.items() if k != "embedding"}


@dataclass
class MatchingResult:
    matched_companies: List[MatchResult] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched_companies": [m.to_dict() for m in self.matched_companies],
            "meta": self.meta,
        }


def entity_embedding_text(entity: ExtractedEntity) -> str:
    """Canonical text for an extracted entity (name and description first)."""
    parts = [entity.name, entity.description, entity.industry, entity.location, entity.domain]
    return " | ".join(p for p in parts if p)


def candidate_filter(entity: ExtractedEntity) -> Optional[Dict[str, Any]]:
    """
    Coarse pre-filter: same industry (substring) or same location part
    (exact, any of locality/region/country). None when the entity has
    neither, in which case it gets no fuzzy candidates.
    """
    clauses: List[Dict[str, Any]] = []
    if entity.industry and entity.industry.strip():
        clauses.append({"industry": text_predicate(entity.industry)})

    if entity.location:
        for part in entity.location.split(","):
            part = part.strip()
            if len(part) < 2:
                continue
            predicate = text_predicate(f"={part}")
            clauses.extend({f: dict(predicate)} for f in LOCATION_FIELDS)

    if not clauses:
        return None
    return {"$or": clauses}


class CompanyMatcher:
    """Exact-then-fuzzy matching of extracted entities to company records."""

    stage_name = "matching"

    def __init__(
        self,
        repository: CompanyRepositoryInterface,
        embedding_client: Optional[EmbeddingClient] = None,
        config: Optional[SearchConfig] = None,
    ):
        self.repository = repository
        self.config = config or SearchConfig.from_env()
        self.embedding_client = embedding_client or EmbeddingClient(
            batch_size=self.config.embedding_batch_size,
            timeout_seconds=self.config.embedding_timeout_seconds,
            retry_policy=RetryPolicy.from_search_config(self.config),
        )
        self.max_time_ms = int(self.config.db_timeout_seconds * 1000)

    async def match(
        self,
        entities: Sequence[ExtractedEntity],
        max_matches: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
    ) -> MatchingResult:
        """
        Match entities against existing companies.

        Args:
            entities: Extracted entities (non-empty)
            max_matches: Max matches per entity (default from config)
            similarity_threshold: Minimum cosine similarity for fuzzy matches

        Raises:
            InputError: If entities is empty or an option is out of range
        """
        max_matches = self.config.max_matches if max_matches is None else max_matches
        threshold = self.config.similarity_threshold if similarity_threshold is None else similarity_threshold

        if not entities:
            raise InputError("No entities to match", stage=self.stage_name)
        if max_matches < 1:
            raise InputError("max_matches must be at least 1", stage=self.stage_name)
        if not 0.0 <= threshold <= 1.0:
            raise InputError("similarity_threshold must be between 0 and 1", stage=self.stage_name)

        results = [MatchResult(original=entity) for entity in entities]

        for result in results:
            exact = await self._find_exact(result.original)
            if exact is not None:
                result.matches = [exact]

        pending = [r for r in results if not r.matches]
        embedding_failures = 0
        if pending:
            embedding_failures = await self._match_fuzzy(pending, max_matches, threshold)

        exact_count = sum(1 for r in results if r.exact_match is not None)
        fuzzy_count = sum(1 for r in results if r.matches and r.exact_match is None)
        meta = {
            "total_entities": len(results),
            "exact_matches": exact_count,
            "fuzzy_matches": fuzzy_count,
            "no_matches": len(results) - exact_count - fuzzy_count,
            "embedding_failures": embedding_failures,
            "similarity_threshold": threshold,
            "max_matches": max_matches,
            "timestamp": datetime.utcnow().isoformat(),
        }
        logger.info(
            f"Matched {len(results)} entities: {exact_count} exact, "
            f"{fuzzy_count} fuzzy, {meta['no_matches']} unmatched"
        )
        return MatchingResult(matched_companies=results, meta=meta)

    async def _find_exact(self, entity: ExtractedEntity) -> Optional[CompanyMatch]:
        """Domain lookup first, then exact name. Lookup errors fall through to fuzzy."""
        try:
            if entity.domain:
                company = await asyncio.to_thread(
                    self.repository.find_by_domain, entity.domain, max_time_ms=self.max_time_ms
                )
                if company:
                    return CompanyMatch(_public(company), MatchType.EXACT, MatchField.DOMAIN, 1.0)

            company = await asyncio.to_thread(
                self.repository.find_by_exact_name, entity.name, max_time_ms=self.max_time_ms
            )
            if company:
                return CompanyMatch(_public(company), MatchType.EXACT, MatchField.NAME, 1.0)
        except Exception as e:
            logger.warning(f"Exact lookup failed for '{entity.name}': {e}")
        return None

    async def _load_candidates(self, entity: ExtractedEntity) -> List[Dict[str, Any]]:
        filter = candidate_filter(entity)
        if filter is None:
            return []
        try:
            return await asyncio.to_thread(
                self.repository.find,
                filter,
                limit=self.config.candidate_limit,
                max_time_ms=self.max_time_ms,
            )
        except Exception as e:
            logger.warning(f"Candidate lookup failed for '{entity.name}': {e}")
            return []

    async def _match_fuzzy(self, pending: List[MatchResult], max_matches: int, threshold: float) -> int:
        """
        Fill fuzzy matches in place for entities without an exact match.

        Returns:
            Number of entities whose own embedding could not be computed
        """
        vectors = await self.embedding_client.embed_texts(
            [entity_embedding_text(r.original) for r in pending]
        )
        failures = sum(1 for v in vectors if v is None)

        candidates_per_entity: List[List[Dict[str, Any]]] = []
        all_candidates: List[Dict[str, Any]] = []
        for result, vector in zip(pending, vectors):
            candidates = await self._load_candidates(result.original) if vector is not None else []
            candidates_per_entity.append(candidates)
            all_candidates.extend(candidates)

        if not all_candidates:
            return failures

        candidate_vectors = await self.embedding_client.embed_companies(all_candidates)

        for result, vector, candidates in zip(pending, vectors, candidates_per_entity):
            if vector is None:
                continue
            usable = []
            for company in candidates:
                candidate_vector = candidate_vectors.get(company.get("id"))
                if candidate_vector is None:
                    continue
                if candidate_vector.shape != vector.shape:
                    logger.warning(
                        f"Skipping candidate {company['id']} for '{result.original.name}': "
                        f"embedding shape {candidate_vector.shape} != {vector.shape}"
                    )
                    continue
                usable.append(company)
            if not usable:
                continue

            try:
                matrix = np.vstack([candidate_vectors[c["id"]] for c in usable])
                similarities = cosine_similarity(vector, matrix)
            except ValueError as e:
                logger.warning(f"Similarity failed for '{result.original.name}': {e}")
                continue

            scored = [
                (float(score), company)
                for score, company in zip(similarities, usable)
                if float(score) >= threshold
            ]
            scored.sort(key=lambda pair: pair[0], reverse=True)
            result.matches = [
                CompanyMatch(_public(company), MatchType.FUZZY, MatchField.EMBEDDING, score)
                for score, company in scored[:max_matches]
            ]

        return failures
