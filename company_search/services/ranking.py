"""
Result fusion and ranking for unified search.

Fusion folds matcher output into the database page:
- exact match: the DB record gets any field it lacks from the extracted
  entity and is flagged `enriched_from_web`
- no match: the extracted entity is appended, flagged `web_discovered`
- fuzzy-only matches are left out (the entity probably exists already,
  but not confidently enough to enrich a record with it)

Ranking is a weighted sum of simple signals; weights are configurable and
ties keep insertion order.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from company_search.common.types import ExtractedEntity, MatchResult, StructuredQuery

# (entity attribute, record field); social links are flattened
ENRICHMENT_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("domain", "domain"),
    ("industry", "industry"),
    ("description", "description"),
    ("location", "location"),
    ("size", "size"),
    ("founding_year", "founded"),
    ("specialties", "specialties"),
    ("revenue", "revenue"),
    ("social_links.linkedin", "linkedin_url"),
    ("social_links.twitter", "twitter_url"),
    ("social_links.facebook", "facebook_url"),
)


@dataclass(frozen=True)
class RankingWeights:
    web_discovered: float = 20
    enriched_from_web: float = 10
    name_term: float = 5
    industry: float = 15
    locality: float = 10
    region: float = 8
    country: float = 5


def _entity_value(entity: ExtractedEntity, path: str) -> Any:
    value: Any = entity
    for part in path.split("."):
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def enrich_record(record: Dict[str, Any], entity: ExtractedEntity) -> Dict[str, Any]:
    """Fill fields the record lacks from the entity; set values are kept."""
    for source, target in ENRICHMENT_FIELD_MAP:
        value = _entity_value(entity, source)
        if _is_empty(record.get(target)) and not _is_empty(value):
            record[target] = copy.deepcopy(value)
    record["enriched_from_web"] = True
    return record


def web_discovered_record(entity: ExtractedEntity) -> Dict[str, Any]:
    record = entity.model_dump()
    record["web_discovered"] = True
    record["source"] = "web"
    return record


def fuse_results(db_results: Sequence[Dict[str, Any]], matches: Sequence[MatchResult]) -> List[Dict[str, Any]]:
    """
    Merge the DB page with matcher output.

    DB records are copied, never mutated. An exact match whose record is
    not on the current page is appended (enriched) so it is not lost.
    """
    fused = [copy.deepcopy(r) for r in db_results]
    by_key: Dict[str, Dict[str, Any]] = {}

    def index(record: Dict[str, Any]) -> None:
        if record.get("id"):
            by_key[f"id:{record['id']}"] = record
        if record.get("name"):
            by_key.setdefault(f"name:{record['name'].strip().lower()}", record)

    for record in fused:
        index(record)

    for match in matches:
        exact = match.exact_match
        if exact is not None:
            company = exact.company
            target = by_key.get(f"id:{company.get('id')}") or by_key.get(
                f"name:{(company.get('name') or '').strip().lower()}"
            )
            if target is None:
                target = copy.deepcopy(company)
                fused.append(target)
                index(target)
            enrich_record(target, match.original)
        elif not match.matches:
            fused.append(web_discovered_record(match.original))

    return fused


def _location_text(record: Dict[str, Any]) -> str:
    parts = [record.get("location"), record.get("locality"), record.get("region"), record.get("country")]
    return " ".join(str(p) for p in parts if p).lower()


def relevance_score(
    record: Dict[str, Any],
    query_text: str,
    parsed: StructuredQuery,
    weights: RankingWeights,
) -> float:
    score = 0.0
    if record.get("web_discovered"):
        score += weights.web_discovered
    if record.get("enriched_from_web"):
        score += weights.enriched_from_web

    name = (record.get("name") or "").lower()
    if name and query_text:
        name_terms = name.split()
        query_terms = query_text.lower().split()
        overlap = sum(1 for term in query_terms if any(term in n for n in name_terms))
        score += overlap * weights.name_term

    industry = (record.get("industry") or "").lower()
    if industry and parsed.industry and parsed.industry.lower() in industry:
        score += weights.industry

    location = _location_text(record)
    if location:
        if parsed.locality and parsed.locality.lower() in location:
            score += weights.locality
        if parsed.region and parsed.region.lower() in location:
            score += weights.region
        if parsed.country and parsed.country.lower() in location:
            score += weights.country

    return score


def rank_results(
    records: Sequence[Dict[str, Any]],
    query_text: str,
    parsed: Optional[StructuredQuery] = None,
    weights: Optional[RankingWeights] = None,
) -> List[Dict[str, Any]]:
    """
    Order records by relevance score, highest first.

    Each record gets a `relevance_score`; equal scores keep input order.
    """
    parsed = parsed or StructuredQuery()
    weights = weights or RankingWeights()

    for record in records:
        record["relevance_score"] = relevance_score(record, query_text, parsed, weights)
    return sorted(records, key=lambda r: r["relevance_score"], reverse=True)
