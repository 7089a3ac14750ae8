"""
Filter and sort construction for company searches.

Maps StructuredQuery facets onto MongoDB predicates:

    industry, country, region, locality, size
        case-insensitive substring (regex-escaped); a value starting
        with "=" is a case-insensitive exact match instead
    location      substring on any of locality / region / country
    founded_year  equality on `founded`
    founded_min   `founded` >= value
    founded_max   `founded` <= value
    free_text     datastore text index ($text)

Unknown keys are ignored here; input validation happens upstream.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pymongo import ASCENDING, DESCENDING

from company_search.common.types import StructuredQuery

IDENTITY_FIELD = "id"
DEFAULT_SORT_FIELD = "name"

SUBSTRING_FACETS = {
    "industry": "industry",
    "country": "country",
    "region": "region",
    "locality": "locality",
    "size": "size",
}

LOCATION_FIELDS = ("locality", "region", "country")

SORTABLE_FIELDS = {"name", "founded", "industry", "country", "size", IDENTITY_FIELD}

# Text score is not stable under cursor paging, so relevance scans by name
SORT_ALIASES = {
    "founded_year": "founded",
    "relevance": DEFAULT_SORT_FIELD,
    "score": DEFAULT_SORT_FIELD,
    "_id": IDENTITY_FIELD,
}


def text_predicate(value: str) -> Dict[str, str]:
    """
    Case-insensitive substring predicate, or exact match for "=value".

    Examples:
        >>> text_predicate("fin")
        {'$regex': 'fin', '$options': 'i'}
        >>> text_predicate("=Fintech")
        {'$regex': '^Fintech$', '$options': 'i'}
    """
    value = value.strip()
    if value.startswith("="):
        return {"$regex": f"^{re.escape(value[1:].strip())}$", "$options": "i"}
    return {"$regex": re.escape(value), "$options": "i"}


def build_filter(query: Union[StructuredQuery, Mapping[str, Any], None]) -> Dict[str, Any]:
    """
    Build a MongoDB filter from structured query facets.

    Returns an empty filter (match all) when no facet is set.
    """
    if not isinstance(query, StructuredQuery):
        query = StructuredQuery.from_dict(dict(query or {}))

    clauses: List[Dict[str, Any]] = []

    for facet, field_name in SUBSTRING_FACETS.items():
        value = getattr(query, facet)
        if isinstance(value, str) and value.strip():
            clauses.append({field_name: text_predicate(value)})

    if query.location and query.location.strip():
        predicate = text_predicate(query.location)
        clauses.append({"$or": [{f: dict(predicate)} for f in LOCATION_FIELDS]})

    if query.founded_year is not None:
        clauses.append({"founded": query.founded_year})

    founded_range: Dict[str, int] = {}
    if query.founded_min is not None:
        founded_range["$gte"] = query.founded_min
    if query.founded_max is not None:
        founded_range["$lte"] = query.founded_max
    if founded_range:
        clauses.append({"founded": founded_range})

    if query.free_text and query.free_text.strip():
        clauses.append({"$text": {"$search": query.free_text.strip()}})

    if not clauses:
        return {}
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def resolve_sort_field(sort: Optional[str]) -> str:
    if not sort:
        return DEFAULT_SORT_FIELD
    key = sort.strip()
    key = SORT_ALIASES.get(key, key)
    return key if key in SORTABLE_FIELDS else DEFAULT_SORT_FIELD


def build_sort(sort: Optional[str] = None, order: Optional[str] = None) -> List[Tuple[str, int]]:
    """
    Build a sort specification with a deterministic total order.

    The identity field is appended ascending whenever it is not already
    the primary key, so records with equal sort values keep a stable order.

    Examples:
        >>> build_sort("founded", "desc")
        [('founded', -1), ('id', 1)]
        >>> build_sort("id")
        [('id', 1)]
    """
    field_name = resolve_sort_field(sort)
    direction = DESCENDING if (order or "").lower() == "desc" else ASCENDING

    spec = [(field_name, direction)]
    if field_name != IDENTITY_FIELD:
        spec.append((IDENTITY_FIELD, ASCENDING))
    return spec
