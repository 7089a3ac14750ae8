"""
Unified Deduplication Module

Single source of truth for company identity keys and for merging
duplicate entities extracted from web search output.

Usage:
    from company_search.common.dedupe import dedupe_entities, normalize_domain

    normalize_domain("https://www.PayFlow.io/about")
    # Result: "payflow.io"

    unique = dedupe_entities(extracted)  # merged, first-seen order
"""

import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

from company_search.common.types import ExtractedEntity, SocialLinks

# Scalar fields merged by "first non-empty value wins"
MERGE_SCALAR_FIELDS = (
    "domain",
    "industry",
    "description",
    "location",
    "size",
    "founding_year",
    "revenue",
)

SOCIAL_LINK_FIELDS = ("linkedin", "twitter", "facebook")


def normalize_domain(value: Optional[str]) -> str:
    """
    Normalize a domain or URL to a bare lowercase host.

    Examples:
        >>> normalize_domain("https://www.Example.com/path")
        'example.com'
        >>> normalize_domain("EXAMPLE.com.")
        'example.com'
        >>> normalize_domain(None)
        ''
    """
    if not value:
        return ""
    text = value.strip().lower()
    if "://" not in text:
        text = f"http://{text}"
    host = urlparse(text).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host.rstrip(".")


def normalize_name(value: Optional[str]) -> str:
    """
    Case-insensitive name key: lowercase with collapsed whitespace.

    Punctuation is kept because "A&B" and "AB" are different companies.
    """
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip().lower())


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def merge_entities(primary: ExtractedEntity, secondary: ExtractedEntity) -> ExtractedEntity:
    """
    Merge two records of the same company without overwriting set values.

    `primary` wins every conflict. Specialties are unioned in order
    (case-insensitive), social links are filled per network.
    Neither input is mutated.
    """
    updates = {}
    for field_name in MERGE_SCALAR_FIELDS:
        if _is_empty(getattr(primary, field_name)) and not _is_empty(getattr(secondary, field_name)):
            updates[field_name] = getattr(secondary, field_name)

    specialties = list(primary.specialties)
    seen = {s.strip().lower() for s in specialties}
    for specialty in secondary.specialties:
        key = specialty.strip().lower()
        if key and key not in seen:
            seen.add(key)
            specialties.append(specialty)
    updates["specialties"] = specialties

    links = {}
    for network in SOCIAL_LINK_FIELDS:
        ours = getattr(primary.social_links, network)
        theirs = getattr(secondary.social_links, network)
        links[network] = theirs if _is_empty(ours) and not _is_empty(theirs) else ours
    updates["social_links"] = SocialLinks(**links)

    return primary.model_copy(update=updates, deep=True)


def dedupe_entities(entities: List[ExtractedEntity]) -> List[ExtractedEntity]:
    """
    Collapse duplicate companies.

    Entities with a domain are keyed by normalized domain; the first one
    seen keeps its values and later ones only fill gaps. Entities without
    a domain are then merged by case-insensitive name into whichever
    entity already carries that name. Output order is domain-bearing
    entities first, then domainless ones, each in first-seen order, so
    running this twice is a no-op.
    """
    merged: List[ExtractedEntity] = []
    by_domain: Dict[str, int] = {}
    by_name: Dict[str, int] = {}

    for entity in entities:
        domain_key = normalize_domain(entity.domain)
        if not domain_key:
            continue
        if domain_key in by_domain:
            index = by_domain[domain_key]
            merged[index] = merge_entities(merged[index], entity)
            continue
        by_domain[domain_key] = len(merged)
        by_name.setdefault(normalize_name(entity.name), len(merged))
        merged.append(entity.model_copy(deep=True))

    for entity in entities:
        if normalize_domain(entity.domain):
            continue
        name_key = normalize_name(entity.name)
        if name_key in by_name:
            index = by_name[name_key]
            merged[index] = merge_entities(merged[index], entity)
            continue
        by_name[name_key] = len(merged)
        merged.append(entity.model_copy(deep=True))

    return merged
