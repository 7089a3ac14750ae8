"""
Prompts for the web search and entity extraction stages.
"""

import json
from typing import Any, Dict, List

from company_search.common.types import StructuredQuery

WEB_SEARCH_SYSTEM_PROMPT = """You are a research assistant that finds real companies matching specific criteria.

Search the web for companies that match the request. For every company you find, report
what the sources say: name, website domain, industry, headquarters location, size,
founding year, and a short description of what it does.

Only report companies you found evidence for. Do not invent companies or details.

Respond with a JSON object of the form:
{"companies": [{"name": "...", "domain": "...", "industry": "...", "location": "...",
"size": "...", "founded": "...", "description": "..."}]}"""


EXTRACTION_SYSTEM_PROMPT = """You extract structured company records from raw web search results.

Rules:
- One record per distinct real company; merge information about the same company.
- `domain` is the bare website host (example.com), never a full URL.
- Leave a field empty when the input does not support it. Never guess.
- `specialties` lists concrete products, services or focus areas.
- `confidence_score` (0-1) is how confident you are that the record describes a real
  company matching the original search."""


def build_web_search_prompt(query: StructuredQuery) -> str:
    """
    Turn structured facets into a search request.

    Example:
        StructuredQuery(industry="fintech", locality="Berlin", free_text="startups")
        -> "Find startups companies. Industry: fintech. Location: Berlin."
    """
    parts: List[str] = []
    subject = query.free_text or "companies"
    if "compan" not in subject.lower():
        subject = f"{subject} companies"
    parts.append(f"Find {subject}.")

    if query.industry:
        parts.append(f"Industry: {query.industry}.")

    location = ", ".join(
        v for v in (query.locality, query.region, query.country, query.location) if v
    )
    if location:
        parts.append(f"Location: {location}.")
    if query.size:
        parts.append(f"Company size: {query.size} employees.")
    if query.founded_year:
        parts.append(f"Founded in {query.founded_year}.")
    elif query.founded_min or query.founded_max:
        low = query.founded_min or "any year"
        high = query.founded_max or "today"
        parts.append(f"Founded between {low} and {high}.")

    return " ".join(parts)


def build_extraction_prompt(companies: List[Dict[str, Any]]) -> str:
    payload = json.dumps(companies, ensure_ascii=False, indent=2, default=str)
    return (
        f"Extract structured company records from these {len(companies)} raw search results:\n\n"
        f"{payload}"
    )
