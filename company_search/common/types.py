"""
Shared data types for the company search pipeline.

CompanyRecord documents are owned by the datastore and travel through the
pipeline as plain dicts; everything the pipeline creates per request
(structured queries, extracted entities, match results, pages) is typed.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from pydantic import BaseModel, Field


class CompanyRecord(TypedDict, total=False):
    """Canonical company document as stored in the `companies` collection."""

    id: str
    name: str
    website: Optional[str]
    domain: Optional[str]
    industry: Optional[str]
    locality: Optional[str]
    region: Optional[str]
    country: Optional[str]
    location: Optional[str]
    size: Optional[str]
    founded: Optional[int]
    linkedin_url: Optional[str]
    enrichment: Optional[str]
    last_enriched: Optional[Any]
    embedding: Optional[List[float]]


# ===== Structured query =====

@dataclass
class StructuredQuery:
    """
    Facets recognized in a free-text search.

    Facets are hints: the database stage treats them as filters, but the
    orchestrator falls back to web search when they exclude everything.
    """

    industry: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    locality: Optional[str] = None
    location: Optional[str] = None
    size: Optional[str] = None
    founded_year: Optional[int] = None
    founded_min: Optional[int] = None
    founded_max: Optional[int] = None
    free_text: Optional[str] = None
    sort: Optional[str] = None
    order: Optional[str] = None

    # Hints that shape ordering, not the result set
    ORDERING_KEYS = ("sort", "order")
    YEAR_KEYS = ("founded_year", "founded_min", "founded_max")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StructuredQuery":
        """Build from a mapping, ignoring keys that are not recognized facets."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known or value is None:
                continue
            if key in cls.YEAR_KEYS:
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    continue
            elif isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Non-empty facets only."""
        return {k: v for k, v in asdict(self).items() if v not in (None, "")}

    def facets(self) -> Dict[str, Any]:
        """Non-empty facets excluding ordering hints."""
        return {k: v for k, v in self.to_dict().items() if k not in self.ORDERING_KEYS}

    def is_empty(self) -> bool:
        return not self.facets()


# ===== Extracted entities (LLM output schema) =====

class SocialLinks(BaseModel):
    """Social profiles found for a company."""

    linkedin: Optional[str] = Field(default=None, description="LinkedIn company page URL")
    twitter: Optional[str] = Field(default=None, description="Twitter/X profile URL")
    facebook: Optional[str] = Field(default=None, description="Facebook page URL")


class ExtractedEntity(BaseModel):
    """A company extracted from web search output. Never persisted directly."""

    name: str = Field(description="Official company name")
    domain: Optional[str] = Field(default=None, description="Primary website domain, e.g. example.com")
    industry: Optional[str] = Field(default=None, description="Primary industry")
    description: Optional[str] = Field(default=None, description="One or two sentence summary")
    location: Optional[str] = Field(default=None, description="Headquarters location as free text")
    size: Optional[str] = Field(default=None, description="Employee count range, e.g. 11-50")
    founding_year: Optional[int] = Field(default=None, description="Year the company was founded")
    specialties: List[str] = Field(default_factory=list, description="Products, services or focus areas")
    revenue: Optional[str] = Field(default=None, description="Revenue or funding information")
    social_links: SocialLinks = Field(default_factory=SocialLinks)
    confidence_score: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Confidence that this is a real company matching the search (0-1)",
    )


class ExtractionOutput(BaseModel):
    """Tool-call schema the extraction LLM must satisfy."""

    companies: List[ExtractedEntity] = Field(
        default_factory=list,
        description="Every distinct company mentioned in the search results",
    )


# ===== Matching =====

class MatchType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"


class MatchField(str, Enum):
    DOMAIN = "domain"
    NAME = "name"
    EMBEDDING = "embedding"


@dataclass
class CompanyMatch:
    """One candidate existing record for an extracted entity."""

    company: Dict[str, Any]
    match_type: MatchType
    match_field: MatchField
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company": self.company,
            "match_type": self.match_type.value,
            "match_field": self.match_field.value,
            "score": round(self.score, 4),
        }


@dataclass
class MatchResult:
    """
    Matches for a single extracted entity.

    Ordered by score descending; exact matches always come first.
    """

    original: ExtractedEntity
    matches: List[CompanyMatch] = field(default_factory=list)

    @property
    def exact_match(self) -> Optional[CompanyMatch]:
        if self.matches and self.matches[0].match_type == MatchType.EXACT:
            return self.matches[0]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original.model_dump(),
            "matches": [m.to_dict() for m in self.matches],
        }


# ===== Pagination =====

@dataclass
class PageResult:
    """One page of a cursor-paginated scan, in canonical sort order."""

    results: List[Dict[str, Any]]
    has_more: bool
    limit: int
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    total: Optional[int] = None
