"""
Unit tests for company_search.search.filter_builder.

Covers facet-to-predicate mapping, clause combination and the
deterministic sort specification.
"""

import re

import pytest

from company_search.common.types import StructuredQuery
from company_search.search.filter_builder import (
    build_filter,
    build_sort,
    resolve_sort_field,
    text_predicate,
)


class TestTextPredicate:
    """Tests for substring / exact text predicates."""

    def test_substring_is_case_insensitive_regex(self):
        assert text_predicate("fin") == {"$regex": "fin", "$options": "i"}

    def test_regex_metacharacters_are_escaped(self):
        predicate = text_predicate("C++ (tools)")
        assert re.search(predicate["$regex"], "Acme C++ (tools) GmbH")
        assert not re.search(predicate["$regex"], "CCC tools")

    def test_equals_prefix_means_exact_match(self):
        assert text_predicate("=Berlin") == {"$regex": "^Berlin$", "$options": "i"}

    def test_surrounding_whitespace_is_ignored(self):
        assert text_predicate("  = Berlin ") == {"$regex": "^Berlin$", "$options": "i"}


class TestBuildFilter:
    """Tests for build_filter()."""

    def test_empty_query_matches_everything(self):
        assert build_filter(StructuredQuery()) == {}
        assert build_filter(None) == {}

    def test_single_facet_is_not_wrapped(self):
        assert build_filter(StructuredQuery(industry="fintech")) == {
            "industry": {"$regex": "fintech", "$options": "i"}
        }

    def test_multiple_facets_are_anded(self):
        result = build_filter(StructuredQuery(industry="fintech", locality="Berlin"))

        assert "$and" in result
        assert {"industry": {"$regex": "fintech", "$options": "i"}} in result["$and"]
        assert {"locality": {"$regex": "Berlin", "$options": "i"}} in result["$and"]

    def test_location_is_disjunction_over_location_fields(self):
        result = build_filter(StructuredQuery(location="Bavaria"))

        assert result == {
            "$or": [
                {"locality": {"$regex": "Bavaria", "$options": "i"}},
                {"region": {"$regex": "Bavaria", "$options": "i"}},
                {"country": {"$regex": "Bavaria", "$options": "i"}},
            ]
        }

    def test_founded_year_is_equality(self):
        assert build_filter(StructuredQuery(founded_year=2015)) == {"founded": 2015}

    def test_founded_range_combines_bounds(self):
        result = build_filter(StructuredQuery(founded_min=2010, founded_max=2020))
        assert result == {"founded": {"$gte": 2010, "$lte": 2020}}

    def test_free_text_uses_text_index(self):
        result = build_filter(StructuredQuery(free_text="  payments  "))
        assert result == {"$text": {"$search": "payments"}}

    def test_accepts_plain_mapping(self):
        result = build_filter({"country": "Germany", "unknown_key": "ignored"})
        assert result == {"country": {"$regex": "Germany", "$options": "i"}}

    def test_sort_hints_do_not_filter(self):
        assert build_filter(StructuredQuery(sort="founded", order="desc")) == {}


class TestBuildSort:
    """Tests for sort resolution."""

    def test_default_is_name_then_id(self):
        assert build_sort() == [("name", 1), ("id", 1)]

    def test_descending_keeps_identity_ascending(self):
        assert build_sort("founded", "desc") == [("founded", -1), ("id", 1)]

    def test_identity_sort_has_no_tiebreak(self):
        assert build_sort("id", "desc") == [("id", -1)]

    @pytest.mark.parametrize("requested,expected", [
        ("relevance", "name"),
        ("founded_year", "founded"),
        ("_id", "id"),
        ("not_a_field", "name"),
        (None, "name"),
        ("industry", "industry"),
    ])
    def test_resolve_sort_field(self, requested, expected):
        assert resolve_sort_field(requested) == expected
