"""
In-memory company repository for unit tests.

Evaluates the subset of MongoDB query language the search stages emit
($and, $or, $gt, $gte, $lt, $lte, $ne, $in, $nin, $regex/$options, $text,
equality) and sorts the way MongoDB does for the values tests use: null
and missing values order before everything else ascending and after
everything else descending.
"""

import copy
import re
from typing import Any, Dict, List, Optional

from company_search.common.repositories import CompanyRepositoryInterface, SortSpec

TEXT_FIELDS = ("name", "industry", "locality", "region", "country")


def _compare(op: str, value: Any, arg: Any) -> bool:
    if value is None or arg is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    return value <= arg


def _match_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict) or not any(k.startswith("$") for k in condition):
        if condition is None:
            return value is None
        return value == condition

    for op, arg in condition.items():
        if op in ("$gt", "$gte", "$lt", "$lte"):
            if not _compare(op, value, arg):
                return False
        elif op == "$ne":
            if value == arg:
                return False
        elif op == "$in":
            if value not in arg:
                return False
        elif op == "$nin":
            if value in arg:
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(arg, value, flags):
                return False
        elif op == "$options":
            continue
        else:
            raise NotImplementedError(f"Operator {op} not supported by FakeCompanyRepository")
    return True


def matches(doc: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$text":
            terms = condition["$search"].lower().split()
            haystack = " ".join(str(doc.get(f) or "") for f in TEXT_FIELDS).lower()
            if not any(term in haystack for term in terms):
                return False
        else:
            if not _match_condition(doc.get(key), condition):
                return False
    return True


def _sort_key(field_name: str):
    def key(doc):
        value = doc.get(field_name)
        return (value is not None, value if value is not None else 0)
    return key


class FakeCompanyRepository(CompanyRepositoryInterface):
    """Company store backed by a list of dicts; records every find call."""

    def __init__(self, companies: Optional[List[Dict[str, Any]]] = None):
        self.companies = [dict(c) for c in (companies or [])]
        self.find_calls: List[Dict[str, Any]] = []

    def find(
        self,
        filter: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        projection: Optional[Dict[str, Any]] = None,
        max_time_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self.find_calls.append({"filter": filter, "sort": sort, "limit": limit})
        docs = [c for c in self.companies if matches(c, filter)]
        for field_name, direction in reversed(sort or []):
            docs.sort(key=_sort_key(field_name), reverse=direction < 0)
        if limit > 0:
            docs = docs[:limit]
        return [copy.deepcopy(d) for d in docs]

    def find_one(self, filter: Dict[str, Any], max_time_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
        for company in self.companies:
            if matches(company, filter):
                return copy.deepcopy(company)
        return None

    def count_documents(self, filter: Dict[str, Any], max_time_ms: Optional[int] = None) -> int:
        return sum(1 for c in self.companies if matches(c, filter))

    def aggregate(self, pipeline: List[Dict[str, Any]], max_time_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = list(self.companies)
        for stage in pipeline:
            if "$match" not in stage:
                raise NotImplementedError(f"Stage {list(stage)} not supported by FakeCompanyRepository")
            docs = [d for d in docs if matches(d, stage["$match"])]
        return [copy.deepcopy(d) for d in docs]

    def ensure_indexes(self) -> List[str]:
        return []
