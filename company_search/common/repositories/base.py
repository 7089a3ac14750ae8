"""
Repository Interface Definitions

Defines the abstract interface for company datastore reads. Stages depend
on this interface only, so the MongoDB implementation can be swapped for
an in-memory one in tests.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from company_search.common.dedupe import normalize_domain

SortSpec = List[Tuple[str, int]]


class CompanyRepositoryInterface(ABC):
    """
    Abstract interface for the `companies` collection.

    Implementations:
    - AtlasCompanyRepository: MongoDB via pymongo

    Documents are returned without the datastore's internal `_id`; the
    stable `id` field is the record identity. All methods follow
    fail-fast semantics: datastore errors propagate to the caller.
    """

    @abstractmethod
    def find(
        self,
        filter: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        projection: Optional[Dict[str, Any]] = None,
        max_time_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Find company documents.

        Args:
            filter: MongoDB query filter
            sort: Ordered (field, direction) pairs
            limit: Maximum documents to return (0 = no limit)
            projection: Fields to include/exclude
            max_time_ms: Server-side time limit for the query
        """
        pass

    @abstractmethod
    def find_one(
        self,
        filter: Dict[str, Any],
        max_time_ms: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def count_documents(self, filter: Dict[str, Any], max_time_ms: Optional[int] = None) -> int:
        pass

    @abstractmethod
    def aggregate(
        self,
        pipeline: List[Dict[str, Any]],
        max_time_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def ensure_indexes(self) -> List[str]:
        """Create the indexes search relies on; returns their names."""
        pass

    # ===== Lookups shared by every implementation =====

    def find_by_domain(self, domain: str, max_time_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Find a company by normalized domain.

        Tries the bare and `www.` forms against `domain` and `website`,
        then any website URL on that host.
        """
        host = normalize_domain(domain)
        if not host:
            return None

        variants = [host, f"www.{host}"]
        company = self.find_one(
            {"$or": [{"domain": {"$in": variants}}, {"website": {"$in": variants}}]},
            max_time_ms=max_time_ms,
        )
        if company:
            return company

        pattern = rf"^(https?://)?(www\.)?{re.escape(host)}(/.*)?$"
        return self.find_one(
            {"website": {"$regex": pattern, "$options": "i"}},
            max_time_ms=max_time_ms,
        )

    def find_by_exact_name(self, name: str, max_time_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Find a company whose name equals `name`, ignoring case."""
        cleaned = (name or "").strip()
        if not cleaned:
            return None
        return self.find_one(
            {"name": {"$regex": f"^{re.escape(cleaned)}$", "$options": "i"}},
            max_time_ms=max_time_ms,
        )

    def find_by_ids(self, ids: Sequence[str], max_time_ms: Optional[int] = None) -> List[Dict[str, Any]]:
        """Fetch companies by identity, preserving the order of `ids`."""
        wanted = [i for i in ids if i]
        if not wanted:
            return []
        found = self.find({"id": {"$in": wanted}}, max_time_ms=max_time_ms)
        by_id = {doc.get("id"): doc for doc in found}
        return [by_id[i] for i in wanted if i in by_id]
