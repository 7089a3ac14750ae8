"""
Database search stage.

Runs the filter/sort builder and the cursor paginator against the company
repository under a hard timeout. pymongo is synchronous, so queries run
in a worker thread; the deadline is enforced twice, server-side with
`max_time_ms` and client-side with `asyncio.wait_for`.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from pymongo.errors import ExecutionTimeout, NetworkTimeout

from company_search.common.config import SearchConfig
from company_search.common.error_handling import StageTimeoutError
from company_search.common.repositories import CompanyRepositoryInterface
from company_search.common.types import PageResult, StructuredQuery

from .filter_builder import build_filter, build_sort
from .pagination import CursorPaginator

logger = logging.getLogger(__name__)

DEFAULT_FACET_FIELDS = ("industry", "country", "size")


@dataclass
class PageOptions:
    """Caller paging options; sort/order override the parser's hints."""

    limit: int = 20
    next_cursor: Optional[str] = None
    prev_cursor: Optional[str] = None
    sort: Optional[str] = None
    order: Optional[str] = None
    include_count: bool = False


@dataclass
class DatabaseSearchResult:
    results: List[Dict[str, Any]]
    pagination: PageResult
    filter: Dict[str, Any] = field(default_factory=dict)


class DatabaseSearchStage:
    """Structured search over the primary company store."""

    stage_name = "db_search"

    def __init__(
        self,
        repository: CompanyRepositoryInterface,
        config: Optional[SearchConfig] = None,
    ):
        self.repository = repository
        self.config = config or SearchConfig.from_env()
        self.max_time_ms = int(self.config.db_timeout_seconds * 1000)
        self.paginator = CursorPaginator(repository, max_time_ms=self.max_time_ms)

    async def _run_bounded(self, func, *args, **kwargs):
        """Run a blocking repository call in a thread under the stage deadline."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.config.db_timeout_seconds,
            )
        except (asyncio.TimeoutError, ExecutionTimeout, NetworkTimeout) as e:
            raise StageTimeoutError(
                f"Database query exceeded {self.config.db_timeout_seconds}s",
                stage=self.stage_name,
            ) from e

    async def search(
        self,
        query: StructuredQuery,
        page_options: Optional[PageOptions] = None,
    ) -> DatabaseSearchResult:
        """
        Run a filtered, cursor-paginated search.

        Raises:
            StageTimeoutError: If the query exceeds the configured deadline
        """
        options = page_options or PageOptions(limit=self.config.default_limit)
        limit = self.config.clamp_limit(options.limit)

        filter = build_filter(query)
        sort = build_sort(options.sort or query.sort, options.order or query.order)
        logger.debug(f"DB search filter={filter} sort={sort} limit={limit}")

        page = await self._run_bounded(
            self.paginator.page,
            filter,
            sort,
            limit,
            next_cursor=options.next_cursor,
            prev_cursor=options.prev_cursor,
            include_count=options.include_count,
        )
        logger.info(f"DB search returned {len(page.results)} companies (has_more={page.has_more})")
        return DatabaseSearchResult(results=page.results, pagination=page, filter=filter)

    async def find_by_ids(self, ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Direct lookup by record identity, bypassing filters."""
        return await self._run_bounded(self.repository.find_by_ids, list(ids), max_time_ms=self.max_time_ms)

    async def facet_counts(
        self,
        query: StructuredQuery,
        fields: Sequence[str] = DEFAULT_FACET_FIELDS,
        top: int = 10,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Count matching companies per value of each facet field.

        Returns:
            {"industry": [{"value": "Fintech", "count": 12}, ...], ...}
        """
        facet_stage = {
            name: [
                {"$match": {name: {"$nin": [None, ""]}}},
                {"$group": {"_id": f"${name}", "count": {"$sum": 1}}},
                {"$sort": {"count": -1, "_id": 1}},
                {"$limit": top},
            ]
            for name in fields
        }
        pipeline = [{"$match": build_filter(query)}, {"$facet": facet_stage}]

        rows = await self._run_bounded(self.repository.aggregate, pipeline, max_time_ms=self.max_time_ms)
        facets = rows[0] if rows else {}
        return {
            name: [{"value": b["_id"], "count": b["count"]} for b in facets.get(name, [])]
            for name in fields
        }
