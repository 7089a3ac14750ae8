"""
Cursor-based pagination over the company collection.

A cursor records the primary sort value and the identity of the row at
a page boundary. The next query resumes strictly after (or, paging
backwards, strictly before) that position using a compound predicate on
(sort value, id), so rows sharing a sort value are neither skipped nor
repeated between pages. Offsets are never used.

Cursors are URL-safe base64 JSON and carry a short signature of the
(filter, sort) pair that produced them; a cursor presented with any other
filter or sort is rejected and the scan restarts from the first page.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING

from company_search.common.cache import hash_payload
from company_search.common.repositories import CompanyRepositoryInterface, SortSpec
from company_search.common.types import PageResult

from .filter_builder import IDENTITY_FIELD

logger = logging.getLogger(__name__)


class CursorError(ValueError):
    """A cursor could not be decoded or belongs to another query."""


@dataclass(frozen=True)
class CursorPosition:
    field: str
    direction: int
    value: Any
    record_id: str


def query_signature(filter: Dict[str, Any], sort: SortSpec) -> str:
    """Short stable fingerprint of a (filter, sort) pair."""
    return hash_payload({"filter": filter, "sort": [list(s) for s in sort]})[:16]


def encode_cursor(record: Dict[str, Any], sort: SortSpec, signature: str) -> str:
    field_name, direction = sort[0]
    payload = {
        "f": field_name,
        "d": direction,
        "v": record.get(field_name),
        "i": record.get(IDENTITY_FIELD),
        "s": signature,
    }
    raw = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str, sort: SortSpec, signature: str) -> CursorPosition:
    """
    Decode a cursor and check it belongs to this (filter, sort) pair.

    Raises:
        CursorError: If the token is malformed or foreign
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise CursorError(f"Malformed cursor: {e}") from e

    if not isinstance(payload, dict) or not {"f", "d", "v", "i", "s"} <= payload.keys():
        raise CursorError("Malformed cursor: missing fields")
    if not isinstance(payload["i"], str) or not payload["i"]:
        raise CursorError("Malformed cursor: missing record id")

    field_name, direction = sort[0]
    if payload["f"] != field_name or payload["d"] != direction or payload["s"] != signature:
        raise CursorError("Cursor was issued for a different filter or sort")

    return CursorPosition(
        field=field_name,
        direction=direction,
        value=payload["v"],
        record_id=payload["i"],
    )


def _after_position(position: CursorPosition, scan_direction: int, id_operator: str) -> Dict[str, Any]:
    """
    Predicate for rows strictly after `position` when scanning the primary
    field in `scan_direction`. Nulls sort first ascending and last
    descending, matching the datastore's ordering.
    """
    field_name, value, record_id = position.field, position.value, position.record_id

    if field_name == IDENTITY_FIELD:
        operator = "$gt" if scan_direction == ASCENDING else "$lt"
        return {IDENTITY_FIELD: {operator: record_id}}

    tie = {field_name: value, IDENTITY_FIELD: {id_operator: record_id}}

    if scan_direction == ASCENDING:
        if value is None:
            beyond = {field_name: {"$ne": None}}
        else:
            beyond = {field_name: {"$gt": value}}
    else:
        if value is None:
            return tie
        beyond = {"$or": [{field_name: {"$lt": value}}, {field_name: None}]}

    return {"$or": [beyond, tie]}


def _combine(base: Dict[str, Any], condition: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not condition:
        return base
    if not base:
        return condition
    return {"$and": [base, condition]}


class CursorPaginator:
    """
    Executes filtered, sorted scans one page at a time.

    `sort` must end in a total order (see build_sort), otherwise rows with
    tied sort values may be skipped between pages.
    """

    def __init__(self, repository: CompanyRepositoryInterface, max_time_ms: Optional[int] = None):
        self.repository = repository
        self.max_time_ms = max_time_ms

    def _decode(self, token: Optional[str], sort: SortSpec, signature: str) -> Optional[CursorPosition]:
        if not token:
            return None
        try:
            return decode_cursor(token, sort, signature)
        except CursorError as e:
            logger.warning(f"Ignoring cursor, restarting from first page: {e}")
            return None

    def page(
        self,
        filter: Dict[str, Any],
        sort: SortSpec,
        limit: int,
        next_cursor: Optional[str] = None,
        prev_cursor: Optional[str] = None,
        include_count: bool = False,
    ) -> PageResult:
        """
        Fetch one page in canonical sort order.

        Args:
            filter: Base MongoDB filter
            sort: Canonical sort, ending in the identity field
            limit: Page size
            next_cursor: Resume after this position (takes precedence)
            prev_cursor: Fetch the page ending just before this position
            include_count: Also count all rows matching `filter`
        """
        signature = query_signature(filter, sort)

        position = self._decode(next_cursor, sort, signature)
        forward = True
        if position is None and not next_cursor and prev_cursor:
            position = self._decode(prev_cursor, sort, signature)
            forward = position is None

        if forward:
            query_sort = list(sort)
        else:
            query_sort = [(f, DESCENDING if d == ASCENDING else ASCENDING) for f, d in sort]

        condition = None
        if position is not None:
            scan_direction = query_sort[0][1]
            condition = _after_position(position, scan_direction, "$gt" if forward else "$lt")

        rows = self.repository.find(
            _combine(filter, condition),
            sort=query_sort,
            limit=limit + 1,
            max_time_ms=self.max_time_ms,
        )

        has_more = len(rows) > limit
        rows = rows[:limit]
        if not forward:
            rows.reverse()

        result = PageResult(results=rows, has_more=has_more, limit=limit)
        if rows:
            if forward:
                if has_more:
                    result.next_cursor = encode_cursor(rows[-1], sort, signature)
                if position is not None:
                    result.prev_cursor = encode_cursor(rows[0], sort, signature)
            else:
                result.next_cursor = encode_cursor(rows[-1], sort, signature)
                if has_more:
                    result.prev_cursor = encode_cursor(rows[0], sort, signature)

        if include_count:
            result.total = self.repository.count_documents(filter, max_time_ms=self.max_time_ms)

        return result


def format_pagination(page: PageResult) -> Dict[str, Any]:
    """Pagination block for the search response."""
    pagination = {
        "limit": page.limit,
        "has_more": page.has_more,
        "next_cursor": page.next_cursor,
        "prev_cursor": page.prev_cursor,
    }
    if page.total is not None:
        pagination["total"] = page.total
    return pagination
