"""
Atlas Company Repository

MongoDB implementation of the company datastore interface.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, TEXT, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from .base import CompanyRepositoryInterface, SortSpec

logger = logging.getLogger(__name__)

# Internal ObjectId never leaves the repository
DEFAULT_PROJECTION = {"_id": 0}


class AtlasCompanyRepository(CompanyRepositoryInterface):
    """
    Repository over the `companies` collection.

    Connection Management:
    - Uses singleton MongoClient for connection pooling
    - Client is created once and reused across requests
    - PyMongo handles connection pool internally

    Error Handling:
    - Fail-fast: All errors propagate to caller
    - Query timeouts surface as pymongo.errors.ExecutionTimeout
    """

    _client: Optional[MongoClient] = None
    _db: Optional[Database] = None
    _collection: Optional[Collection] = None

    def __init__(
        self,
        mongodb_uri: str,
        database: str = "company_search",
        collection: str = "companies",
    ):
        self._mongodb_uri = mongodb_uri
        self._database_name = database
        self._collection_name = collection

    def _get_collection(self) -> Collection:
        """
        Get the MongoDB collection, creating client if needed.

        Uses class-level singleton for connection pooling.
        """
        if AtlasCompanyRepository._collection is None:
            AtlasCompanyRepository._client = MongoClient(self._mongodb_uri)
            AtlasCompanyRepository._db = AtlasCompanyRepository._client[self._database_name]
            AtlasCompanyRepository._collection = AtlasCompanyRepository._db[self._collection_name]
            logger.info(
                f"Company repository connected: {self._database_name}.{self._collection_name}"
            )
        return AtlasCompanyRepository._collection

    @staticmethod
    def _projection(projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not projection:
            return dict(DEFAULT_PROJECTION)
        merged = dict(projection)
        merged["_id"] = 0
        return merged

    def find(
        self,
        filter: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        projection: Optional[Dict[str, Any]] = None,
        max_time_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        collection = self._get_collection()
        cursor = collection.find(filter, self._projection(projection))

        if sort:
            cursor = cursor.sort(sort)
        if limit > 0:
            cursor = cursor.limit(limit)
        if max_time_ms:
            cursor = cursor.max_time_ms(max_time_ms)

        return list(cursor)

    def find_one(
        self,
        filter: Dict[str, Any],
        max_time_ms: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        collection = self._get_collection()
        kwargs = {"max_time_ms": max_time_ms} if max_time_ms else {}
        return collection.find_one(filter, self._projection(None), **kwargs)

    def count_documents(self, filter: Dict[str, Any], max_time_ms: Optional[int] = None) -> int:
        collection = self._get_collection()
        kwargs = {"maxTimeMS": max_time_ms} if max_time_ms else {}
        return collection.count_documents(filter, **kwargs)

    def aggregate(
        self,
        pipeline: List[Dict[str, Any]],
        max_time_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        collection = self._get_collection()
        kwargs = {"maxTimeMS": max_time_ms} if max_time_ms else {}
        return list(collection.aggregate(pipeline, **kwargs))

    def ensure_indexes(self) -> List[str]:
        """
        Create search indexes (idempotent).

        - id: unique record identity, also the sort tie-break
        - (industry, country): facet filters and the matcher's pre-filter
        - (name, id): default sort with a total order
        - website / domain: exact-match lookups
        - text index: free-text search
        """
        collection = self._get_collection()
        created = [
            collection.create_index([("id", ASCENDING)], unique=True, name="id_unique"),
            collection.create_index(
                [("industry", ASCENDING), ("country", ASCENDING)],
                name="industry_country",
            ),
            collection.create_index([("name", ASCENDING), ("id", ASCENDING)], name="name_id"),
            collection.create_index([("founded", ASCENDING), ("id", ASCENDING)], name="founded_id"),
            collection.create_index([("website", ASCENDING)], name="website"),
            collection.create_index([("domain", ASCENDING)], name="domain", sparse=True),
            collection.create_index(
                [
                    ("name", TEXT),
                    ("industry", TEXT),
                    ("locality", TEXT),
                    ("region", TEXT),
                    ("country", TEXT),
                ],
                name="company_text",
                weights={"name": 10, "industry": 5, "locality": 2, "region": 1, "country": 1},
            ),
        ]
        logger.info(f"Ensured company indexes: {', '.join(created)}")
        return created

    @classmethod
    def reset_connection(cls) -> None:
        """Reset the connection pool. Used for testing or connection recovery."""
        if cls._client:
            cls._client.close()
        cls._client = None
        cls._db = None
        cls._collection = None
        logger.info("Company repository connection reset")
