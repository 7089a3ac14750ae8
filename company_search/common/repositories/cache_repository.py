"""
Mongo Cache Repository

MongoDB-backed implementation of the cache store, shared by every worker
process that points at the same database. Entries expire through a TTL
index on `expires_at`; reads also check the expiry themselves because
the TTL monitor only runs about once a minute.
"""

import fnmatch
import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Any, Optional

from pymongo import ASCENDING, MongoClient

from company_search.common.cache import CacheStats, CacheStore

logger = logging.getLogger(__name__)


class MongoCacheStore(CacheStore):
    """
    Cache store over the `search_cache` collection.

    Document shape: {cache_key, value, expires_at, created_at}. Writes are
    upserts keyed by `cache_key`, so concurrent writers resolve to
    last-write-wins.
    """

    _client: Optional[MongoClient] = None

    def __init__(
        self,
        mongodb_uri: Optional[str] = None,
        database: str = "company_search",
        collection: str = "search_cache",
    ):
        self._mongodb_uri = mongodb_uri or os.getenv("MONGODB_URI")
        self._database = database
        self._collection_name = collection
        self._stats = CacheStats()
        self._stats_lock = threading.Lock()

        if not self._mongodb_uri:
            raise ValueError("MongoDB URI is required")

    def _get_client(self) -> MongoClient:
        if MongoCacheStore._client is None:
            MongoCacheStore._client = MongoClient(self._mongodb_uri)
            logger.info("Created new MongoDB client for search cache")
        return MongoCacheStore._client

    def _get_collection(self):
        return self._get_client()[self._database][self._collection_name]

    @classmethod
    def reset_connection(cls) -> None:
        if cls._client is not None:
            cls._client.close()
            cls._client = None
            logger.info("Search cache connection reset")

    def _count(self, counter: str, amount: int = 1) -> None:
        with self._stats_lock:
            setattr(self._stats, counter, getattr(self._stats, counter) + amount)

    def get(self, key: str) -> Optional[Any]:
        doc = self._get_collection().find_one(
            {"cache_key": key, "expires_at": {"$gt": datetime.utcnow()}},
            {"_id": 0, "value": 1},
        )
        if doc is None:
            self._count("misses")
            return None
        self._count("hits")
        return doc.get("value")

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        now = datetime.utcnow()
        self._get_collection().update_one(
            {"cache_key": key},
            {
                "$set": {
                    "value": value,
                    "expires_at": now + timedelta(seconds=ttl_seconds),
                    "created_at": now,
                }
            },
            upsert=True,
        )
        self._count("sets")

    def delete(self, key: str) -> bool:
        result = self._get_collection().delete_one({"cache_key": key})
        self._count("deletes", result.deleted_count)
        return result.deleted_count > 0

    def delete_pattern(self, pattern: str) -> int:
        regex = fnmatch.translate(pattern)
        result = self._get_collection().delete_many({"cache_key": {"$regex": regex}})
        self._count("deletes", result.deleted_count)
        return result.deleted_count

    def clear(self) -> int:
        result = self._get_collection().delete_many({})
        return result.deleted_count

    def stats(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                sets=self._stats.sets,
                deletes=self._stats.deletes,
                errors=self._stats.errors,
            )

    def ensure_indexes(self) -> None:
        """Unique key index plus TTL index for automatic expiration."""
        collection = self._get_collection()
        collection.create_index([("cache_key", ASCENDING)], unique=True, name="cache_key_unique")
        collection.create_index("expires_at", expireAfterSeconds=0, name="expires_at_ttl")
        logger.info("Search cache indexes ensured")
