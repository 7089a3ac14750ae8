"""
Repository Configuration and Factory

Provides factory functions for the company repository and the cache store
based on environment configuration.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from company_search.common.cache import CacheStore, InMemoryCacheStore

from .base import CompanyRepositoryInterface

logger = logging.getLogger(__name__)


@dataclass
class RepositoryConfig:
    """
    Configuration for repository initialization.

    Loaded from environment variables with sensible defaults.
    """

    mongodb_uri: str
    database: str = "company_search"
    collection: str = "companies"
    cache_collection: str = "search_cache"

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - MONGODB_URI (required): MongoDB connection string
        - MONGODB_DATABASE: Database name
        - COMPANIES_COLLECTION: Company collection name
        - CACHE_COLLECTION: Cache collection name

        Raises:
            ValueError: If MONGODB_URI is not set
        """
        mongodb_uri = os.getenv("MONGODB_URI")
        if not mongodb_uri:
            raise ValueError("MONGODB_URI environment variable is required")

        return cls(
            mongodb_uri=mongodb_uri,
            database=os.getenv("MONGODB_DATABASE", "company_search"),
            collection=os.getenv("COMPANIES_COLLECTION", "companies"),
            cache_collection=os.getenv("CACHE_COLLECTION", "search_cache"),
        )


# Singleton instances
_repository_instance: Optional[CompanyRepositoryInterface] = None
_cache_store_instance: Optional[CacheStore] = None


def get_company_repository() -> CompanyRepositoryInterface:
    """
    Get the company repository instance.

    Uses singleton pattern for connection pooling.

    Raises:
        ValueError: If MongoDB URI is not configured
    """
    global _repository_instance

    if _repository_instance is None:
        config = RepositoryConfig.from_env()

        from .atlas_repository import AtlasCompanyRepository
        _repository_instance = AtlasCompanyRepository(
            mongodb_uri=config.mongodb_uri,
            database=config.database,
            collection=config.collection,
        )
        logger.info("Initialized company repository")

    return _repository_instance


def reset_repository() -> None:
    """Reset the repository singleton. Used for testing or when configuration changes."""
    global _repository_instance

    if _repository_instance is not None:
        from .atlas_repository import AtlasCompanyRepository
        if isinstance(_repository_instance, AtlasCompanyRepository):
            AtlasCompanyRepository.reset_connection()

    _repository_instance = None
    logger.info("Company repository singleton reset")


def get_cache_store(backend: str = "memory", max_size: int = 1000) -> CacheStore:
    """
    Get the shared cache store.

    Args:
        backend: "memory" for a per-process LRU store, "mongodb" for a
                 store shared across workers
        max_size: Entry limit for the in-memory store
    """
    global _cache_store_instance

    if _cache_store_instance is None:
        if backend == "mongodb":
            config = RepositoryConfig.from_env()

            from .cache_repository import MongoCacheStore
            store = MongoCacheStore(
                mongodb_uri=config.mongodb_uri,
                database=config.database,
                collection=config.cache_collection,
            )
            store.ensure_indexes()
            _cache_store_instance = store
        else:
            if backend != "memory":
                logger.warning(f"Unknown cache backend '{backend}', using in-memory cache")
            _cache_store_instance = InMemoryCacheStore(max_size=max_size)
        logger.info(f"Initialized {type(_cache_store_instance).__name__}")

    return _cache_store_instance


def reset_cache_store() -> None:
    """Reset the cache store singleton."""
    global _cache_store_instance

    if _cache_store_instance is not None:
        from .cache_repository import MongoCacheStore
        if isinstance(_cache_store_instance, MongoCacheStore):
            MongoCacheStore.reset_connection()

    _cache_store_instance = None
    logger.info("Cache store singleton reset")
