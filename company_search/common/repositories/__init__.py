"""
Repository Pattern for MongoDB Operations

Public API:
- get_company_repository(): Factory to get the company repository instance
- get_cache_store(): Factory to get the shared cache store
- CompanyRepositoryInterface: Abstract interface for the companies collection

Usage:
    from company_search.common.repositories import get_company_repository

    repo = get_company_repository()
    company = repo.find_by_domain("payflow.io")
"""

from .base import CompanyRepositoryInterface, SortSpec
from .config import (
    RepositoryConfig,
    get_cache_store,
    get_company_repository,
    reset_cache_store,
    reset_repository,
)

__all__ = [
    "get_company_repository",
    "reset_repository",
    "get_cache_store",
    "reset_cache_store",
    "CompanyRepositoryInterface",
    "SortSpec",
    "RepositoryConfig",
]
