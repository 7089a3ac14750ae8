"""
Configuration loader for the company search pipeline.

Loads all settings from environment variables (.env file).
Credentials and model names live on `Config`; pipeline tunables
(timeouts, TTLs, thresholds) live on `SearchConfig`, which is built
per service instance so tests can construct isolated settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


class Config:
    """
    Centralized credentials and upstream model configuration.

    All values loaded from environment variables - NO SECRETS IN CODE.
    """

    # ===== MongoDB =====
    MONGODB_URI: str = os.getenv("MONGODB_URI", "")
    MONGODB_DATABASE: str = os.getenv("MONGODB_DATABASE", "company_search")
    COMPANIES_COLLECTION: str = os.getenv("COMPANIES_COLLECTION", "companies")
    CACHE_COLLECTION: str = os.getenv("CACHE_COLLECTION", "search_cache")

    # ===== LLM APIs =====
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "")

    # ===== LLM Model Configuration =====
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    WEB_SEARCH_MODEL: str = os.getenv("WEB_SEARCH_MODEL", "gpt-4o-mini-search-preview")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

    @classmethod
    def get_openai_api_key(cls) -> str:
        """Read the key at call time so late-loaded env vars are honoured."""
        return os.getenv("OPENAI_API_KEY", cls.OPENAI_API_KEY)

    @classmethod
    def get_openai_base_url(cls) -> Optional[str]:
        return os.getenv("OPENAI_BASE_URL", cls.OPENAI_BASE_URL) or None

    @classmethod
    def validate(cls) -> None:
        """
        Validate that all required configuration is present.

        Raises NotConfiguredError if critical settings are missing.
        """
        from company_search.common.error_handling import NotConfiguredError

        required_settings = {
            "MONGODB_URI": os.getenv("MONGODB_URI", cls.MONGODB_URI),
            "OPENAI_API_KEY": cls.get_openai_api_key(),
        }

        missing = [name for name, value in required_settings.items() if not value]

        if missing:
            raise NotConfiguredError(
                f"Missing required configuration: {', '.join(missing)}. "
                f"Please check your .env file."
            )

    @classmethod
    def summary(cls) -> str:
        """Return a summary of the current configuration (safe for logging)."""
        return f"""
Configuration Summary:
  MongoDB: {'✓ Configured' if os.getenv('MONGODB_URI', cls.MONGODB_URI) else '✗ Missing'}
  Database: {cls.MONGODB_DATABASE} ({cls.COMPANIES_COLLECTION})
  OpenAI: {'✓ Configured' if cls.get_openai_api_key() else '✗ Missing'}
  Chat Model: {cls.OPENAI_MODEL}
  Web Search Model: {cls.WEB_SEARCH_MODEL}
  Embedding Model: {cls.EMBEDDING_MODEL}
        """.strip()


@dataclass
class SearchConfig:
    """
    Tunables for the unified search pipeline.

    Defaults reproduce production behaviour; every value can be
    overridden from the environment or by passing a custom instance.
    """

    # Pagination
    default_limit: int = 20
    max_limit: int = 100

    # Timeouts (seconds)
    db_timeout_seconds: float = 5.0
    llm_timeout_seconds: float = 30.0
    embedding_timeout_seconds: float = 20.0

    # Retry policy for LLM and embedding calls
    retry_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_jitter: float = 1.0

    # Web search rate limit
    web_search_max_calls: int = 10
    web_search_window_seconds: float = 60.0

    # Matching
    embedding_batch_size: int = 20
    candidate_limit: int = 200
    similarity_threshold: float = 0.70
    max_matches: int = 3

    # Cache
    cache_backend: str = "memory"
    cache_key_prefix: str = "company-search:"
    cache_max_size: int = 1000
    llm_caching: bool = True

    # Cache TTLs (seconds)
    query_parse_ttl: int = 24 * 60 * 60
    web_search_ttl: int = 60 * 60
    extraction_ttl: int = 24 * 60 * 60
    embedding_ttl: int = 30 * 24 * 60 * 60
    unified_search_ttl: int = 10 * 60

    @classmethod
    def from_env(cls) -> "SearchConfig":
        """Create configuration from environment variables."""
        return cls(
            default_limit=_env_int("SEARCH_DEFAULT_LIMIT", 20),
            max_limit=_env_int("SEARCH_MAX_LIMIT", 100),
            db_timeout_seconds=_env_float("DB_QUERY_TIMEOUT_SECONDS", 5.0),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 30.0),
            embedding_timeout_seconds=_env_float("EMBEDDING_TIMEOUT_SECONDS", 20.0),
            retry_attempts=_env_int("LLM_RETRY_ATTEMPTS", 3),
            retry_initial_delay=_env_float("LLM_RETRY_INITIAL_DELAY", 1.0),
            retry_max_delay=_env_float("LLM_RETRY_MAX_DELAY", 10.0),
            retry_jitter=_env_float("LLM_RETRY_JITTER", 1.0),
            web_search_max_calls=_env_int("WEB_SEARCH_RATE_LIMIT", 10),
            web_search_window_seconds=_env_float("WEB_SEARCH_RATE_WINDOW_SECONDS", 60.0),
            embedding_batch_size=_env_int("EMBEDDING_BATCH_SIZE", 20),
            candidate_limit=_env_int("MATCH_CANDIDATE_LIMIT", 200),
            similarity_threshold=_env_float("MATCH_SIMILARITY_THRESHOLD", 0.70),
            max_matches=_env_int("MATCH_MAX_MATCHES", 3),
            cache_backend=os.getenv("CACHE_BACKEND", "memory").lower(),
            cache_key_prefix=os.getenv("CACHE_KEY_PREFIX", "company-search:"),
            cache_max_size=_env_int("CACHE_MAX_SIZE", 1000),
            llm_caching=_env_bool("LLM_CACHING", True),
            query_parse_ttl=_env_int("QUERY_PARSE_CACHE_TTL", 24 * 60 * 60),
            web_search_ttl=_env_int("WEB_SEARCH_CACHE_TTL", 60 * 60),
            extraction_ttl=_env_int("EXTRACTION_CACHE_TTL", 24 * 60 * 60),
            embedding_ttl=_env_int("EMBEDDING_CACHE_TTL", 30 * 24 * 60 * 60),
            unified_search_ttl=_env_int("UNIFIED_SEARCH_CACHE_TTL", 10 * 60),
        )

    def clamp_limit(self, limit: Optional[int]) -> int:
        """Clamp a requested page size into [1, max_limit]."""
        if limit is None:
            return self.default_limit
        try:
            value = int(limit)
        except (TypeError, ValueError):
            return self.default_limit
        return max(1, min(value, self.max_limit))
