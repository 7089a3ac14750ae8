"""
Cache layer shared by every expensive pipeline stage.

Keys are deterministic functions of the stage name and a normalized
input, so semantically identical requests collide regardless of key
order or incidental whitespace:

    build_params_key("web_search", {"industry": "AI", "country": "US"})
    == build_params_key("web_search", {"country": "US", "industry": " ai "})

Two stores implement the same interface: an in-process LRU store used by
default and in tests, and a MongoDB-backed store (see
company_search.common.repositories.cache_repository) for deployments that
run several workers.
"""

import copy
import fnmatch
import hashlib
import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# ===== Key construction =====

def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return re.sub(r"\s+", " ", value.strip()).lower()
    if isinstance(value, dict):
        return normalize_params(value)
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return value


def normalize_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop empty values, trim/collapse/lowercase strings, recurse into dicts.

    Key order is irrelevant because keys are serialized sorted.
    """
    normalized = {}
    for key, value in params.items():
        if value is None or (isinstance(value, (str, list, dict)) and not value):
            continue
        if isinstance(value, str) and not value.strip():
            continue
        normalized[key] = _normalize_value(value)
    return normalized


def hash_payload(payload: Any) -> str:
    """sha256 of the canonical (sorted-key, compact) JSON of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_params_key(stage: str, params: Dict[str, Any]) -> str:
    """Key for small parameter sets (queries, options)."""
    return f"{stage}:{hash_payload(normalize_params(params))[:32]}"


def build_content_key(stage: str, payload: Any) -> str:
    """Key for large payloads whose exact content matters (raw search results)."""
    return f"{stage}:{hash_payload(payload)[:32]}"


# ===== Stores =====

@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "errors": self.errors,
            "size": self.size,
            "hit_rate": round(self.hit_rate, 4),
        }


class CacheStore(ABC):
    """
    Key-value store with per-entry TTL.

    Implementations must tolerate concurrent readers and writers with
    last-write-wins semantics.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the live value for `key`, or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def clear(self) -> int:
        """Remove everything; returns the number of entries removed."""
        pass

    def delete_pattern(self, pattern: str) -> int:
        """
        Remove keys matching a glob pattern.

        Stores without pattern support fall back to a full clear.
        """
        logger.warning(f"{type(self).__name__} has no pattern delete; clearing all entries for '{pattern}'")
        return self.clear()

    @abstractmethod
    def stats(self) -> CacheStats:
        pass


class InMemoryCacheStore(CacheStore):
    """
    Thread-safe LRU cache with TTL, for a single process.

    Values are deep-copied on the way in and out so a request can never
    mutate state another request will read.
    """

    def __init__(self, max_size: int = 1000, clock=time.monotonic):
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats = CacheStats()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            value = entry.value
        return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        stored = copy.deepcopy(value)
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(key=key, value=stored, expires_at=now + ttl_seconds)
            self._entries.move_to_end(key)
            self._stats.sets += 1
            self._evict(now)

    def _evict(self, now: float) -> None:
        if len(self._entries) <= self.max_size:
            return
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self._stats.deletes += 1
            return removed

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._entries[key]
            self._stats.deletes += len(keys)
            return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                sets=self._stats.sets,
                deletes=self._stats.deletes,
                errors=self._stats.errors,
                size=len(self._entries),
            )


# ===== Stage-facing wrapper =====

@dataclass
class StageCache:
    """
    Prefixes keys, honours the LLM-caching switch, and never lets a
    cache backend failure fail the stage that uses it.
    """

    store: CacheStore
    key_prefix: str = "company-search:"
    enabled: bool = True
    errors: int = field(default=0, init=False)

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            value = self.store.get(self._full_key(key))
        except Exception as e:
            self.errors += 1
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        logger.debug(f"Cache {'hit' if value is not None else 'miss'}: {key}")
        return value

    def put(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not self.enabled:
            return
        try:
            self.store.set(self._full_key(key), value, ttl_seconds)
        except Exception as e:
            self.errors += 1
            logger.warning(f"Cache write failed for {key}: {e}")

    def invalidate(self, pattern: str) -> int:
        """Remove every key under this prefix matching a glob pattern."""
        return self.store.delete_pattern(self._full_key(pattern))
