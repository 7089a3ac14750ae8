"""
Batched embedding client and vector math for company matching.

Texts are embedded in bounded batches; each batch is one provider call
under the shared retry policy. A failed batch yields None for each of its
texts so one bad batch never takes down its siblings.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from company_search.common.cache import StageCache, build_content_key
from company_search.common.config import Config
from company_search.common.error_handling import NotConfiguredError
from company_search.common.llm_factory import LazyUpstreamClient, create_embeddings
from company_search.common.retry import RetryPolicy, call_with_retry
from company_search.common.types import CompanyRecord

logger = logging.getLogger(__name__)


def cosine_similarity(vec: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity between a vector and each row of a matrix.

    Args:
        vec: Query vector (D,)
        matrix: Candidate matrix (N, D)

    Returns:
        Similarities array (N,)
    """
    vec_norm = vec / (np.linalg.norm(vec) + 1e-8)
    matrix_norms = np.linalg.norm(matrix, axis=1, keepdims=True) + 1e-8
    matrix_normalized = matrix / matrix_norms
    return np.dot(matrix_normalized, vec_norm)


def company_embedding_text(company: CompanyRecord) -> str:
    """Canonical text for an existing company record."""
    location = company.get("location") or ", ".join(
        str(company[k]) for k in ("locality", "region", "country") if company.get(k)
    )
    parts = [
        company.get("name"),
        company.get("enrichment") or company.get("description"),
        company.get("industry"),
        location,
        company.get("domain") or company.get("website"),
    ]
    return " | ".join(str(p) for p in parts if p)


class EmbeddingClient:
    """Embeds texts in bounded batches with retry and optional caching."""

    def __init__(
        self,
        embeddings: Optional[Any] = None,
        batch_size: int = 20,
        timeout_seconds: float = 20.0,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[StageCache] = None,
        cache_ttl: int = 30 * 24 * 60 * 60,
        embeddings_factory: Optional[Callable[[], Any]] = None,
        model: Optional[str] = None,
    ):
        self.model = model or Config.EMBEDDING_MODEL
        self.batch_size = max(1, batch_size)
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self.cache_ttl = cache_ttl
        factory = embeddings_factory or (
            lambda: create_embeddings(model=self.model, batch_size=self.batch_size, timeout=timeout_seconds)
        )
        self._client = LazyUpstreamClient(factory, name="embeddings", client=embeddings)

    async def _embed_one_batch(self, texts: List[str]) -> List[Optional[np.ndarray]]:
        try:
            client = self._client.get()
        except NotConfiguredError:
            return [None] * len(texts)

        async def attempt():
            return await asyncio.wait_for(
                client.aembed_documents(texts),
                timeout=self.timeout_seconds,
            )

        result = await call_with_retry(
            attempt,
            policy=self.retry_policy,
            name=f"embedding batch of {len(texts)}",
            stage="matching",
        )
        if not result.ok:
            return [None] * len(texts)
        vectors = result.value or []
        if len(vectors) != len(texts):
            logger.warning(f"Embedding provider returned {len(vectors)} vectors for {len(texts)} texts")
            return [None] * len(texts)
        return [np.asarray(v, dtype=np.float32) for v in vectors]

    async def embed_texts(self, texts: Sequence[str]) -> List[Optional[np.ndarray]]:
        """
        Embed `texts` in order; None marks a text whose batch failed.
        """
        vectors: List[Optional[np.ndarray]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            vectors.extend(await self._embed_one_batch(batch))
        return vectors

    async def embed_companies(self, companies: Sequence[Dict[str, Any]]) -> Dict[str, np.ndarray]:
        """
        Embeddings for existing companies, keyed by record id.

        Uses a stored `embedding` field when present, then the cache, and
        embeds the rest lazily. Companies whose batch fails are omitted.
        """
        found: Dict[str, np.ndarray] = {}
        pending_ids: List[str] = []
        pending_texts: List[str] = []
        pending_keys: List[str] = []

        for company in companies:
            company_id = company.get("id")
            if not company_id or company_id in found or company_id in pending_ids:
                continue
            stored = company.get("embedding")
            if stored:
                found[company_id] = np.asarray(stored, dtype=np.float32)
                continue

            text = company_embedding_text(company)
            cache_key = build_content_key(
                "embedding", {"model": self.model, "id": company_id, "text": text}
            )
            cached = self.cache.get(cache_key) if self.cache is not None else None
            if cached is not None:
                found[company_id] = np.asarray(cached, dtype=np.float32)
                continue

            pending_ids.append(company_id)
            pending_texts.append(text)
            pending_keys.append(cache_key)

        if pending_texts:
            vectors = await self.embed_texts(pending_texts)
            for company_id, cache_key, vector in zip(pending_ids, pending_keys, vectors):
                if vector is None:
                    continue
                found[company_id] = vector
                if self.cache is not None:
                    self.cache.put(cache_key, vector.tolist(), self.cache_ttl)

        return found
