"""
LLM Factory Module.

Factory functions for the chat and embedding clients used by the pipeline
stages. All stages should use these factories (or have a client injected)
instead of instantiating ChatOpenAI/OpenAIEmbeddings directly.

Provider-level retries are disabled on every client: retries are owned by
company_search.common.retry so that only 429/5xx are retried, with one
shared backoff policy.

Usage:
    from company_search.common.llm_factory import create_chat_llm, LazyUpstreamClient

    llm = create_chat_llm(stage="query_parser", temperature=0.0)

    # Deferred creation; a missing API key disables the stage for good
    client = LazyUpstreamClient(lambda: create_chat_llm(stage="web_search"), name="web_search")
    llm = client.get()
"""

import logging
import threading
from typing import Any, Callable, Generic, Optional, TypeVar

from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from company_search.common.config import Config
from company_search.common.error_handling import NotConfiguredError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _require_api_key(stage: Optional[str]) -> str:
    api_key = Config.get_openai_api_key()
    if not api_key:
        raise NotConfiguredError(
            "OPENAI_API_KEY is not set; LLM-backed stage is unavailable",
            stage=stage,
        )
    return api_key


def create_chat_llm(
    model: Optional[str] = None,
    temperature: Optional[float] = 0.0,
    stage: Optional[str] = None,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> ChatOpenAI:
    """
    Create a ChatOpenAI instance for a pipeline stage.

    Args:
        model: Model name (defaults to Config.OPENAI_MODEL)
        temperature: Sampling temperature; None leaves the provider default
            (search-preview models reject the parameter)
        stage: Stage name, used for logging and error attribution
        timeout: Per-request timeout in seconds
        **kwargs: Additional ChatOpenAI parameters

    Raises:
        NotConfiguredError: If no API key is configured
    """
    api_key = _require_api_key(stage)
    effective_model = model or Config.OPENAI_MODEL

    if temperature is not None:
        kwargs["temperature"] = temperature

    llm = ChatOpenAI(
        model=effective_model,
        api_key=api_key,
        base_url=Config.get_openai_base_url(),
        timeout=timeout,
        max_retries=0,
        **kwargs,
    )
    logger.debug(f"Created chat LLM: model={effective_model}, stage={stage}")
    return llm


def create_embeddings(
    model: Optional[str] = None,
    batch_size: int = 20,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> OpenAIEmbeddings:
    """
    Create an OpenAIEmbeddings client.

    `batch_size` bounds how many texts go into one provider request.

    Raises:
        NotConfiguredError: If no API key is configured
    """
    api_key = _require_api_key("matching")
    effective_model = model or Config.EMBEDDING_MODEL

    embeddings = OpenAIEmbeddings(
        model=effective_model,
        api_key=api_key,
        base_url=Config.get_openai_base_url(),
        chunk_size=batch_size,
        timeout=timeout,
        max_retries=0,
        **kwargs,
    )
    logger.debug(f"Created embeddings client: model={effective_model}, batch_size={batch_size}")
    return embeddings


class LazyUpstreamClient(Generic[T]):
    """
    Creates an upstream client on first use and remembers configuration
    failures.

    Once the factory raises NotConfiguredError the same error is raised on
    every later call without invoking the factory again, and it is logged
    only once for the process lifetime of this holder.
    """

    def __init__(self, factory: Callable[[], T], name: str, client: Optional[T] = None):
        self._factory = factory
        self.name = name
        self._client: Optional[T] = client
        self._not_configured: Optional[NotConfiguredError] = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._not_configured is None

    def get(self) -> T:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._not_configured is not None:
                raise self._not_configured
            if self._client is None:
                try:
                    self._client = self._factory()
                except NotConfiguredError as e:
                    self._not_configured = e
                    logger.error(f"{self.name} disabled: {e}")
                    raise
            return self._client
