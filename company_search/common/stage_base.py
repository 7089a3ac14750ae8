"""
Base class for LLM-backed pipeline stages.

Each stage that talks to the LLM (query parsing, web search, entity
extraction) extends this to share client creation, the stage cache,
per-call timeouts and the retry policy.
"""

import asyncio
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generator, List, Optional

from company_search.common.cache import StageCache
from company_search.common.config import SearchConfig
from company_search.common.llm_factory import LazyUpstreamClient, create_chat_llm
from company_search.common.retry import RetryPolicy, RetryResult, call_with_retry


@dataclass
class OperationTimer:
    """Timer utility for tracking stage duration."""

    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None

    @property
    def duration_ms(self) -> int:
        if self.end_time is None:
            return int((time.perf_counter() - self.start_time) * 1000)
        return int((self.end_time - self.start_time) * 1000)

    def stop(self) -> int:
        self.end_time = time.perf_counter()
        return self.duration_ms


@contextmanager
def timed_execution() -> Generator[OperationTimer, None, None]:
    """
    Context manager for timing a block.

    Usage:
        with timed_execution() as timer:
            # do work
            pass
        duration_ms = timer.duration_ms
    """
    timer = OperationTimer()
    try:
        yield timer
    finally:
        timer.stop()


class LLMStage:
    """Shared plumbing for stages that call a chat model."""

    stage_name: str = "llm_stage"  # Override in subclass
    model: Optional[str] = None  # None = Config.OPENAI_MODEL
    temperature: Optional[float] = 0.0

    def __init__(
        self,
        llm: Optional[Any] = None,
        cache: Optional[StageCache] = None,
        config: Optional[SearchConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        llm_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            llm: Pre-built chat model (tests inject mocks here)
            cache: Stage cache; None disables caching for this stage
            config: Pipeline tunables (defaults from environment)
            retry_policy: Backoff policy (defaults from config)
            llm_factory: Deferred constructor used when `llm` is None
        """
        self.config = config or SearchConfig.from_env()
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy.from_search_config(self.config)
        factory = llm_factory or (
            lambda: create_chat_llm(
                model=self.model,
                temperature=self.temperature,
                stage=self.stage_name,
                timeout=self.config.llm_timeout_seconds,
            )
        )
        self._llm = LazyUpstreamClient(factory, name=self.stage_name, client=llm)

    @property
    def llm(self) -> Any:
        """The chat model; raises NotConfiguredError when unavailable."""
        return self._llm.get()

    async def _invoke(
        self,
        runnable: Any,
        messages: List[Any],
        name: str,
        before_attempt: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> RetryResult:
        """
        Invoke `runnable` with a per-attempt timeout under the retry policy.

        `before_attempt` runs ahead of every attempt, retries included
        (used to take a rate-limiter permit).
        """

        async def attempt():
            if before_attempt is not None:
                await before_attempt()
            return await asyncio.wait_for(
                runnable.ainvoke(messages),
                timeout=self.config.llm_timeout_seconds,
            )

        return await call_with_retry(
            attempt,
            policy=self.retry_policy,
            name=name,
            stage=self.stage_name,
        )
