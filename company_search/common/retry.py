"""
Retry combinator for upstream LLM and embedding calls.

Wraps tenacity's AsyncRetrying so every stage shares one retry policy:
exponential backoff with jitter, a bounded number of attempts, and a
retryability predicate applied to the classified error. The outcome is
returned as a RetryResult instead of raised, so callers decide whether a
failure is fatal for their stage.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from company_search.common.error_handling import (
    SearchPipelineError,
    TransientUpstreamError,
    classify_upstream_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters; delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 1.0

    @classmethod
    def from_search_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried call: either a value or a classified error."""

    value: Optional[T] = None
    error: Optional[SearchPipelineError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the classified error."""
        if self.error is not None:
            raise self.error
        return self.value


def is_retryable_upstream_error(exc: BaseException) -> bool:
    """Retry only transient upstream failures (HTTP 429 and 5xx)."""
    return isinstance(classify_upstream_error(exc), TransientUpstreamError)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: Optional[RetryPolicy] = None,
    is_retryable: Callable[[BaseException], bool] = is_retryable_upstream_error,
    name: str = "upstream call",
    stage: Optional[str] = None,
) -> RetryResult[T]:
    """
    Run `operation` with backoff until it succeeds or stops being retryable.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and backoff parameters
        is_retryable: Predicate deciding whether an error is worth retrying
        name: Operation name used in log messages
        stage: Stage name attached to the classified error

    Returns:
        RetryResult with the value, or the classified last error
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter(
            multiplier=policy.initial_delay,
            max=policy.max_delay,
            jitter=policy.jitter,
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    attempts = 0
    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                value = await operation()
        return RetryResult(value=value, attempts=attempts)
    except Exception as e:
        error = classify_upstream_error(e, stage=stage)
        logger.warning(f"{name} failed after {attempts} attempt(s): {error}")
        return RetryResult(error=error, attempts=attempts)
