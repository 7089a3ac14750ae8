"""
Unit tests for the retry combinator and upstream error classification.
"""

import asyncio
import warnings
from unittest.mock import AsyncMock, MagicMock

import pytest

from company_search.common.error_handling import (
    InputError,
    PermanentUpstreamError,
    SearchPipelineError,
    StageErrorCollector,
    StageTimeoutError,
    TransientUpstreamError,
    classify_upstream_error,
)
from company_search.common.retry import (
    RetryPolicy,
    RetryResult,
    call_with_retry,
    is_retryable_upstream_error,
)

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, jitter=0)


class ProviderError(Exception):
    """Stand-in for an SDK exception carrying an HTTP status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class TestClassifyUpstreamError:
    """Tests for classify_upstream_error()."""

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_rate_limit_and_server_errors_are_transient(self, status):
        error = classify_upstream_error(ProviderError("boom", status), stage="web_search")

        assert isinstance(error, TransientUpstreamError)
        assert error.retryable is True
        assert error.status_code == status
        assert error.stage == "web_search"

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_other_client_errors_are_permanent(self, status):
        error = classify_upstream_error(ProviderError("bad", status))

        assert isinstance(error, PermanentUpstreamError)
        assert error.retryable is False

    def test_status_read_from_response(self):
        exc = Exception("wrapped")
        exc.response = MagicMock(status_code=503)

        assert isinstance(classify_upstream_error(exc), TransientUpstreamError)

    def test_timeouts(self):
        assert isinstance(classify_upstream_error(asyncio.TimeoutError()), StageTimeoutError)

        class ReadTimeout(Exception):
            pass

        assert isinstance(classify_upstream_error(ReadTimeout("slow")), StageTimeoutError)

    def test_unknown_errors_are_permanent(self):
        assert isinstance(classify_upstream_error(RuntimeError("?")), PermanentUpstreamError)

    def test_classified_errors_pass_through(self):
        original = InputError("bad input")
        result = classify_upstream_error(original, stage="entity_extraction")

        assert result is original
        assert result.stage == "entity_extraction"

    def test_stage_timeout_is_a_timeout_error(self):
        assert isinstance(StageTimeoutError("late"), TimeoutError)
        assert isinstance(StageTimeoutError("late"), SearchPipelineError)


class TestCallWithRetry:
    """Tests for call_with_retry()."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        operation = AsyncMock(return_value="ok")

        result = await call_with_retry(operation, policy=NO_WAIT)

        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_retries_transient_errors_then_succeeds(self):
        operation = AsyncMock(side_effect=[ProviderError("429", 429), ProviderError("503", 503), "ok"])

        result = await call_with_retry(operation, policy=NO_WAIT)

        assert result.unwrap() == "ok"
        assert result.attempts == 3
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        operation = AsyncMock(side_effect=ProviderError("overloaded", 529))

        result = await call_with_retry(operation, policy=NO_WAIT, stage="web_search")

        assert not result.ok
        assert isinstance(result.error, TransientUpstreamError)
        assert result.error.stage == "web_search"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_are_not_retried(self):
        operation = AsyncMock(side_effect=ProviderError("unauthorized", 401))

        result = await call_with_retry(operation, policy=NO_WAIT)

        assert isinstance(result.error, PermanentUpstreamError)
        assert operation.await_count == 1
        with pytest.raises(PermanentUpstreamError):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_custom_retry_predicate(self):
        operation = AsyncMock(side_effect=[ValueError("flaky"), "ok"])

        result = await call_with_retry(
            operation,
            policy=NO_WAIT,
            is_retryable=lambda e: isinstance(e, ValueError),
        )

        assert result.value == "ok"
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_backoff_uses_current_tenacity_arguments(self):
        operation = AsyncMock(side_effect=[ProviderError("429", 429), "ok"])
        policy = RetryPolicy(max_attempts=2, initial_delay=0.01, max_delay=0.01, jitter=0)

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            result = await call_with_retry(operation, policy=policy)

        assert result.value == "ok"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        operation = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await call_with_retry(operation, policy=NO_WAIT)

    def test_retryable_predicate(self):
        assert is_retryable_upstream_error(ProviderError("x", 429))
        assert not is_retryable_upstream_error(ProviderError("x", 404))

    def test_retry_result_unwrap(self):
        assert RetryResult(value=5).unwrap() == 5

    def test_policy_from_search_config(self):
        config = MagicMock(retry_attempts=5, retry_initial_delay=0.5, retry_max_delay=4, retry_jitter=0.1)

        policy = RetryPolicy.from_search_config(config)

        assert policy == RetryPolicy(max_attempts=5, initial_delay=0.5, max_delay=4, jitter=0.1)


class TestStageErrorCollector:
    """Tests for StageErrorCollector."""

    def test_collects_errors_per_stage(self):
        errors = StageErrorCollector()
        assert not errors

        errors.add("web_search", TransientUpstreamError("rate limited"))
        errors.add("matching", RuntimeError())

        assert len(errors) == 2
        assert errors.has_error("web_search")
        assert not errors.has_error("db_search")
        assert errors.to_error_map() == {"web_search": "rate limited", "matching": "RuntimeError"}
