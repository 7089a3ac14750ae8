"""
Centralized error handling for the company search pipeline.

Defines the error taxonomy every stage raises, the classifier that maps
provider exceptions onto it, and the collector the orchestrator uses to
record per-stage failures without aborting the request.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class SearchPipelineError(Exception):
    """Base class for all errors raised by pipeline stages."""

    retryable: bool = False

    def __init__(self, message: str, *, stage: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.status_code = status_code


class InputError(SearchPipelineError):
    """Malformed caller input. Fails fast, never retried."""


class TransientUpstreamError(SearchPipelineError):
    """429/5xx from an LLM or embedding call. Retried with backoff."""

    retryable = True


class PermanentUpstreamError(SearchPipelineError):
    """4xx other than 429, or schema-violating LLM output. Not retried."""


class StageTimeoutError(SearchPipelineError, TimeoutError):
    """A bounded external call exceeded its deadline."""


class NotConfiguredError(SearchPipelineError):
    """Upstream credentials are missing; the stage stays unavailable."""


class SearchUnavailableError(SearchPipelineError):
    """
    Hard failure: no stage produced any data.

    Carries the per-stage error map so the HTTP layer can report it.
    """

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = errors or {}


def _extract_status(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int):
            return value
    return None


def classify_upstream_error(exc: BaseException, stage: Optional[str] = None) -> SearchPipelineError:
    """
    Map an arbitrary provider exception onto the pipeline taxonomy.

    Already-classified errors pass through unchanged. HTTP 429 and 5xx
    become TransientUpstreamError, other 4xx PermanentUpstreamError,
    and timeouts StageTimeoutError. Anything without a status code is
    treated as permanent so it is surfaced instead of retried.
    """
    if isinstance(exc, SearchPipelineError):
        if stage and exc.stage is None:
            exc.stage = stage
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, TimeoutError) or "timeout" in type(exc).__name__.lower():
        return StageTimeoutError(message, stage=stage)

    status = _extract_status(exc)
    if status is not None and (status == 429 or status >= 500):
        return TransientUpstreamError(message, stage=stage, status_code=status)
    return PermanentUpstreamError(message, stage=stage, status_code=status)


@dataclass
class StageError:
    """Structured record of one stage failure."""

    stage: str
    error_type: str
    message: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class StageErrorCollector:
    """
    Collects stage errors during one search request.

    The orchestrator owns one collector per request; stages never see it.
    """

    def __init__(self):
        self.errors: List[StageError] = []

    def add(self, stage: str, exc: BaseException) -> StageError:
        error = StageError(
            stage=stage,
            error_type=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
        )
        self.errors.append(error)
        return error

    def has_error(self, stage: str) -> bool:
        return any(e.stage == stage for e in self.errors)

    def to_error_map(self) -> Dict[str, str]:
        """Render the `{stage: message}` map; the latest error per stage wins."""
        return {e.stage: e.message for e in self.errors}

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)
