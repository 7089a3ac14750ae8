"""
Run-scoped logging for the unified search orchestrator.

Every message of one search request carries the same `[run:xxxxxxxx]`
prefix, plus `[stage]` when it comes from a pipeline stage, so the
interleaved output of concurrent requests can be told apart.
"""

import logging
from typing import Any, MutableMapping, Optional, Tuple


class PipelineLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with run id and stage."""

    def __init__(self, logger: logging.Logger, run_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(logger, {"run_id": run_id, "stage": stage})
        self.run_id = run_id
        self.stage = stage

    @property
    def prefix(self) -> str:
        parts = []
        if self.run_id:
            parts.append(f"[run:{self.run_id[:8]}]")
        if self.stage:
            parts.append(f"[{self.stage}]")
        return " ".join(parts)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        if self.prefix:
            msg = f"{self.prefix} {msg}"
        return msg, kwargs

    def with_stage(self, stage: str) -> "PipelineLogger":
        """Sibling logger for another stage of the same run."""
        return PipelineLogger(self.logger, self.run_id, stage)


def get_logger(name: str, run_id: Optional[str] = None, stage: Optional[str] = None) -> PipelineLogger:
    """
    Get a pipeline logger.

    Args:
        name: Logger name (usually __name__)
        run_id: Request identifier; only the first 8 characters are shown
        stage: Stage name ("db_search", "matching", ...)
    """
    return PipelineLogger(logging.getLogger(name), run_id, stage)
