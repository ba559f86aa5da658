"""
Pipeline error taxonomy.

Every failure the pipeline can surface maps to one of these classes. Each
class carries a stable ``reason`` code that is persisted on failed jobs and
media items, and returned to API consumers.

Retry decisions are made on ``ErrorClass``, never on message text.
"""

import enum
from typing import Optional


class ErrorClass(str, enum.Enum):
    """How the orchestrator must treat a failed call."""

    TRANSIENT = "transient"   # retry with backoff
    PERMANENT = "permanent"   # fail now, no retry
    BUDGET = "budget"         # fail now, no retry, not counted as an attempt


class PipelineError(Exception):
    """Base error for the media pipeline."""

    reason: str = "pipeline_error"
    error_class: ErrorClass = ErrorClass.PERMANENT

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class TransientProviderError(PipelineError):
    """Timeout, throttling or 5xx from an external provider."""

    reason = "provider_unavailable"
    error_class = ErrorClass.TRANSIENT


class PermanentInputError(PipelineError):
    """Malformed or unsupported input; retrying cannot help."""

    reason = "invalid_input"
    error_class = ErrorClass.PERMANENT


class BudgetExceededError(PipelineError):
    """The owner's period spend is at or above the ceiling."""

    reason = "budget_exceeded"
    error_class = ErrorClass.BUDGET


class AggregationError(PipelineError):
    """Aggregation invoked without the results it needs."""

    reason = "aggregation_failed"


class SearchUnavailableError(PipelineError):
    """The vector index could not be reached. Callers may retry."""

    reason = "search_unavailable"
    error_class = ErrorClass.TRANSIENT


class InvalidMediaError(PipelineError):
    """Media item is in the wrong state or has an unsupported format."""

    reason = "invalid_media"


class MediaNotFoundError(PipelineError):
    reason = "media_not_found"


class SearchQuotaExceededError(PipelineError):
    """Monthly search allowance for the tier is used up."""

    reason = "search_quota_exceeded"
