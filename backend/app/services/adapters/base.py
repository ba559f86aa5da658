"""
Analysis Adapter Base

Every external analysis provider is wrapped by an AnalysisAdapter. Adapters
never raise provider exceptions to the caller: `analyze()` always returns an
AdapterOutcome carrying either a normalized result or a classified error.

Responsibilities of the base class:
- Per-call timeout (asyncio.wait_for)
- A small bounded local retry for transient errors
- Classification of provider exceptions into ErrorClass
- Cost recording through the CostLedger for every charged attempt

Cost rules:
- A successful call records the cost the provider reported (or the estimate)
- A failed call records a cost only when `charges_on_failure` is set
  (the provider bills the attempt even if it produced nothing)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.errors import BudgetExceededError, ErrorClass, PipelineError, TransientProviderError
from app.models.jobs import Capability
from app.models.media import MediaKind
from app.services.ledger import CostLedger, ZERO, to_money

logger = logging.getLogger(__name__)

# Called before every provider attempt with the attempt number; raises
# BudgetExceededError to stop before the call is made.
AttemptGate = Callable[[int], Awaitable[None]]


# ========================================
# Data Classes
# ========================================

@dataclass
class AnalysisOptions:
    """What an adapter needs to know about the item besides its locator."""

    user_id: int
    media_item_id: Optional[int] = None
    job_id: Optional[int] = None
    kind: MediaKind = MediaKind.IMAGE
    mime_type: Optional[str] = None
    size_bytes: int = 0
    duration_seconds: Optional[float] = None
    # Input text for text analysis (detected text + transcript)
    text: str = ""
    language_code: str = "en"


@dataclass
class AnalysisPayload:
    """Normalized adapter output. Mirrors the AnalysisResult columns."""

    labels: List[Dict[str, Any]] = field(default_factory=list)
    entities: List[Dict[str, Any]] = field(default_factory=list)
    text: str = ""
    segments: List[Dict[str, Any]] = field(default_factory=list)
    sentiment: Optional[str] = None
    sentiment_scores: Optional[Dict[str, float]] = None
    content_warnings: List[Dict[str, Any]] = field(default_factory=list)
    provider: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "labels": len(self.labels),
            "entities": len(self.entities),
            "text_chars": len(self.text),
            "segments": len(self.segments),
        }


@dataclass
class AdapterOutcome:
    """Exactly one of `result` / `error` is set."""

    result: Optional[AnalysisPayload] = None
    cost: Decimal = ZERO
    error_class: Optional[ErrorClass] = None
    error: Optional[PipelineError] = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: PipelineError, cost: Decimal = ZERO, attempts: int = 1) -> "AdapterOutcome":
        return cls(error=error, error_class=error.error_class, cost=cost, attempts=attempts)


# ========================================
# Base Adapter
# ========================================

class AnalysisAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses implement `_call()` (one provider round trip returning the
    payload and its actual cost), `estimate_cost()` and `classify_exception()`.
    """

    capability: Capability
    service: str = "unknown"
    operation: str = "analyze"
    charges_on_failure: bool = False

    def __init__(
        self,
        ledger: CostLedger,
        *,
        timeout: Optional[float] = None,
        local_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.ledger = ledger
        self.timeout = timeout if timeout is not None else settings.ADAPTER_TIMEOUT_SECONDS
        self.local_retries = local_retries if local_retries is not None else settings.ADAPTER_LOCAL_RETRIES
        self.retry_delay = retry_delay if retry_delay is not None else settings.ADAPTER_LOCAL_RETRY_DELAY_SECONDS

    @abstractmethod
    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        """Upper bound of what one call for this item will cost."""

    @abstractmethod
    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        """One provider round trip. Provider exceptions propagate."""

    def classify_exception(self, exc: Exception) -> PipelineError:
        """Map a provider exception to a pipeline error. Unknown errors are transient."""
        return TransientProviderError(f"{self.service} {type(exc).__name__}: {exc}")

    def timeout_for(self, options: AnalysisOptions) -> float:
        return self.timeout

    async def analyze(
        self,
        locator: str,
        options: AnalysisOptions,
        gate: Optional[AttemptGate] = None,
    ) -> AdapterOutcome:
        """
        Run the provider call with timeout, local retries and cost recording.

        Args:
            locator: Storage key of the media object
            options: Item metadata and owner for cost attribution
            gate: Budget check run before every attempt, local retries included

        Returns:
            AdapterOutcome with a payload on success, or a classified error
        """
        total_cost = ZERO
        attempt = 0
        timeout = self.timeout_for(options)

        while True:
            attempt += 1
            if gate is not None:
                try:
                    await gate(attempt)
                except BudgetExceededError as e:
                    return AdapterOutcome.failure(e, cost=total_cost, attempts=max(attempt - 1, 1))

            try:
                payload, cost = await asyncio.wait_for(self._call(locator, options), timeout=timeout)
            except asyncio.TimeoutError:
                error: PipelineError = TransientProviderError(
                    f"{self.service}.{self.operation} timed out after {timeout:.0f}s"
                )
            except PipelineError as e:
                error = e
            except Exception as e:
                error = self.classify_exception(e)
            else:
                cost = to_money(cost)
                await self._record(options, cost, succeeded=True)
                total_cost += cost
                payload.provider = payload.provider or self.service
                return AdapterOutcome(result=payload, cost=total_cost, attempts=attempt)

            logger.warning(
                f"{self.service}.{self.operation} failed for media {options.media_item_id} "
                f"(attempt {attempt}, {error.error_class.value}): {error}"
            )

            if self.charges_on_failure:
                charged = to_money(self.estimate_cost(options))
                await self._record(options, charged, succeeded=False)
                total_cost += charged

            if error.error_class != ErrorClass.TRANSIENT or attempt > self.local_retries:
                return AdapterOutcome.failure(error, cost=total_cost, attempts=attempt)

            await asyncio.sleep(self.retry_delay * attempt)

    async def _record(self, options: AnalysisOptions, amount: Decimal, succeeded: bool) -> None:
        if amount <= ZERO:
            return
        await self.ledger.record_cost(
            user_id=options.user_id,
            service=self.service,
            operation=self.operation,
            amount=amount,
            succeeded=succeeded,
            job_id=options.job_id,
            media_item_id=options.media_item_id,
        )
