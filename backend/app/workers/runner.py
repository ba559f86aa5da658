"""
Job Runner

Executes one claimed job:

1. Resolve the handler from the capability dispatch table
2. Budget gate: reserve the estimated cost against the owner's period budget
   before every provider attempt, local retries included (refused → job
   fails with budget_exceeded, no further call is made)
3. Call the adapter / embedding service, renewing the claim meanwhile
4. Release the reservation (recorded costs are already in the ledger)
5. Report the outcome to the orchestrator
"""

import asyncio
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AggregationError, PermanentInputError, PipelineError
from app.core.logging import get_logger
from app.models.jobs import AnalysisResult, Capability, ProcessingJob
from app.models.media import AggregatedContent, MediaKind
from app.services.adapters.base import AnalysisAdapter, AnalysisOptions
from app.services.capabilities import dependencies_of
from app.services.embeddings.segments import SegmentVector, build_segment_windows
from app.services.embeddings.service import EmbeddingService
from app.services.ledger import BudgetReservation, CostLedger, ZERO
from app.services.orchestrator import JobOrchestrator, JobOutcome

logger = get_logger(__name__)

Handler = Callable[[ProcessingJob], Awaitable[JobOutcome]]


class BudgetHold:
    """
    A job's budget reservation, renewed before every provider attempt.

    A charged failed attempt is already in the ledger when the next attempt
    asks, so a local retry that no longer fits under the ceiling is refused
    before the provider is called again.
    """

    def __init__(self, ledger: CostLedger, user_id: int, ceiling: Optional[Decimal], estimate: Decimal):
        self.ledger = ledger
        self.user_id = user_id
        self.ceiling = ceiling
        self.estimate = estimate
        self.reservation: Optional[BudgetReservation] = None

    async def __call__(self, attempt: int) -> None:
        await self.release()
        if self.estimate <= ZERO:
            return
        self.reservation = await self.ledger.reserve(self.user_id, self.ceiling, self.estimate)

    async def release(self) -> None:
        await self.ledger.release(self.reservation)
        self.reservation = None


class JobRunner:
    """
    Usage:
    ------
    runner = JobRunner(orchestrator, ledger, build_adapter_registry(ledger), embedding_service, AsyncSessionLocal)
    job = await orchestrator.claim_next(Capability.TRANSCRIPTION, worker_id)
    if job:
        await runner.run(job)
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        ledger: CostLedger,
        adapters: Dict[Capability, AnalysisAdapter],
        embedding_service: EmbeddingService,
        session_factory: Callable[[], AsyncSession],
        heartbeat_interval: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.ledger = ledger
        self.adapters = adapters
        self.embedding_service = embedding_service
        self.session_factory = session_factory
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else settings.CLAIM_HEARTBEAT_SECONDS
        )

        self.handlers: Dict[Capability, Handler] = {
            capability: self._run_analysis for capability in adapters
        }
        self.handlers[Capability.EMBEDDING] = self._run_embedding

    async def run(self, job: ProcessingJob) -> Optional[ProcessingJob]:
        handler = self.handlers.get(job.capability)
        if handler is None:
            outcome = JobOutcome.failure(
                PermanentInputError(f"No handler for capability {job.capability.value}")
            )
        else:
            heartbeat = asyncio.create_task(self._heartbeat(job))
            try:
                outcome = await handler(job)
            except PipelineError as e:
                outcome = JobOutcome.failure(e)
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

        logger.info(
            "job_executed",
            job_id=job.id,
            capability=job.capability.value,
            succeeded=outcome.succeeded,
            error_class=outcome.error_class.value if outcome.error_class else None,
            cost=str(outcome.cost),
        )
        return await self.orchestrator.report_result(job.id, outcome, worker_id=job.claimed_by)

    async def _heartbeat(self, job: ProcessingJob) -> None:
        """Keep the claim fresh so reclaim_stale never hands a running job to another worker."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await self.orchestrator.renew_claim(job.id, job.claimed_by)
            except SQLAlchemyError as e:
                logger.warning("claim_renewal_failed", job_id=job.id, error=str(e))
                continue
            if not renewed:
                logger.warning("claim_lost", job_id=job.id, worker_id=job.claimed_by)
                return

    # ========================================
    # Budget Gate
    # ========================================

    async def _reserve(self, job: ProcessingJob, estimate: Decimal) -> Optional[BudgetReservation]:
        """Hold the estimate; free calls skip the gate. Raises BudgetExceededError."""
        if estimate <= ZERO:
            return None
        owner = job.media_item.owner
        return await self.ledger.reserve(owner.id, owner.limits.budget_ceiling, estimate)

    # ========================================
    # Handlers
    # ========================================

    async def _run_analysis(self, job: ProcessingJob) -> JobOutcome:
        media = job.media_item
        adapter = self.adapters[job.capability]

        options = AnalysisOptions(
            user_id=media.owner_id,
            media_item_id=media.id,
            job_id=job.id,
            kind=media.kind,
            mime_type=media.mime_type,
            size_bytes=media.size_bytes,
            duration_seconds=media.duration_seconds,
        )
        if dependencies_of(job.capability):
            options.text = await self._dependency_text(job)

        owner = media.owner
        hold = BudgetHold(self.ledger, owner.id, owner.limits.budget_ceiling, adapter.estimate_cost(options))
        try:
            outcome = await adapter.analyze(media.locator, options, gate=hold)
        finally:
            await hold.release()

        return JobOutcome.from_adapter(outcome)

    async def _dependency_text(self, job: ProcessingJob) -> str:
        """Text produced by the capabilities this job consumes, in a fixed order."""
        async with self.session_factory() as session:
            rows = await session.execute(
                select(AnalysisResult.capability, AnalysisResult.text)
                .where(
                    AnalysisResult.media_item_id == job.media_item_id,
                    AnalysisResult.capability.in_(sorted(dependencies_of(job.capability))),
                )
                .order_by(AnalysisResult.capability)
            )
            return "\n".join(text.strip() for _, text in rows.all() if text and text.strip())

    async def _run_embedding(self, job: ProcessingJob) -> JobOutcome:
        media = job.media_item

        async with self.session_factory() as session:
            aggregated = await session.scalar(
                select(AggregatedContent).where(AggregatedContent.media_item_id == media.id)
            )
        if aggregated is None:
            raise AggregationError(f"Media {media.id} has no aggregated content to embed")

        texts: List[str] = [aggregated.text]
        windows = []
        if media.kind == MediaKind.VIDEO:
            segments = (aggregated.content_metadata or {}).get("segments") or []
            windows = build_segment_windows(segments, settings.SEGMENT_WINDOW_SECONDS)
            texts.extend(window.text for window in windows)

        estimate = sum((self.embedding_service.estimate_cost(text) for text in texts), ZERO)
        reservation = await self._reserve(job, estimate)
        try:
            attribution = {"user_id": media.owner_id, "job_id": job.id, "media_item_id": media.id}
            whole = await self.embedding_service.embed(aggregated.text, **attribution)
            pieces = await self.embedding_service.embed_many([w.text for w in windows], **attribution)
        finally:
            await self.ledger.release(reservation)

        vectors = [SegmentVector(
            vector=whole.vector,
            source_text=aggregated.text,
            content_hash=whole.content_hash,
            model=whole.model,
            is_empty=whole.is_empty,
        )]
        for window, piece in zip(windows, pieces):
            vectors.append(SegmentVector(
                vector=piece.vector,
                source_text=window.text,
                content_hash=piece.content_hash,
                model=piece.model,
                is_empty=piece.is_empty,
                segment_index=window.index,
                start_time=window.start,
                end_time=window.end,
            ))

        cost = whole.cost + sum((piece.cost for piece in pieces), ZERO)
        return JobOutcome(vectors=vectors, cost=cost)
