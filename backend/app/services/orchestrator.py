"""
Job Orchestrator

Durable, prioritized, retryable sequencing of per-media work. All queue
state lives in `processing_jobs` rows; any worker process can die or be
replaced without losing work.

Lifecycle:
----------
enqueue(media)         media uploaded → queued; one pending job per capability
claim_next(capability) CAS pending|due-retrying → processing (exactly one winner)
renew_claim(job)       running worker refreshes claimed_at (heartbeat)
report_result(job)     success  → completed (+ result); maybe aggregate → embedding job
                       transient→ attempts+1; retrying with backoff, or failed when exhausted
                       permanent→ failed now
                       budget   → failed now, attempt not counted
reclaim_stale()        processing without a heartbeat past the claim timeout → transient failure

Media status follows the mandatory jobs: any mandatory failure fails the
item; optional failures are dropped from aggregation. The item completes
when its embedding job completes.

Every transition of a job that can advance its item locks the item row
first, so the last of several concurrently reported sibling jobs always
sees the others and triggers aggregation.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, joinedload

from app.core.config import settings
from app.core.errors import (
    AggregationError,
    ErrorClass,
    InvalidMediaError,
    MediaNotFoundError,
    PipelineError,
    TransientProviderError,
)
from app.core.logging import get_logger
from app.db.base import as_utc, utcnow
from app.models.jobs import (
    AnalysisResult,
    Capability,
    JobStatus,
    ProcessingJob,
    TERMINAL_JOB_STATUSES,
)
from app.models.media import Embedding, MediaItem, MediaKind, MediaStatus
from app.models.user import get_tier_limits
from app.services.adapters.base import AdapterOutcome, AnalysisPayload
from app.services.aggregator import ContentAggregator
from app.services.capabilities import (
    ANALYSIS_CAPABILITIES,
    CapabilityRequirement,
    dependencies_of,
    plan_capabilities,
)
from app.services.embeddings.segments import SegmentVector
from app.services.ledger import ZERO

logger = get_logger(__name__)

CLAIM_CANDIDATES = 5
CLAIM_ROUNDS = 3
MAX_ERROR_MESSAGE = 2000


# ========================================
# Outcomes
# ========================================

@dataclass
class JobOutcome:
    """What a worker reports back for one claimed job."""

    payload: Optional[AnalysisPayload] = None
    vectors: List[SegmentVector] = field(default_factory=list)
    cost: Decimal = ZERO
    error: Optional[PipelineError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def error_class(self) -> Optional[ErrorClass]:
        return self.error.error_class if self.error else None

    @classmethod
    def from_adapter(cls, outcome: AdapterOutcome) -> "JobOutcome":
        return cls(payload=outcome.result, cost=outcome.cost, error=outcome.error)

    @classmethod
    def failure(cls, error: PipelineError, cost: Decimal = ZERO) -> "JobOutcome":
        return cls(error=error, cost=cost)


def compute_backoff(
    attempt: int,
    base: Optional[float] = None,
    cap: Optional[float] = None,
    jitter: Optional[float] = None,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """
    Delay before the next attempt: min(cap, base * 2**attempt) scaled by a
    random factor in [1 - jitter, 1 + jitter].
    """
    base = settings.RETRY_BASE_DELAY_SECONDS if base is None else base
    cap = settings.RETRY_MAX_DELAY_SECONDS if cap is None else cap
    jitter = settings.RETRY_JITTER_RATIO if jitter is None else jitter

    delay = min(cap, base * (2 ** attempt))
    return max(0.0, delay * (1 + rng(-jitter, jitter)))


def media_row_lock(media_item_id: int):
    """
    Statement that serializes writers of one media item until commit.

    Touching the row takes its row lock on PostgreSQL and the database write
    lock on SQLite, so sibling reports, reclaims and retries of one item see
    each other's committed job states.
    """
    return (
        update(MediaItem)
        .where(MediaItem.id == media_item_id)
        .values(updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )



# ========================================
# Orchestrator
# ========================================

class JobOrchestrator:
    """
    Usage:
    ------
    orchestrator = JobOrchestrator(AsyncSessionLocal)
    job_ids = await orchestrator.enqueue(media_item_id)

    job = await orchestrator.claim_next(Capability.OBJECT_DETECTION, "worker-1")
    if job:
        await orchestrator.report_result(job.id, outcome, worker_id="worker-1")
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        aggregator: Optional[ContentAggregator] = None,
        clock: Callable[[], datetime] = utcnow,
        backoff: Callable[[int], float] = compute_backoff,
    ):
        self.session_factory = session_factory
        self.aggregator = aggregator or ContentAggregator()
        self.clock = clock
        self.backoff = backoff

    # ========================================
    # Enqueue
    # ========================================

    async def enqueue(
        self,
        media_item_id: int,
        requirements: Optional[Sequence[CapabilityRequirement]] = None,
    ) -> List[int]:
        """
        Fan a media item out into one pending job per required capability.

        Args:
            media_item_id: Item in `uploaded` state
            requirements: Capabilities to run; defaults to the plan for the
                          item's kind and its owner's tier

        Returns:
            IDs of the created jobs

        Raises:
            MediaNotFoundError: no such item
            InvalidMediaError: item is not in `uploaded` state
        """
        async with self.session_factory() as session:
            media = await session.get(MediaItem, media_item_id)
            if media is None:
                raise MediaNotFoundError(f"Media {media_item_id} not found")

            # uploaded → queued as a CAS so a double submit creates one job set
            moved = await session.execute(
                update(MediaItem)
                .where(MediaItem.id == media_item_id, MediaItem.status == MediaStatus.UPLOADED)
                .values(status=MediaStatus.QUEUED)
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise InvalidMediaError(
                    f"Media {media_item_id} is {media.status.value}; only uploaded media can be enqueued"
                )

            limits = get_tier_limits(media.owner.tier)
            plan = list(requirements) if requirements is not None else plan_capabilities(media.kind, media.owner.tier)

            jobs = [
                ProcessingJob(
                    media_item_id=media.id,
                    owner_id=media.owner_id,
                    capability=requirement.capability,
                    mandatory=requirement.mandatory,
                    status=JobStatus.PENDING,
                    priority=limits.priority,
                    attempts=0,
                    max_attempts=settings.JOB_MAX_ATTEMPTS,
                )
                for requirement in plan
            ]
            session.add_all(jobs)
            await session.commit()

            job_ids = [job.id for job in jobs]

        logger.info(
            "media_enqueued",
            media_item_id=media_item_id,
            capabilities=[r.capability.value for r in plan],
            priority=limits.priority,
        )
        return job_ids

    # ========================================
    # Claim
    # ========================================

    def _candidates(
        self,
        session: AsyncSession,
        capability: Capability,
        now: datetime,
        kind: Optional[MediaKind] = None,
    ):
        stmt = (
            select(ProcessingJob.id, ProcessingJob.status)
            .where(
                ProcessingJob.capability == capability,
                or_(
                    ProcessingJob.status == JobStatus.PENDING,
                    and_(
                        ProcessingJob.status == JobStatus.RETRYING,
                        ProcessingJob.next_retry_at <= now,
                    ),
                ),
            )
            .order_by(ProcessingJob.priority, ProcessingJob.created_at, ProcessingJob.id)
            .limit(CLAIM_CANDIDATES)
        )

        if kind is not None:
            stmt = stmt.where(
                ProcessingJob.media_item_id.in_(select(MediaItem.id).where(MediaItem.kind == kind))
            )

        dependencies = dependencies_of(capability)
        if dependencies:
            sibling = aliased(ProcessingJob)
            stmt = stmt.where(
                ~exists().where(
                    sibling.media_item_id == ProcessingJob.media_item_id,
                    sibling.capability.in_(sorted(dependencies)),
                    sibling.status.not_in(TERMINAL_JOB_STATUSES),
                )
            )

        if session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True, of=ProcessingJob)
        return stmt

    async def _try_claim(
        self,
        session: AsyncSession,
        job_id: int,
        expected: JobStatus,
        worker_id: str,
        now: datetime,
    ) -> bool:
        """Single conditional UPDATE; True only for the one caller that wins."""
        result = await session.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id, ProcessingJob.status == expected)
            .values(
                status=JobStatus.PROCESSING,
                claimed_at=now,
                claimed_by=worker_id,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_next(
        self,
        capability: Capability,
        worker_id: str,
        kind: Optional[MediaKind] = None,
    ) -> Optional[ProcessingJob]:
        """
        Atomically claim the highest-priority claimable job for a capability,
        optionally only among items of one media kind.

        Returns:
            The claimed job (with media item and owner loaded), or None
        """
        async with self.session_factory() as session:
            for _ in range(CLAIM_ROUNDS):
                now = self.clock()
                rows = (await session.execute(self._candidates(session, capability, now, kind))).all()
                if not rows:
                    await session.rollback()
                    return None

                for job_id, status in rows:
                    if not await self._try_claim(session, job_id, status, worker_id, now):
                        continue

                    media_id = (
                        select(ProcessingJob.media_item_id)
                        .where(ProcessingJob.id == job_id)
                        .scalar_subquery()
                    )
                    await session.execute(
                        update(MediaItem)
                        .where(
                            MediaItem.id == media_id,
                            MediaItem.status == MediaStatus.QUEUED,
                        )
                        .values(status=MediaStatus.PROCESSING)
                        .execution_options(synchronize_session=False)
                    )
                    job = await self._load_job(session, job_id)
                    await session.commit()

                    logger.info(
                        "job_claimed",
                        job_id=job_id,
                        capability=capability.value,
                        worker_id=worker_id,
                        attempt=job.attempts + 1,
                    )
                    return job

                # Every candidate was taken by another worker; look again
                await session.rollback()

        return None

    @staticmethod
    async def _load_job(session: AsyncSession, job_id: int) -> Optional[ProcessingJob]:
        return await session.scalar(
            select(ProcessingJob)
            .options(joinedload(ProcessingJob.media_item))
            .where(ProcessingJob.id == job_id)
            .execution_options(populate_existing=True)
        )

    async def renew_claim(self, job_id: int, worker_id: Optional[str]) -> bool:
        """Refresh claimed_at of a job the worker still holds. False once the claim is gone."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == job_id,
                    ProcessingJob.status == JobStatus.PROCESSING,
                    ProcessingJob.claimed_by == worker_id,
                )
                .values(claimed_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    # ========================================
    # Report
    # ========================================

    async def report_result(
        self,
        job_id: int,
        outcome: JobOutcome,
        worker_id: Optional[str] = None,
    ) -> Optional[ProcessingJob]:
        """
        Record the outcome of a claimed job and advance the media item.

        Results for jobs that are no longer `processing` (reclaimed, or the
        media was deleted) are ignored.
        """
        async with self.session_factory() as session:
            media_item_id = await session.scalar(
                select(ProcessingJob.media_item_id).where(ProcessingJob.id == job_id)
            )
            if media_item_id is None:
                logger.warning("job_result_for_missing_job", job_id=job_id)
                return None

            await session.execute(media_row_lock(media_item_id))
            job = await self._load_job(session, job_id)
            if job is None:
                logger.warning("job_result_for_missing_job", job_id=job_id)
                return None

            if job.status != JobStatus.PROCESSING or (worker_id and job.claimed_by not in (None, worker_id)):
                logger.warning(
                    "job_result_ignored",
                    job_id=job_id,
                    status=job.status.value,
                    claimed_by=job.claimed_by,
                    worker_id=worker_id,
                )
                return job

            if outcome.succeeded:
                await self._complete_job(session, job, outcome)
            else:
                await self._fail_attempt(session, job, outcome.error)

            await session.commit()
            return job

    async def _complete_job(self, session: AsyncSession, job: ProcessingJob, outcome: JobOutcome) -> None:
        now = self.clock()
        job.status = JobStatus.COMPLETED
        job.completed_at = now
        job.claimed_by = None
        job.error_class = None
        job.error_reason = None
        job.error_message = None

        if job.capability == Capability.EMBEDDING:
            job.result_summary = {"vectors": len(outcome.vectors), "cost": str(outcome.cost)}
            await self._store_embeddings(session, job, outcome.vectors)
            return

        payload = outcome.payload or AnalysisPayload()
        job.result_summary = {**payload.summary(), "cost": str(outcome.cost)}
        session.add(AnalysisResult(
            job_id=job.id,
            media_item_id=job.media_item_id,
            capability=job.capability,
            labels=payload.labels,
            entities=payload.entities,
            text=payload.text,
            segments=payload.segments,
            sentiment=payload.sentiment,
            sentiment_scores=payload.sentiment_scores,
            content_warnings=payload.content_warnings,
            provider=payload.provider,
        ))
        await session.flush()

        logger.info("job_completed", job_id=job.id, capability=job.capability.value, cost=str(outcome.cost))
        await self._advance_media(session, job.media_item, priority=job.priority)

    async def _store_embeddings(self, session: AsyncSession, job: ProcessingJob, vectors: List[SegmentVector]) -> None:
        media = job.media_item
        if media.status in (MediaStatus.DELETED, MediaStatus.FAILED):
            return

        await session.execute(delete(Embedding).where(Embedding.media_item_id == media.id))
        for item in vectors:
            session.add(Embedding(
                media_item_id=media.id,
                vector=item.vector,
                source_text=item.source_text,
                content_hash=item.content_hash,
                model=item.model,
                is_empty=item.is_empty,
                segment_index=item.segment_index,
                start_time=item.start_time,
                end_time=item.end_time,
            ))

        media.status = MediaStatus.COMPLETED
        media.completed_at = self.clock()
        media.failure_reason = None
        media.failure_message = None
        await session.flush()

        logger.info("media_completed", media_item_id=media.id, embeddings=len(vectors))

    async def _fail_attempt(self, session: AsyncSession, job: ProcessingJob, error: PipelineError) -> None:
        now = self.clock()
        error_class = error.error_class

        job.error_class = error_class
        job.error_reason = error.reason
        job.error_message = str(error)[:MAX_ERROR_MESSAGE]
        job.claimed_by = None

        if error_class == ErrorClass.BUDGET:
            job.status = JobStatus.FAILED
            job.completed_at = now
        elif error_class == ErrorClass.TRANSIENT:
            job.attempts = min(job.attempts + 1, job.max_attempts)
            if job.attempts < job.max_attempts:
                delay = self.backoff(job.attempts)
                job.status = JobStatus.RETRYING
                job.next_retry_at = now + timedelta(seconds=delay)
                logger.warning(
                    "job_retry_scheduled",
                    job_id=job.id,
                    capability=job.capability.value,
                    attempts=job.attempts,
                    delay_seconds=round(delay, 2),
                    reason=error.reason,
                )
                return
            job.status = JobStatus.FAILED
            job.completed_at = now
            job.error_message = f"{error} (gave up after {job.attempts} attempts)"[:MAX_ERROR_MESSAGE]
        else:
            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.status = JobStatus.FAILED
            job.completed_at = now

        logger.warning(
            "job_failed",
            job_id=job.id,
            capability=job.capability.value,
            mandatory=job.mandatory,
            error_class=error_class.value,
            reason=error.reason,
            attempts=job.attempts,
        )
        await self._on_job_failed(session, job)

    async def _on_job_failed(self, session: AsyncSession, job: ProcessingJob) -> None:
        media = job.media_item
        if media.status in (MediaStatus.DELETED, MediaStatus.FAILED):
            return

        if job.mandatory:
            label = job.capability.value.replace("_", " ")
            await self._fail_media(
                session,
                media,
                reason=job.error_reason or "processing_failed",
                message=f"{label} failed: {job.error_message}",
                cause_class=job.error_class,
            )
            return

        # Optional capability: fail soft, the item may now be ready to aggregate
        await self._advance_media(session, media, priority=job.priority)

    async def _fail_media(
        self,
        session: AsyncSession,
        media: MediaItem,
        reason: str,
        message: str,
        cause_class: Optional[ErrorClass] = None,
    ) -> None:
        """Mark the item failed and stop its outstanding queued jobs."""
        media.status = MediaStatus.FAILED
        media.failure_reason = reason
        media.failure_message = message[:MAX_ERROR_MESSAGE]

        # A budget refusal applies to every remaining paid job of the same owner
        if cause_class == ErrorClass.BUDGET:
            sibling_class, sibling_reason = ErrorClass.BUDGET, reason
        else:
            sibling_class, sibling_reason = ErrorClass.PERMANENT, "media_failed"

        await session.execute(
            update(ProcessingJob)
            .where(
                ProcessingJob.media_item_id == media.id,
                ProcessingJob.status.in_([JobStatus.PENDING, JobStatus.RETRYING]),
            )
            .values(
                status=JobStatus.FAILED,
                completed_at=self.clock(),
                next_retry_at=None,
                error_class=sibling_class,
                error_reason=sibling_reason,
                error_message=message[:MAX_ERROR_MESSAGE],
            )
            .execution_options(synchronize_session=False)
        )
        await session.flush()
        logger.warning("media_failed", media_item_id=media.id, reason=reason)

    # ========================================
    # Aggregation Trigger
    # ========================================

    async def _advance_media(self, session: AsyncSession, media: MediaItem, priority: int) -> None:
        """
        Aggregate and queue the embedding job once every analysis job is
        terminal and no mandatory one failed.
        """
        if media.status in (MediaStatus.DELETED, MediaStatus.FAILED, MediaStatus.COMPLETED):
            return

        jobs = (
            await session.execute(
                select(ProcessingJob).where(ProcessingJob.media_item_id == media.id)
            )
        ).scalars().all()

        analysis_jobs = [job for job in jobs if job.capability in ANALYSIS_CAPABILITIES]
        if any(not job.status.is_terminal for job in analysis_jobs):
            return
        if any(job.mandatory and job.status == JobStatus.FAILED for job in analysis_jobs):
            return
        if any(job.capability == Capability.EMBEDDING and job.status != JobStatus.FAILED for job in jobs):
            return

        try:
            await self.aggregator.aggregate(session, media.id)
        except AggregationError as first:
            logger.warning("aggregation_failed_retrying", media_item_id=media.id, error=str(first))
            try:
                await self.aggregator.aggregate(session, media.id)
            except AggregationError as e:
                logger.error("aggregation_failed", media_item_id=media.id, error=str(e))
                await self._fail_media(session, media, reason=e.reason, message=f"aggregation failed: {e}")
                return

        session.add(ProcessingJob(
            media_item_id=media.id,
            owner_id=media.owner_id,
            capability=Capability.EMBEDDING,
            mandatory=True,
            status=JobStatus.PENDING,
            priority=priority,
            attempts=0,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        ))
        await session.flush()
        logger.info("embedding_job_created", media_item_id=media.id)

    # ========================================
    # Recovery
    # ========================================

    async def reclaim_stale(self, timeout_seconds: Optional[float] = None) -> int:
        """
        Return jobs whose claim has not been renewed within the claim timeout
        to the retry cycle. The lost execution counts as a transient attempt.

        Each job is handled in its own transaction with its item row locked,
        the same order report_result uses.

        Returns:
            Number of jobs reclaimed
        """
        timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.CLAIM_TIMEOUT_SECONDS
        cutoff = self.clock() - timedelta(seconds=timeout_seconds)

        async with self.session_factory() as session:
            candidates = (
                await session.execute(
                    select(ProcessingJob.id, ProcessingJob.media_item_id)
                    .where(
                        ProcessingJob.status == JobStatus.PROCESSING,
                        ProcessingJob.claimed_at < cutoff,
                    )
                    .order_by(ProcessingJob.id)
                )
            ).all()

        reclaimed = 0
        for job_id, media_item_id in candidates:
            async with self.session_factory() as session:
                await session.execute(media_row_lock(media_item_id))
                await session.execute(
                    select(ProcessingJob.id).where(ProcessingJob.id == job_id).with_for_update()
                )
                job = await self._load_job(session, job_id)

                # Renewed or reported since the candidate query
                if job is None or job.status != JobStatus.PROCESSING or as_utc(job.claimed_at) >= cutoff:
                    await session.rollback()
                    continue

                claimed_at = as_utc(job.claimed_at)
                await self._fail_attempt(
                    session,
                    job,
                    TransientProviderError(
                        f"Claim by {job.claimed_by} expired (claimed at {claimed_at.isoformat()})",
                        reason="claim_expired",
                    ),
                )
                await session.commit()
                reclaimed += 1

        if reclaimed:
            logger.warning("stale_jobs_reclaimed", count=reclaimed)
        return reclaimed

    async def retry_media(self, media_item_id: int) -> List[int]:
        """
        Manually retry a failed media item.

        Completed jobs and their results are kept; every other job is reset
        to pending with a fresh attempt budget and the owner's current
        priority.

        Raises:
            MediaNotFoundError / InvalidMediaError (item not failed)
        """
        async with self.session_factory() as session:
            await session.execute(media_row_lock(media_item_id))
            media = await session.get(MediaItem, media_item_id)
            if media is None or media.status == MediaStatus.DELETED:
                raise MediaNotFoundError(f"Media {media_item_id} not found")
            if media.status != MediaStatus.FAILED:
                raise InvalidMediaError(
                    f"Media {media_item_id} is {media.status.value}; only failed media can be retried"
                )

            priority = get_tier_limits(media.owner.tier).priority
            jobs = (
                await session.execute(
                    select(ProcessingJob).where(
                        ProcessingJob.media_item_id == media_item_id,
                        ProcessingJob.status != JobStatus.COMPLETED,
                    )
                )
            ).scalars().all()

            for job in jobs:
                job.status = JobStatus.PENDING
                job.attempts = 0
                job.max_attempts = settings.JOB_MAX_ATTEMPTS
                job.priority = priority
                job.next_retry_at = None
                job.claimed_at = None
                job.claimed_by = None
                job.completed_at = None
                job.error_class = None
                job.error_reason = None
                job.error_message = None

            media.status = MediaStatus.QUEUED
            media.failure_reason = None
            media.failure_message = None
            await session.flush()

            if not jobs:
                # Failed after analysis (aggregation); nothing left to claim
                await self._advance_media(session, media, priority=priority)

            await session.commit()
            reset_ids = [job.id for job in jobs]

        logger.info("media_retry_requested", media_item_id=media_item_id, jobs_reset=len(reset_ids))
        return reset_ids

    # ========================================
    # Statistics
    # ========================================

    async def queue_stats(self) -> Dict[str, Dict[str, int]]:
        """Job counts as {capability: {status: count}}."""
        async with self.session_factory() as session:
            rows = await session.execute(
                select(ProcessingJob.capability, ProcessingJob.status, func.count(ProcessingJob.id))
                .group_by(ProcessingJob.capability, ProcessingJob.status)
            )
            stats: Dict[str, Dict[str, int]] = {}
            for capability, status, count in rows.all():
                stats.setdefault(capability.value, {})[status.value] = count
            return stats


# ========================================
# Dependency Injection
# ========================================

def get_orchestrator() -> JobOrchestrator:
    from app.db.session import AsyncSessionLocal
    return JobOrchestrator(AsyncSessionLocal)
