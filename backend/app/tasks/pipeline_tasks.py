"""
Celery tasks for the media pipeline.

This module contains background tasks for:
- Enqueuing an uploaded media item and kicking its capability queues
- Draining claimable jobs for one capability
- Returning stale claims to the retry cycle
- Monitoring queue state

The job table is the queue; Celery messages only wake workers up. A task
that is lost or runs twice cannot lose or duplicate work because every job
is claimed with an atomic compare-and-swap.
"""

import asyncio
import logging
from typing import Iterable

from celery import Task
from kombu.exceptions import OperationalError
from sqlalchemy import select

from app.core.config import settings
from app.db.redis import close_redis
from app.db.session import AsyncSessionLocal, engine
from app.models.jobs import Capability, ProcessingJob
from app.models.media import MediaItem, MediaKind
from app.services.capabilities import lane_for
from app.services.orchestrator import JobOrchestrator
from app.workers import build_worker_pool
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ========================================
# Async Helper
# ========================================

def run_async(coro):
    """
    Run a coroutine from a synchronous Celery task.

    Every task runs in a fresh event loop, so pooled DB and Redis connections
    are released before the loop closes.
    """
    async def _run():
        try:
            return await coro
        finally:
            await engine.dispose()
            await close_redis()

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_run())

    # Event loop already running (tests): run in a separate thread
    import concurrent.futures

    with concurrent.futures.ThreadPoolExecutor() as executor:
        return executor.submit(asyncio.run, _run()).result()


def wake_workers(capabilities: Iterable[Capability], kind: MediaKind = MediaKind.IMAGE) -> None:
    """
    Send one drain task per capability to its lane's queue.

    Kind-split capabilities carry the media kind, so a video drain only
    claims video jobs. A broker outage only delays processing: beat drains
    every lane each minute.
    """
    for capability in sorted(set(capabilities)):
        lane = lane_for(capability, kind)
        kwargs = {'kind': lane.kind.value} if lane.kind else {}
        try:
            drain_capability.apply_async(args=(capability.value,), kwargs=kwargs, queue=lane.queue)
        except (OperationalError, OSError) as e:
            logger.warning(f"Could not wake {lane.name} workers: {e}")



# ========================================
# Base Task Class
# ========================================

class PipelineTask(Task):
    """Retries only infrastructure failures (DB/Redis down); job-level retries live in the job table."""

    autoretry_for = (OSError,)
    retry_kwargs = {'max_retries': 3}
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


# ========================================
# Main Tasks
# ========================================

@celery_app.task(
    base=PipelineTask,
    name='pipeline.enqueue_media',
    bind=True,
    max_retries=3
)
def enqueue_media(self, media_item_id: int) -> dict:
    """
    Enqueue an uploaded media item and wake the workers for its capabilities.

    Returns:
        {'success': bool, 'media_item_id': int, 'job_ids': [...]}
    """
    async def _enqueue():
        orchestrator = JobOrchestrator(AsyncSessionLocal)
        job_ids = await orchestrator.enqueue(media_item_id)

        async with AsyncSessionLocal() as session:
            media = await session.get(MediaItem, media_item_id)
            rows = await session.execute(
                select(ProcessingJob.capability).where(ProcessingJob.id.in_(job_ids))
            )
            capabilities = sorted(set(rows.scalars().all()))

        wake_workers(capabilities, media.kind)
        return job_ids

    job_ids = run_async(_enqueue())
    logger.info(f"Enqueued media {media_item_id}: {len(job_ids)} jobs")
    return {'success': True, 'media_item_id': media_item_id, 'job_ids': job_ids}


@celery_app.task(
    base=PipelineTask,
    name='pipeline.drain_capability',
    bind=True,
)
def drain_capability(self, capability: str, max_jobs: int = None, kind: str = None) -> dict:
    """
    Claim and run jobs for one lane until none are claimable.

    Every job runs under a lane slot (see LaneSlots), so the number of
    drains per lane across all Celery workers never exceeds
    WORKER_CONCURRENCY; a drain that finds the lane full exits at once.

    Args:
        capability: Capability value, e.g. "transcription"
        max_jobs: Upper bound per task run (default CELERY_DRAIN_BATCH_SIZE)
        kind: Media kind ("image"/"video") for kind-split capabilities
    """
    lane = lane_for(Capability(capability), MediaKind(kind) if kind else None)
    limit = max_jobs or settings.CELERY_DRAIN_BATCH_SIZE
    worker_id = f"celery:{self.request.hostname}:{self.request.id}"

    async def _drain():
        pool = build_worker_pool()
        return await pool.drain(lane.capability, limit, worker_id=worker_id, kind=lane.kind)

    processed = run_async(_drain())
    if processed:
        logger.info(f"Drained {processed} {lane.name} jobs")
        if lane.capability != Capability.EMBEDDING:
            # Finished analysis may have unblocked text analysis or created an embedding job
            wake_workers((Capability.TEXT_ANALYSIS, Capability.EMBEDDING))
    return {'success': True, 'capability': capability, 'kind': kind, 'processed': processed}


@celery_app.task(name='pipeline.reclaim_stale_jobs')
def reclaim_stale_jobs() -> dict:
    """Return jobs whose worker died mid-claim to the retry cycle."""
    async def _reclaim():
        return await JobOrchestrator(AsyncSessionLocal).reclaim_stale()

    reclaimed = run_async(_reclaim())
    return {'success': True, 'reclaimed': reclaimed}


@celery_app.task(name='pipeline.get_queue_stats')
def get_queue_stats() -> dict:
    """Job counts per capability and status, for monitoring."""
    async def _stats():
        return await JobOrchestrator(AsyncSessionLocal).queue_stats()

    stats = run_async(_stats())
    logger.info(f"Queue stats: {stats}")
    return {'success': True, 'stats': stats}
