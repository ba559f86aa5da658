"""
Pipeline Worker Pool

Asyncio worker loops pulling from the job table. Each lane (a capability,
split by media kind for object and celebrity detection) gets its own number
of loops from WORKER_CONCURRENCY, so expensive work such as video analysis
can be held to fewer concurrent calls than image analysis.

Each loop: take a lane slot → claim → run → report, sleeping for the poll
interval when no job is claimable. With LaneSlots the per-lane limit holds
across every process (Celery drains included), not just inside this pool.
Retry timing is a property of the rows (next_retry_at); no loop ever blocks
waiting for a specific job.
"""

import asyncio
import socket
import uuid
from typing import Dict, List, Optional

from app.core.config import settings
from app.core.logging import get_logger
from app.models.jobs import Capability
from app.models.media import MediaKind
from app.services.capabilities import Lane, all_lanes, lane_concurrency, lane_for
from app.services.orchestrator import JobOrchestrator
from app.workers.runner import JobRunner
from app.workers.slots import LaneSlots

logger = get_logger(__name__)


def make_worker_id(lane: Lane, index: int) -> str:
    return f"{socket.gethostname()}:{lane.name}:{index}:{uuid.uuid4().hex[:8]}"


class PipelineWorkerPool:
    """
    Usage:
    ------
    pool = PipelineWorkerPool(orchestrator, runner, slots=LaneSlots())
    await pool.start()
    ...
    await pool.stop()
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        runner: JobRunner,
        concurrency: Optional[Dict[str, int]] = None,
        poll_interval: Optional[float] = None,
        slots: Optional[LaneSlots] = None,
    ):
        self.orchestrator = orchestrator
        self.runner = runner
        self.concurrency = concurrency if concurrency is not None else settings.WORKER_CONCURRENCY
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self.slots = slots

        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()

        for lane in all_lanes():
            for index in range(lane_concurrency(lane, self.concurrency)):
                worker_id = make_worker_id(lane, index)
                self._tasks.append(asyncio.create_task(
                    self._worker_loop(lane, worker_id),
                    name=worker_id,
                ))

        logger.info("worker_pool_started", workers=len(self._tasks))

    async def stop(self) -> None:
        """Signal loops to exit after their current job, then wait for them."""
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("worker_pool_stopped")

    async def run_once(
        self,
        capability: Capability,
        worker_id: str,
        kind: Optional[MediaKind] = None,
    ) -> bool:
        """Claim and run at most one job. True if a job was processed."""
        if self.slots is None:
            return await self._claim_and_run(capability, worker_id, kind)

        async with self.slots.hold(lane_for(capability, kind)) as held:
            if not held:
                return False
            return await self._claim_and_run(capability, worker_id, kind)

    async def _claim_and_run(self, capability: Capability, worker_id: str, kind: Optional[MediaKind]) -> bool:
        job = await self.orchestrator.claim_next(capability, worker_id, kind=kind)
        if job is None:
            return False
        await self.runner.run(job)
        return True

    async def drain(
        self,
        capability: Capability,
        max_jobs: int,
        worker_id: Optional[str] = None,
        kind: Optional[MediaKind] = None,
    ) -> int:
        """Process claimable jobs until none are left, no slot is free, or max_jobs is reached."""
        worker_id = worker_id or make_worker_id(lane_for(capability, kind), 0)
        processed = 0
        while processed < max_jobs and await self.run_once(capability, worker_id, kind):
            processed += 1
        return processed

    async def _worker_loop(self, lane: Lane, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                worked = await self.run_once(lane.capability, worker_id, lane.kind)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Job stays `processing`; reclaim_stale returns it to the queue
                logger.exception("worker_iteration_failed", worker_id=worker_id, lane=lane.name)
                worked = False

            if not worked:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
