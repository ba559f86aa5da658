"""
Background workers: the asyncio worker pool, the single-job runner and the
Celery application.
"""

import asyncio
import signal
from typing import Optional

from app.core.config import settings
from app.core.env_validation import validate_environment
from app.core.logging import get_logger, setup_logging
from app.db.redis import close_redis
from app.db.session import AsyncSessionLocal, close_db
from app.services.adapters.registry import build_adapter_registry
from app.services.embeddings.service import EmbeddingService
from app.services.ledger import CostLedger
from app.services.orchestrator import JobOrchestrator
from app.workers.pool import PipelineWorkerPool
from app.workers.runner import JobRunner
from app.workers.slots import LaneSlots

logger = get_logger(__name__)


def build_worker_pool(
    poll_interval: Optional[float] = None,
    slots: Optional[LaneSlots] = None,
) -> PipelineWorkerPool:
    """
    Wire the pool to the application database, providers and ledger.

    Provider clients are created here, inside the caller's event loop.
    Lane slots default to the shared Redis ones.
    """
    ledger = CostLedger(AsyncSessionLocal)
    orchestrator = JobOrchestrator(AsyncSessionLocal)
    runner = JobRunner(
        orchestrator=orchestrator,
        ledger=ledger,
        adapters=build_adapter_registry(ledger),
        embedding_service=EmbeddingService(ledger=ledger),
        session_factory=AsyncSessionLocal,
    )
    return PipelineWorkerPool(
        orchestrator,
        runner,
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval=poll_interval,
        slots=slots or LaneSlots(),
    )


async def serve(pool: PipelineWorkerPool, stop: asyncio.Event) -> None:
    """Run the pool's worker loops until `stop` is set."""
    await pool.start()
    try:
        await stop.wait()
    finally:
        await pool.stop()


async def _serve_forever() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await serve(build_worker_pool(), stop)
    finally:
        await close_redis()
        await close_db()


def main() -> None:
    """Console entry point: `medialens-workers`."""
    setup_logging()
    validate_environment()
    logger.info("worker_process_starting", concurrency=settings.WORKER_CONCURRENCY)
    asyncio.run(_serve_forever())


__all__ = ["JobRunner", "LaneSlots", "PipelineWorkerPool", "build_worker_pool", "main", "serve"]
