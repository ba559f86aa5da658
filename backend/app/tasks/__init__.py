"""
Celery tasks for background processing.
"""

from app.tasks.pipeline_tasks import (
    drain_capability,
    enqueue_media,
    get_queue_stats,
    reclaim_stale_jobs,
    wake_workers,
)

__all__ = [
    "drain_capability",
    "enqueue_media",
    "get_queue_stats",
    "reclaim_stale_jobs",
    "wake_workers",
]
