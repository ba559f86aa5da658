"""
Celery application instance and configuration.

Queues mirror the pipeline stages so each can be scaled separately:
image-analysis, video-analysis, transcription, text-analysis,
embedding-generation, plus maintenance and monitoring.
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_init

from app.core.config import settings
from app.core.env_validation import validate_environment
from app.services.capabilities import all_lanes

# Create Celery application
celery_app = Celery(
    "medialens",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['app.tasks.pipeline_tasks'],
)

# Configure Celery
celery_app.conf.update(
    task_serializer=settings.CELERY_TASK_SERIALIZER,
    result_serializer=settings.CELERY_RESULT_SERIALIZER,
    accept_content=settings.celery_accept_content_list,
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=settings.CELERY_ENABLE_UTC,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    result_expires=3600,  # 1 hour
    # Jobs are durable rows; a lost task message only delays the next drain
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# Celery Beat Schedule (Periodic Tasks)
# One drain per lane every minute; claims are atomic, so overlapping drains
# never process the same job twice, and lane slots cap how many run at once.
celery_app.conf.beat_schedule = {
    f'drain-{lane.name}': {
        'task': 'pipeline.drain_capability',
        'schedule': crontab(minute='*'),
        'args': (lane.capability.value,),
        'kwargs': {'kind': lane.kind.value} if lane.kind else {},
        'options': {'queue': lane.queue},
    }
    for lane in all_lanes()
}
celery_app.conf.beat_schedule.update({
    'reclaim-stale-jobs': {
        'task': 'pipeline.reclaim_stale_jobs',
        'schedule': crontab(minute='*/5'),  # Every 5 minutes
        'options': {'queue': 'maintenance'},
    },
    'get-queue-stats': {
        'task': 'pipeline.get_queue_stats',
        'schedule': crontab(minute='*/15'),  # Every 15 minutes
        'options': {'queue': 'monitoring'},
    },
})

# Task routing
celery_app.conf.task_routes = {
    'pipeline.enqueue_media': {'queue': 'maintenance'},
    'pipeline.reclaim_stale_jobs': {'queue': 'maintenance'},
    'pipeline.get_queue_stats': {'queue': 'monitoring'},
}

# Auto-discover tasks from app.tasks
celery_app.autodiscover_tasks(['app.tasks'])


@worker_init.connect
def check_environment(**kwargs):
    """Refuse to start a worker with unusable configuration."""
    validate_environment()
