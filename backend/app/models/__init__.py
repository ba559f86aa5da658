"""
Database Models

Import models from this module so every table is registered with SQLAlchemy
(Alembic autogenerate and relationship resolution depend on it):

    from app.models import MediaItem, ProcessingJob, CostRecord
"""

from app.models.billing import BudgetPeriod, CostRecord
from app.models.jobs import (
    AnalysisResult,
    Capability,
    JobStatus,
    ProcessingJob,
    TERMINAL_JOB_STATUSES,
)
from app.models.media import (
    AggregatedContent,
    Embedding,
    MediaItem,
    MediaKind,
    MediaStatus,
    MediaTag,
)
from app.models.search import SearchHistory
from app.models.user import ServiceTier, TierLimits, User, get_tier_limits

__all__ = [
    # User
    "User",
    "ServiceTier",
    "TierLimits",
    "get_tier_limits",
    # Media
    "MediaItem",
    "MediaKind",
    "MediaStatus",
    "MediaTag",
    "AggregatedContent",
    "Embedding",
    # Jobs
    "ProcessingJob",
    "AnalysisResult",
    "Capability",
    "JobStatus",
    "TERMINAL_JOB_STATUSES",
    # Billing
    "CostRecord",
    "BudgetPeriod",
    # Search
    "SearchHistory",
]
