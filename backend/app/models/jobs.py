"""
Processing Job Models

Models Included:
----------------
1. ProcessingJob - One unit of queued work for one media item
2. AnalysisResult - The immutable output of a completed analysis job
3. Capability / JobStatus (Enums)

Queue State Lives Here:
-----------------------
There is no in-memory queue. A job is claimable when its row is `pending`,
or `retrying` with `next_retry_at` in the past. Workers claim jobs with a
conditional UPDATE on `status` so exactly one worker wins each job.

    pending ──claim──► processing ──success──► completed
                           │
                           ├─transient, attempts left──► retrying ──(due)──► processing
                           ├─transient, exhausted──────► failed
                           ├─permanent─────────────────► failed
                           └─budget────────────────────► failed (attempt not counted)
"""

import enum
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.errors import ErrorClass
from app.db.base import BaseModel, JSONType, String100

if TYPE_CHECKING:
    from app.models.media import MediaItem


class Capability(str, enum.Enum):
    """
    Closed set of job kinds: one per analysis adapter, plus embedding.

    The worker dispatch table maps each value to exactly one adapter.
    """

    OBJECT_DETECTION = "object_detection"
    TEXT_DETECTION = "text_detection"
    CELEBRITY_DETECTION = "celebrity_detection"
    TRANSCRIPTION = "transcription"
    TEXT_ANALYSIS = "text_analysis"
    EMBEDDING = "embedding"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class ProcessingJob(BaseModel):
    """
    A single capability job for one media item.

    Table: processing_jobs
    ----------------------
    Ordering for claims: priority ASC (copied from the owner's tier at
    enqueue time), then created_at ASC, then id ASC.

    `attempts` counts executions that ended in a provider error; it never
    exceeds `max_attempts`. Budget refusals do not count.
    """

    __tablename__ = "processing_jobs"

    media_item_id: Mapped[int] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    owner_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Copied from the media item; budget checks are per owner"
    )

    capability: Mapped[Capability] = mapped_column(
        nullable=False,
        index=True,
    )

    mandatory: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Optional capabilities fail soft and are left out of aggregation"
    )

    status: Mapped[JobStatus] = mapped_column(
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=10,
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )

    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )

    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    claimed_by: Mapped[Optional[str]] = mapped_column(
        String100,
        nullable=True,
        comment="Worker identifier holding the claim"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    error_class: Mapped[Optional[ErrorClass]] = mapped_column(
        nullable=True,
    )

    error_reason: Mapped[Optional[str]] = mapped_column(
        String100,
        nullable=True,
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    result_summary: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Small summary of the outcome (counts, cost) for listings"
    )

    media_item: Mapped["MediaItem"] = relationship("MediaItem", back_populates="jobs")

    result: Mapped[Optional["AnalysisResult"]] = relationship(
        "AnalysisResult",
        back_populates="job",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_processing_jobs_claim_order", "status", "capability", "priority", "created_at"),
    )

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def __repr__(self) -> str:
        return (
            f"ProcessingJob(id={self.id}, media_item_id={self.media_item_id}, "
            f"capability={self.capability.value}, status={self.status.value})"
        )


class AnalysisResult(BaseModel):
    """
    Output of one completed analysis job. Written once, never updated.

    labels:   [{"name": "Bicycle", "confidence": 0.97}, ...]
    entities: [{"name": "Paris", "type": "LOCATION", "confidence": 0.91}, ...]
    text:     detected text or transcript
    segments: transcript segments [{"start": 0.0, "end": 4.2, "text": "..."}]
    """

    __tablename__ = "analysis_results"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("processing_jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    media_item_id: Mapped[int] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    capability: Mapped[Capability] = mapped_column(
        nullable=False,
    )

    labels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    entities: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    segments: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    sentiment: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    sentiment_scores: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    content_warnings: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    provider: Mapped[Optional[str]] = mapped_column(String100, nullable=True)

    job: Mapped["ProcessingJob"] = relationship("ProcessingJob", back_populates="result")
