"""
Media Models

Models Included:
----------------
1. MediaItem - An uploaded image or video and its lifecycle status
2. MediaTag - Normalized tags (from aggregation) used as a search pre-filter
3. AggregatedContent - One merged text blob + tags per media item
4. Embedding - Vectors derived from aggregated content (whole item or video segment)
5. MediaKind / MediaStatus (Enums)

Relationships:
--------------
- User (1) ←→ (Many) MediaItem
- MediaItem (1) ←→ (0..1) AggregatedContent
- MediaItem (1) ←→ (Many) Embedding, MediaTag, ProcessingJob

A media item is fully processed only when it has an AggregatedContent row
and at least one Embedding row pointing at it.
"""

import enum
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.config import settings
from app.db.base import BaseModel, JSONType, String100, String255, String500, utcnow

if TYPE_CHECKING:
    from app.models.jobs import ProcessingJob
    from app.models.user import User


# ================================
# Enums
# ================================

class MediaKind(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"


class MediaStatus(str, enum.Enum):
    """
    Media lifecycle.

    uploaded → queued → processing → completed | failed
    Any state → deleted (soft delete, never hard-deleted while referenced)
    """

    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DELETED = "deleted"


# ================================
# MediaItem
# ================================

class MediaItem(BaseModel):
    """
    An uploaded file handed to the pipeline by the upload service.

    Table: media_items
    ------------------
    Only the orchestrator moves `status` once the item has been enqueued.
    `failure_reason` holds a stable code (budget_exceeded, invalid_input, ...)
    and `failure_message` a human-readable explanation for the owner.
    """

    __tablename__ = "media_items"

    owner_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    kind: Mapped[MediaKind] = mapped_column(
        nullable=False,
        index=True,
        comment="image or video"
    )

    locator: Mapped[str] = mapped_column(
        String500,
        nullable=False,
        comment="Storage key of the uploaded object"
    )

    filename: Mapped[str] = mapped_column(
        String255,
        nullable=False,
    )

    mime_type: Mapped[str] = mapped_column(
        String100,
        nullable=False,
    )

    size_bytes: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    duration_seconds: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Video duration when known (used for cost estimates)"
    )

    status: Mapped[MediaStatus] = mapped_column(
        nullable=False,
        default=MediaStatus.UPLOADED,
        index=True,
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        String100,
        nullable=True,
    )

    failure_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
        comment="Upload confirmation time; newest first breaks search ties"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    owner: Mapped["User"] = relationship("User", lazy="joined")

    jobs: Mapped[list["ProcessingJob"]] = relationship(
        "ProcessingJob",
        back_populates="media_item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProcessingJob.id",
    )

    tags: Mapped[list["MediaTag"]] = relationship(
        "MediaTag",
        back_populates="media_item",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_deleted(self) -> bool:
        return self.status == MediaStatus.DELETED

    def __repr__(self) -> str:
        return f"MediaItem(id={self.id}, kind={self.kind.value}, status={self.status.value})"


class MediaTag(BaseModel):
    """Lower-cased tag attached to a media item by aggregation."""

    __tablename__ = "media_tags"

    media_item_id: Mapped[int] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    tag: Mapped[str] = mapped_column(
        String100,
        nullable=False,
        index=True,
    )

    media_item: Mapped["MediaItem"] = relationship("MediaItem", back_populates="tags")

    __table_args__ = (
        UniqueConstraint("media_item_id", "tag", name="uq_media_tag"),
    )


# ================================
# AggregatedContent
# ================================

class AggregatedContent(BaseModel):
    """
    Merged, normalized text for one media item.

    Derived deterministically from the completed mandatory analysis results;
    recomputing it on the same inputs produces identical `text` and `tags`.
    """

    __tablename__ = "aggregated_contents"

    media_item_id: Mapped[int] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    tags: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
        comment="Deduplicated label/entity names above the confidence threshold"
    )

    content_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="sha256 of the normalized text"
    )

    source_result_ids: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    content_metadata: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Sentiment, content warnings, transcript segments"
    )


# ================================
# Embedding
# ================================

class Embedding(BaseModel):
    """
    Vector for a media item's aggregated content.

    One row covers the whole item (start_time/end_time NULL); video items
    may add one row per transcript window with temporal bounds. Rows are
    always written, even when the vector itself was served from cache.
    """

    __tablename__ = "embeddings"

    media_item_id: Mapped[int] = mapped_column(
        ForeignKey("media_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    vector = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=False,
        comment="Embedding vector (cosine distance)"
    )

    source_text: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
    )

    content_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    model: Mapped[str] = mapped_column(
        String100,
        nullable=False,
    )

    is_empty: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Zero vector from empty text; never matched by search"
    )

    segment_index: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    start_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (
        Index(
            "ix_embeddings_vector_hnsw",
            "vector",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"vector": "vector_cosine_ops"},
        ),
    )
