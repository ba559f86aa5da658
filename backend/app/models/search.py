"""
Search History Model

Every executed search is logged once, after it runs. Rows are immutable.
The query embedding is only stored when SEARCH_LOG_EMBEDDINGS is enabled.
"""

from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.config import settings
from app.db.base import BaseModel, JSONType


class SearchHistory(BaseModel):
    __tablename__ = "search_history"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    query_text: Mapped[str] = mapped_column(Text, nullable=False)

    filters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cached: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Served from the short-lived result cache"
    )

    latency_ms: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    period_key: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        index=True,
    )

    query_embedding = mapped_column(
        Vector(settings.EMBEDDING_DIMENSION),
        nullable=True,
    )

    top_media_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
