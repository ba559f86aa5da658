"""
Pydantic schemas for search endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.media import MediaKind


# ========================================
# Request Schemas
# ========================================

class SearchFiltersRequest(BaseModel):
    """Pre-filters applied before ranking."""

    kinds: List[MediaKind] = Field(default_factory=list, description="Restrict to images and/or videos")
    uploaded_after: Optional[datetime] = None
    uploaded_before: Optional[datetime] = None
    tags: List[str] = Field(
        default_factory=list,
        max_length=20,
        description="Items must carry every listed tag",
        examples=[["bicycle", "street"]]
    )

    @model_validator(mode="after")
    def check_date_range(self) -> "SearchFiltersRequest":
        if self.uploaded_after and self.uploaded_before and self.uploaded_after > self.uploaded_before:
            raise ValueError("uploaded_after must not be later than uploaded_before")
        return self


class SearchRequest(BaseModel):
    """Natural-language search over the caller's processed media."""

    query: str = Field(
        ...,
        max_length=1000,
        description="Free text; an empty query returns no results",
        examples=["red bicycle on a beach"]
    )
    filters: SearchFiltersRequest = Field(default_factory=SearchFiltersRequest)
    limit: Optional[int] = Field(None, ge=1, le=100)
    offset: int = Field(0, ge=0)


# ========================================
# Response Schemas
# ========================================

class MatchedSegmentResponse(BaseModel):
    segment_index: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    text: str = ""


class SearchResultResponse(BaseModel):
    media_item_id: int
    similarity: float
    distance: float
    kind: MediaKind
    filename: str
    uploaded_at: datetime
    snippet: str = ""
    matched_segment: Optional[MatchedSegmentResponse] = None


class SearchResponseSchema(BaseModel):
    query: str
    results: List[SearchResultResponse]
    count: int
    cached: bool
    latency_ms: float
    limit: int
    offset: int


class SearchHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    query_text: str
    filters: Optional[dict] = None
    limit: int
    offset: int
    result_count: int
    cached: bool
    latency_ms: Optional[float] = None
    created_at: datetime


class SearchHistoryResponse(BaseModel):
    items: List[SearchHistoryEntry]
    limit: int
    offset: int
