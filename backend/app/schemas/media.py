"""
Pydantic schemas for media endpoints.

These schemas define the request/response structures for registering
uploaded media, inspecting its processing jobs and triggering retries.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.errors import ErrorClass
from app.models.jobs import Capability, JobStatus
from app.models.media import MediaKind, MediaStatus


# ========================================
# Request Schemas
# ========================================

class MediaRegisterRequest(BaseModel):
    """Registration of a file the upload service has already stored."""

    locator: str = Field(
        ...,
        description="Storage key of the uploaded object",
        min_length=1,
        max_length=500,
        examples=["uploads/42/2024/05/beach.jpg"]
    )

    filename: str = Field(..., min_length=1, max_length=255, examples=["beach.jpg"])

    mime_type: str = Field(..., min_length=3, max_length=100, examples=["image/jpeg"])

    size_bytes: int = Field(..., gt=0, description="File size in bytes")

    duration_seconds: Optional[float] = Field(
        None,
        ge=0,
        description="Video duration, used for cost estimates"
    )

    process: bool = Field(
        True,
        description="Enqueue for analysis immediately after registration"
    )

    @field_validator('locator', 'filename')
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be empty")
        return v


# ========================================
# Response Schemas
# ========================================

class JobResponse(BaseModel):
    """One capability job of a media item."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    capability: Capability
    mandatory: bool
    status: JobStatus
    priority: int
    attempts: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_class: Optional[ErrorClass] = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None
    result_summary: Optional[dict] = None


class MediaResponse(BaseModel):
    """Media item as listed."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: MediaKind
    filename: str
    mime_type: str
    size_bytes: int
    duration_seconds: Optional[float] = None
    status: MediaStatus
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    uploaded_at: datetime
    completed_at: Optional[datetime] = None


class MediaDetailResponse(MediaResponse):
    """Media item with its jobs and tags."""

    jobs: List[JobResponse] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


class MediaListResponse(BaseModel):
    items: List[MediaResponse]
    total: int
    limit: int
    offset: int


class ProcessResponse(BaseModel):
    """Result of enqueueing or retrying a media item."""

    media_item_id: int
    job_ids: List[int]
    message: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
    success: bool = True
