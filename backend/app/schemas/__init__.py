"""
Pydantic schemas for request/response validation.

Import all schemas here for easy access.
"""

from app.schemas.media import (
    JobResponse,
    MediaDetailResponse,
    MediaListResponse,
    MediaRegisterRequest,
    MediaResponse,
    MessageResponse,
    ProcessResponse,
)
from app.schemas.search import (
    MatchedSegmentResponse,
    SearchFiltersRequest,
    SearchHistoryEntry,
    SearchHistoryResponse,
    SearchRequest,
    SearchResponseSchema,
    SearchResultResponse,
)
from app.schemas.usage import UsageResponse

__all__ = [
    # Media
    "MediaRegisterRequest",
    "MediaResponse",
    "MediaDetailResponse",
    "MediaListResponse",
    "JobResponse",
    "ProcessResponse",
    "MessageResponse",
    # Search
    "SearchRequest",
    "SearchFiltersRequest",
    "SearchResponseSchema",
    "SearchResultResponse",
    "MatchedSegmentResponse",
    "SearchHistoryEntry",
    "SearchHistoryResponse",
    # Usage
    "UsageResponse",
]
