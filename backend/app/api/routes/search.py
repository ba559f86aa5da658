"""
Search API endpoints.

Natural-language search over the caller's processed media, and the
caller's search history.
"""

import logging

from fastapi import APIRouter, Depends, Query

from app.core.auth import get_current_active_user
from app.models.user import User
from app.schemas.search import (
    SearchHistoryEntry,
    SearchHistoryResponse,
    SearchRequest,
    SearchResponseSchema,
)
from app.services.search import SearchFilters, SearchService, get_search_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.post(
    "",
    response_model=SearchResponseSchema,
    summary="Search media",
    description=(
        "Rank the caller's completed media by semantic similarity to the query. "
        "Filters are applied before ranking; results below the similarity "
        "threshold are omitted, so a page may hold fewer than `limit` items."
    ),
    responses={
        429: {"description": "Monthly search limit reached"},
        503: {"description": "Search temporarily unavailable (retryable)"},
    }
)
async def search_media(
    request: SearchRequest,
    current_user: User = Depends(get_current_active_user),
    service: SearchService = Depends(get_search_service),
):
    filters = SearchFilters(
        kinds=list(request.filters.kinds),
        uploaded_after=request.filters.uploaded_after,
        uploaded_before=request.filters.uploaded_before,
        tags=list(request.filters.tags),
    )
    response = await service.search(
        current_user,
        request.query,
        filters=filters,
        limit=request.limit,
        offset=request.offset,
    )
    return SearchResponseSchema(
        query=response.query,
        results=response.results,
        count=response.count,
        cached=response.cached,
        latency_ms=response.latency_ms,
        limit=response.limit,
        offset=response.offset,
    )


@router.get(
    "/history",
    response_model=SearchHistoryResponse,
    summary="Search history",
)
async def search_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_active_user),
    service: SearchService = Depends(get_search_service),
):
    """The caller's past searches, newest first."""
    rows = await service.history(current_user.id, limit=limit, offset=offset)
    return SearchHistoryResponse(
        items=[SearchHistoryEntry.model_validate(row) for row in rows],
        limit=limit,
        offset=offset,
    )
