"""
Media API endpoints.

This module provides REST API endpoints for registering uploaded media,
inspecting processing state, and driving the pipeline (process, retry,
delete).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.core.auth import get_current_active_user
from app.models.jobs import JobStatus
from app.models.media import MediaItem, MediaKind, MediaStatus
from app.models.user import User
from app.schemas.media import (
    JobResponse,
    MediaDetailResponse,
    MediaListResponse,
    MediaRegisterRequest,
    MediaResponse,
    MessageResponse,
    ProcessResponse,
)
from app.services.media import MediaRegistration, MediaService, get_media_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["Media"])


# ========================================
# Helper Functions
# ========================================

def _to_detail(media: MediaItem) -> MediaDetailResponse:
    """Convert a MediaItem (jobs and tags loaded) to the detail schema."""
    return MediaDetailResponse(
        **MediaResponse.model_validate(media).model_dump(),
        jobs=[JobResponse.model_validate(job) for job in media.jobs],
        tags=sorted(tag.tag for tag in media.tags),
    )


async def _enqueue(service: MediaService, user: User, media_item_id: int, retry: bool = False) -> ProcessResponse:
    if retry:
        job_ids = await service.retry(user, media_item_id)
    else:
        job_ids = await service.process(user, media_item_id)

    media = await service.get_media(user.id, media_item_id)
    pending = {job.capability for job in media.jobs if job.status == JobStatus.PENDING}

    from app.tasks.pipeline_tasks import wake_workers
    wake_workers(pending, media.kind)

    return ProcessResponse(
        media_item_id=media_item_id,
        job_ids=job_ids,
        message=f"{len(job_ids)} jobs queued" if job_ids else "Media queued for aggregation",
    )


# ========================================
# Endpoints
# ========================================

@router.post(
    "",
    response_model=MediaDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register uploaded media",
    description="Record a file stored by the upload service and (by default) enqueue it for analysis",
    responses={
        201: {"description": "Media registered"},
        422: {"description": "Unsupported type or invalid size"},
        429: {"description": "Monthly upload limit or storage limit reached"},
    }
)
async def register_media(
    request: MediaRegisterRequest,
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    media = await service.register(
        current_user,
        MediaRegistration(
            locator=request.locator,
            filename=request.filename,
            mime_type=request.mime_type,
            size_bytes=request.size_bytes,
            duration_seconds=request.duration_seconds,
        ),
    )

    if request.process:
        result = await _enqueue(service, current_user, media.id)
        logger.info(f"Registered and queued media {media.id}: {result.message}")

    return _to_detail(await service.get_media(current_user.id, media.id))


@router.get(
    "",
    response_model=MediaListResponse,
    summary="List media",
)
async def list_media(
    status_filter: Optional[MediaStatus] = Query(None, alias="status"),
    kind: Optional[MediaKind] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    """List the caller's media, newest upload first."""
    items, total = await service.list_media(
        current_user.id, status=status_filter, kind=kind, limit=limit, offset=offset
    )
    return MediaListResponse(
        items=[MediaResponse.model_validate(item) for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{media_id}",
    response_model=MediaDetailResponse,
    summary="Get media with its jobs",
    responses={404: {"description": "Media not found"}},
)
async def get_media(
    media_id: int,
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    return _to_detail(await service.get_media(current_user.id, media_id))


@router.post(
    "/{media_id}/process",
    response_model=ProcessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue media for analysis",
    responses={
        404: {"description": "Media not found"},
        409: {"description": "Media is not in uploaded state"},
    }
)
async def process_media(
    media_id: int,
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    return await _enqueue(service, current_user, media_id)


@router.post(
    "/{media_id}/retry",
    response_model=ProcessResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry failed media",
    description="Reset every non-completed job of a failed item; completed results are kept",
    responses={
        404: {"description": "Media not found"},
        409: {"description": "Media has not failed"},
    }
)
async def retry_media(
    media_id: int,
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    return await _enqueue(service, current_user, media_id, retry=True)


@router.delete(
    "/{media_id}",
    response_model=MessageResponse,
    summary="Delete media",
    description="Soft delete: jobs, results and vectors are removed, cost records are kept",
    responses={404: {"description": "Media not found"}},
)
async def delete_media(
    media_id: int,
    current_user: User = Depends(get_current_active_user),
    service: MediaService = Depends(get_media_service),
):
    await service.delete_media(current_user.id, media_id)
    return MessageResponse(message=f"Media {media_id} deleted")
