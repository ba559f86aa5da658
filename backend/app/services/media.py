"""
Media lifecycle service.

Registration of uploaded files, listing, soft delete and the user-facing
entry points into the orchestrator (process / retry). Ownership is checked
here; the orchestrator itself trusts its callers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import InvalidMediaError, MediaNotFoundError
from app.db.base import utcnow
from app.models.jobs import AnalysisResult, ProcessingJob
from app.models.media import (
    AggregatedContent,
    Embedding,
    MediaItem,
    MediaKind,
    MediaStatus,
    MediaTag,
)
from app.models.user import User
from app.services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class UploadLimitExceededError(InvalidMediaError):
    """Monthly upload allowance for the tier is used up."""

    reason = "upload_limit_exceeded"


class StorageLimitExceededError(InvalidMediaError):
    """The upload would take the owner past the tier's storage allowance."""

    reason = "storage_limit_exceeded"


@dataclass
class MediaRegistration:
    locator: str
    filename: str
    mime_type: str
    size_bytes: int
    duration_seconds: Optional[float] = None


def kind_for_mime_type(mime_type: str) -> MediaKind:
    """
    Map a MIME type onto the media kind.

    Raises:
        InvalidMediaError: the type is not supported
    """
    mime_type = (mime_type or "").lower().strip()
    if mime_type in settings.SUPPORTED_IMAGE_TYPES:
        return MediaKind.IMAGE
    if mime_type in settings.SUPPORTED_VIDEO_TYPES:
        return MediaKind.VIDEO
    raise InvalidMediaError(f"Unsupported media type: {mime_type or 'unknown'}", reason="unsupported_format")


def period_start(now: Optional[datetime] = None) -> datetime:
    current = now or utcnow()
    return datetime(current.year, current.month, 1, tzinfo=timezone.utc)


class MediaService:
    """
    Usage:
    ------
    service = MediaService(AsyncSessionLocal)
    media = await service.register(user, MediaRegistration(...))
    await service.process(user, media.id)
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        orchestrator: Optional[JobOrchestrator] = None,
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator or JobOrchestrator(session_factory)

    # ========================================
    # Registration
    # ========================================

    async def uploads_this_period(self, user_id: int) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count(MediaItem.id)).where(
                    MediaItem.owner_id == user_id,
                    MediaItem.uploaded_at >= period_start(),
                )
            ) or 0

    async def storage_used(self, user_id: int) -> int:
        """Bytes held by the user's non-deleted media."""
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.coalesce(func.sum(MediaItem.size_bytes), 0)).where(
                    MediaItem.owner_id == user_id,
                    MediaItem.status != MediaStatus.DELETED,
                )
            ) or 0

    async def register(self, user: User, registration: MediaRegistration) -> MediaItem:
        """
        Record an uploaded file in `uploaded` state.

        Raises:
            InvalidMediaError: unsupported type, bad size, upload or storage limit reached
        """
        kind = kind_for_mime_type(registration.mime_type)

        if registration.size_bytes <= 0:
            raise InvalidMediaError("File is empty", reason="invalid_input")
        if registration.size_bytes > settings.MAX_FILE_SIZE_BYTES:
            raise InvalidMediaError(
                f"File exceeds the {settings.MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB limit",
                reason="file_too_large",
            )
        if registration.duration_seconds is not None and registration.duration_seconds < 0:
            raise InvalidMediaError("Duration cannot be negative", reason="invalid_input")

        allowance = user.limits.monthly_uploads
        if allowance is not None and await self.uploads_this_period(user.id) >= allowance:
            raise UploadLimitExceededError(
                f"Monthly upload limit of {allowance} reached for the {user.tier.value} tier"
            )

        storage = user.limits.storage_bytes
        if storage is not None:
            used = await self.storage_used(user.id)
            if used + registration.size_bytes > storage:
                raise StorageLimitExceededError(
                    f"Upload of {registration.size_bytes} bytes exceeds the {user.tier.value} tier storage "
                    f"limit ({used} of {storage} bytes used)"
                )

        async with self.session_factory() as session:
            media = MediaItem(
                owner_id=user.id,
                kind=kind,
                locator=registration.locator,
                filename=registration.filename,
                mime_type=registration.mime_type.lower().strip(),
                size_bytes=registration.size_bytes,
                duration_seconds=registration.duration_seconds,
                status=MediaStatus.UPLOADED,
                uploaded_at=utcnow(),
            )
            session.add(media)
            await session.commit()

        logger.info(f"Registered {kind.value} media {media.id} for user {user.id}")
        return media

    # ========================================
    # Queries
    # ========================================

    async def list_media(
        self,
        user_id: int,
        status: Optional[MediaStatus] = None,
        kind: Optional[MediaKind] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[MediaItem], int]:
        """Newest first. Deleted items are hidden unless asked for by status."""
        conditions = [MediaItem.owner_id == user_id]
        if status is not None:
            conditions.append(MediaItem.status == status)
        else:
            conditions.append(MediaItem.status != MediaStatus.DELETED)
        if kind is not None:
            conditions.append(MediaItem.kind == kind)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(MediaItem.id)).where(*conditions)) or 0
            rows = await session.execute(
                select(MediaItem)
                .where(*conditions)
                .order_by(MediaItem.uploaded_at.desc(), MediaItem.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(rows.scalars().all()), total

    async def get_media(self, user_id: int, media_item_id: int) -> MediaItem:
        """
        Load one of the user's items with its jobs.

        Raises:
            MediaNotFoundError: missing, deleted or owned by someone else
        """
        async with self.session_factory() as session:
            media = await session.scalar(
                select(MediaItem)
                .options(selectinload(MediaItem.jobs), selectinload(MediaItem.tags))
                .where(MediaItem.id == media_item_id, MediaItem.owner_id == user_id)
            )
        if media is None or media.is_deleted:
            raise MediaNotFoundError(f"Media {media_item_id} not found")
        return media

    # ========================================
    # Pipeline Entry Points
    # ========================================

    async def process(self, user: User, media_item_id: int) -> List[int]:
        await self.get_media(user.id, media_item_id)
        return await self.orchestrator.enqueue(media_item_id)

    async def retry(self, user: User, media_item_id: int) -> List[int]:
        await self.get_media(user.id, media_item_id)
        return await self.orchestrator.retry_media(media_item_id)

    # ========================================
    # Deletion
    # ========================================

    async def delete_media(self, user_id: int, media_item_id: int) -> None:
        """
        Soft-delete an item.

        Jobs, results, the aggregate, embeddings and tags are removed so
        nothing can be claimed or searched; cost records are kept for
        billing. Late results from in-flight workers find no job and are
        dropped by the orchestrator.
        """
        async with self.session_factory() as session:
            media = await session.scalar(
                select(MediaItem).where(MediaItem.id == media_item_id, MediaItem.owner_id == user_id)
            )
            if media is None or media.is_deleted:
                raise MediaNotFoundError(f"Media {media_item_id} not found")

            await session.execute(delete(AnalysisResult).where(AnalysisResult.media_item_id == media_item_id))
            await session.execute(delete(ProcessingJob).where(ProcessingJob.media_item_id == media_item_id))
            await session.execute(delete(AggregatedContent).where(AggregatedContent.media_item_id == media_item_id))
            await session.execute(delete(Embedding).where(Embedding.media_item_id == media_item_id))
            await session.execute(delete(MediaTag).where(MediaTag.media_item_id == media_item_id))

            media.status = MediaStatus.DELETED
            media.deleted_at = utcnow()
            await session.commit()

        logger.info(f"Soft-deleted media {media_item_id} for user {user_id}")


def get_media_service() -> MediaService:
    from app.db.session import AsyncSessionLocal
    return MediaService(AsyncSessionLocal)
