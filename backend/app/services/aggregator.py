"""
Content Aggregator

Merges the completed analysis results of one media item into a single
AggregatedContent row: one normalized text blob plus structured tags.

Algorithm:
----------
1. Order completed results by capability:
   object labels → celebrities → detected text → transcript → entities/sentiment
2. Render each result's textual contribution (empty contributions are skipped,
   failed optional capabilities simply have no result)
3. Join, normalize whitespace, truncate to AGGREGATION_MAX_CHARS
4. Tags = union of label/entity names with confidence >= TAG_MIN_CONFIDENCE,
   lower-cased, deduplicated, sorted
5. content_hash = sha256(text)

Running it twice on the same results produces byte-identical text and tags.
"""

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.core.errors import AggregationError
from app.models.jobs import Capability, JobStatus, ProcessingJob
from app.models.media import AggregatedContent, MediaTag
from app.services.capabilities import AGGREGATION_ORDER, ANALYSIS_CAPABILITIES

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TAG_MAX_LENGTH = 100


def normalize_text(text: str) -> str:
    """NFC-normalize, collapse whitespace runs, strip."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", unicodedata.normalize("NFC", text)).strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class AggregateDraft:
    """Aggregation output before it is persisted."""

    text: str
    tags: List[str]
    content_hash: str
    source_result_ids: List[int] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.text


# ========================================
# Rendering
# ========================================

def _names(items: Iterable[Dict[str, Any]]) -> List[str]:
    return [normalize_text(item.get("name", "")) for item in items if item.get("name")]


def _contribution(capability: Capability, result) -> str:
    """Text a single result adds to the aggregate."""
    if capability == Capability.OBJECT_DETECTION:
        names = _names(result.labels or [])
        return f"Objects: {', '.join(names)}" if names else ""

    if capability == Capability.CELEBRITY_DETECTION:
        names = _names(result.labels or [])
        return f"People: {', '.join(names)}" if names else ""

    if capability == Capability.TEXT_DETECTION:
        text = normalize_text(result.text or "")
        return f"Text: {text}" if text else ""

    if capability == Capability.TRANSCRIPTION:
        text = normalize_text(result.text or "")
        return f"Transcript: {text}" if text else ""

    if capability == Capability.TEXT_ANALYSIS:
        parts = []
        names = _names(result.entities or [])
        if names:
            parts.append(f"Entities: {', '.join(names)}.")
        if result.sentiment:
            parts.append(f"Sentiment: {result.sentiment}.")
        return " ".join(parts)

    return ""


def _tags(results: Sequence, min_confidence: float) -> List[str]:
    tags = set()
    for result in results:
        for item in list(result.labels or []) + list(result.entities or []):
            name = normalize_text(item.get("name", "")).lower()
            if name and float(item.get("confidence", 0.0)) >= min_confidence:
                tags.add(name[:_TAG_MAX_LENGTH])
    return sorted(tags)


def build_aggregate(
    results: Sequence,
    max_chars: Optional[int] = None,
    min_confidence: Optional[float] = None,
) -> AggregateDraft:
    """
    Merge analysis results into an AggregateDraft.

    Args:
        results: AnalysisResult-like objects (capability, labels, entities,
                 text, segments, sentiment, sentiment_scores, content_warnings, id)
        max_chars: Truncation limit for the merged text
        min_confidence: Tag confidence threshold

    Returns:
        AggregateDraft (pure function of the inputs)
    """
    max_chars = max_chars if max_chars is not None else settings.AGGREGATION_MAX_CHARS
    min_confidence = min_confidence if min_confidence is not None else settings.TAG_MIN_CONFIDENCE

    rank = {capability: index for index, capability in enumerate(AGGREGATION_ORDER)}
    ordered = sorted(
        (r for r in results if r.capability in rank),
        key=lambda r: (rank[r.capability], r.id or 0),
    )

    sections = [_contribution(r.capability, r) for r in ordered]
    text = normalize_text("\n".join(s for s in sections if s))
    if len(text) > max_chars:
        text = text[:max_chars].rstrip()

    metadata: Dict[str, Any] = {"capabilities": [r.capability.value for r in ordered]}
    for r in ordered:
        if r.capability == Capability.TEXT_ANALYSIS and r.sentiment:
            metadata["sentiment"] = r.sentiment
            metadata["sentiment_scores"] = r.sentiment_scores
        if r.capability == Capability.TRANSCRIPTION and r.segments:
            metadata["segments"] = r.segments
        if r.content_warnings:
            metadata.setdefault("content_warnings", []).extend(r.content_warnings)

    return AggregateDraft(
        text=text,
        tags=_tags(ordered, min_confidence),
        content_hash=content_hash(text),
        source_result_ids=[r.id for r in ordered if r.id is not None],
        metadata=metadata,
    )


# ========================================
# Persistence
# ========================================

class ContentAggregator:
    """Builds and stores the AggregatedContent for a media item."""

    def __init__(self, max_chars: Optional[int] = None, min_confidence: Optional[float] = None):
        self.max_chars = max_chars
        self.min_confidence = min_confidence

    async def aggregate(self, session: AsyncSession, media_item_id: int) -> AggregatedContent:
        """
        Recompute and upsert AggregatedContent and MediaTags for an item.

        Does not commit; the caller owns the transaction.

        Raises:
            AggregationError: no mandatory analysis job has completed
        """
        jobs = (
            await session.execute(
                select(ProcessingJob)
                .options(selectinload(ProcessingJob.result))
                .where(
                    ProcessingJob.media_item_id == media_item_id,
                    ProcessingJob.capability.in_(sorted(ANALYSIS_CAPABILITIES)),
                )
                .order_by(ProcessingJob.id)
            )
        ).scalars().all()

        completed = [job for job in jobs if job.status == JobStatus.COMPLETED and job.result is not None]
        if not any(job.mandatory for job in completed):
            raise AggregationError(
                f"Media {media_item_id} has no completed mandatory analysis results"
            )

        draft = build_aggregate(
            [job.result for job in completed],
            max_chars=self.max_chars,
            min_confidence=self.min_confidence,
        )

        aggregated = await session.scalar(
            select(AggregatedContent).where(AggregatedContent.media_item_id == media_item_id)
        )
        if aggregated is None:
            aggregated = AggregatedContent(media_item_id=media_item_id)
            session.add(aggregated)

        aggregated.text = draft.text
        aggregated.tags = draft.tags
        aggregated.content_hash = draft.content_hash
        aggregated.source_result_ids = draft.source_result_ids
        aggregated.content_metadata = draft.metadata

        await session.execute(delete(MediaTag).where(MediaTag.media_item_id == media_item_id))
        for tag in draft.tags:
            session.add(MediaTag(media_item_id=media_item_id, tag=tag))

        await session.flush()
        logger.info(
            f"Aggregated media {media_item_id}: {len(draft.text)} chars, "
            f"{len(draft.tags)} tags from {len(draft.source_result_ids)} results"
        )
        return aggregated
