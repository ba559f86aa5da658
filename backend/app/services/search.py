"""
Vector Search

Two layers:

VectorSearchEngine
    search(user, query_vector, filters, limit, offset) → ranked hits
    - cosine distance; ascending distance = descending relevance
    - kind / upload date / tag filters are SQL WHERE clauses (pre-filter)
    - a media item ranks by its closest embedding (whole item or segment)
    - ties broken by newest upload first
    - hits with similarity below the threshold are dropped, so a page can
      hold fewer than `limit` results
    - only completed, non-deleted items of the user, never empty vectors

SearchService
    query text → embedding → engine, with a short TTL result cache keyed by
    (user, normalized query, filters, page), monthly search quota and an
    immutable history row per executed search.

On PostgreSQL the distance and grouping run in SQL through pgvector. Other
backends (SQLite in tests) select the pre-filtered rows in SQL and score them
with numpy.
"""

import hashlib
import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import and_, exists, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    ErrorClass,
    PipelineError,
    SearchQuotaExceededError,
    SearchUnavailableError,
)
from app.core.logging import get_logger
from app.db.base import as_utc
from app.models.media import Embedding, MediaItem, MediaKind, MediaStatus, MediaTag
from app.models.search import SearchHistory
from app.models.user import User
from app.services.aggregator import normalize_text
from app.services.cache import RedisJSONCache
from app.services.embeddings.service import EmbeddingService
from app.services.ledger import current_period_key

logger = get_logger(__name__)

SNIPPET_CHARS = 240


# ========================================
# Data Classes
# ========================================

@dataclass
class SearchFilters:
    kinds: List[MediaKind] = field(default_factory=list)
    uploaded_after: Optional[datetime] = None
    uploaded_before: Optional[datetime] = None
    # Items must carry every listed tag
    tags: List[str] = field(default_factory=list)

    def normalized(self) -> "SearchFilters":
        return SearchFilters(
            kinds=sorted(set(self.kinds), key=lambda k: k.value),
            uploaded_after=as_utc(self.uploaded_after),
            uploaded_before=as_utc(self.uploaded_before),
            tags=sorted({normalize_text(tag).lower() for tag in self.tags if normalize_text(tag)}),
        )

    def to_dict(self) -> Dict[str, Any]:
        f = self.normalized()
        return {
            "kinds": [k.value for k in f.kinds],
            "uploaded_after": f.uploaded_after.isoformat() if f.uploaded_after else None,
            "uploaded_before": f.uploaded_before.isoformat() if f.uploaded_before else None,
            "tags": f.tags,
        }


@dataclass
class MatchedSegment:
    segment_index: Optional[int]
    start_time: Optional[float]
    end_time: Optional[float]
    text: str


@dataclass
class SearchHit:
    media_item_id: int
    distance: float
    similarity: float
    kind: str
    filename: str
    uploaded_at: str
    snippet: str = ""
    matched_segment: Optional[MatchedSegment] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResponse:
    query: str
    results: List[Dict[str, Any]]
    cached: bool = False
    latency_ms: float = 0.0
    limit: int = 0
    offset: int = 0

    @property
    def count(self) -> int:
        return len(self.results)


def cosine_distances(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """1 - cosine similarity of `query` against each row. Zero rows get distance 1."""
    q = np.asarray(query, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    norms = np.linalg.norm(m, axis=1) * np.linalg.norm(q)
    dots = m @ q
    with np.errstate(divide="ignore", invalid="ignore"):
        similarity = np.where(norms > 0, dots / norms, 0.0)
    return 1.0 - similarity


# ========================================
# Engine
# ========================================

class VectorSearchEngine:
    """
    Usage:
    ------
    engine = VectorSearchEngine(session)
    hits = await engine.search(user_id, vector, SearchFilters(tags=["bicycle"]), limit=20)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def _scope(self, stmt, user_id: int, filters: SearchFilters):
        """WHERE clauses shared by both backends: ownership, status, filters."""
        f = filters.normalized()
        stmt = stmt.where(
            MediaItem.owner_id == user_id,
            MediaItem.status == MediaStatus.COMPLETED,
            Embedding.is_empty.is_(False),
        )
        if f.kinds:
            stmt = stmt.where(MediaItem.kind.in_(f.kinds))
        if f.uploaded_after:
            stmt = stmt.where(MediaItem.uploaded_at >= f.uploaded_after)
        if f.uploaded_before:
            stmt = stmt.where(MediaItem.uploaded_at <= f.uploaded_before)
        for tag in f.tags:
            stmt = stmt.where(
                exists().where(and_(MediaTag.media_item_id == MediaItem.id, MediaTag.tag == tag))
            )
        return stmt

    async def search(
        self,
        user_id: int,
        query_vector: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 20,
        offset: int = 0,
        min_similarity: Optional[float] = None,
    ) -> List[SearchHit]:
        """
        Rank the user's media by cosine distance to `query_vector`.

        Raises:
            SearchUnavailableError: the database/index could not be queried
        """
        filters = filters or SearchFilters()
        min_similarity = settings.SEARCH_MIN_SIMILARITY if min_similarity is None else min_similarity
        max_distance = 1.0 - min_similarity
        vector = [float(x) for x in query_vector]

        try:
            if self.session.get_bind().dialect.name == "postgresql":
                return await self._search_pgvector(user_id, vector, filters, limit, offset, max_distance)
            return await self._search_portable(user_id, vector, filters, limit, offset, max_distance)
        except SQLAlchemyError as e:
            logger.error("vector_search_failed", user_id=user_id, error=str(e))
            raise SearchUnavailableError("Search index is temporarily unavailable") from e

    async def _search_pgvector(
        self,
        user_id: int,
        vector: List[float],
        filters: SearchFilters,
        limit: int,
        offset: int,
        max_distance: float,
    ) -> List[SearchHit]:
        distance = Embedding.vector.cosine_distance(vector)
        best = self._scope(
            select(Embedding.media_item_id, func.min(distance).label("distance"))
            .join(MediaItem, MediaItem.id == Embedding.media_item_id),
            user_id,
            filters,
        ).group_by(Embedding.media_item_id).subquery()

        rows = (
            await self.session.execute(
                select(MediaItem, best.c.distance)
                .join(best, best.c.media_item_id == MediaItem.id)
                .where(best.c.distance <= max_distance)
                .order_by(best.c.distance.asc(), MediaItem.uploaded_at.desc(), MediaItem.id.desc())
                .limit(limit)
                .offset(offset)
            )
        ).all()
        if not rows:
            return []

        ids = [media.id for media, _ in rows]
        segments = (
            await self.session.execute(
                select(Embedding, distance.label("distance"))
                .where(Embedding.media_item_id.in_(ids), Embedding.is_empty.is_(False))
                .order_by(Embedding.media_item_id, distance.asc(), Embedding.id)
            )
        ).all()
        closest: Dict[int, Embedding] = {}
        for embedding, _ in segments:
            closest.setdefault(embedding.media_item_id, embedding)

        return [self._hit(media, float(dist), closest.get(media.id)) for media, dist in rows]

    async def _search_portable(
        self,
        user_id: int,
        vector: List[float],
        filters: SearchFilters,
        limit: int,
        offset: int,
        max_distance: float,
    ) -> List[SearchHit]:
        rows = (
            await self.session.execute(
                self._scope(
                    select(Embedding, MediaItem).join(MediaItem, MediaItem.id == Embedding.media_item_id),
                    user_id,
                    filters,
                )
            )
        ).all()
        if not rows:
            return []

        distances = cosine_distances(vector, np.vstack([np.asarray(e.vector, dtype=np.float64) for e, _ in rows]))

        best: Dict[int, tuple] = {}
        for (embedding, media), dist in zip(rows, distances):
            dist = float(dist)
            current = best.get(media.id)
            if current is None or dist < current[0] or (dist == current[0] and embedding.id < current[2].id):
                best[media.id] = (dist, media, embedding)

        ranked = sorted(
            (entry for entry in best.values() if entry[0] <= max_distance),
            key=lambda entry: (entry[0], -as_utc(entry[1].uploaded_at).timestamp(), -entry[1].id),
        )
        return [self._hit(media, dist, embedding) for dist, media, embedding in ranked[offset:offset + limit]]

    @staticmethod
    def _hit(media: MediaItem, distance: float, embedding: Optional[Embedding]) -> SearchHit:
        segment = None
        snippet = ""
        if embedding is not None:
            snippet = (embedding.source_text or "")[:SNIPPET_CHARS]
            if embedding.start_time is not None:
                segment = MatchedSegment(
                    segment_index=embedding.segment_index,
                    start_time=embedding.start_time,
                    end_time=embedding.end_time,
                    text=snippet,
                )
        return SearchHit(
            media_item_id=media.id,
            distance=round(distance, 6),
            similarity=round(1.0 - distance, 6),
            kind=media.kind.value,
            filename=media.filename,
            uploaded_at=as_utc(media.uploaded_at).isoformat(),
            snippet=snippet,
            matched_segment=segment,
        )


# ========================================
# Service
# ========================================

class SearchService:
    """
    Query path: normalize → quota → cache → embed → search → history.

    Usage:
    ------
    service = SearchService(AsyncSessionLocal, get_embedding_service())
    response = await service.search(user, "red bicycle", SearchFilters(), limit=20)
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        embedding_service: EmbeddingService,
        cache: Optional[RedisJSONCache] = None,
    ):
        self.session_factory = session_factory
        self.embedding_service = embedding_service
        self.cache = cache or RedisJSONCache("search", settings.SEARCH_CACHE_TTL_SECONDS)

    @staticmethod
    def cache_key(user_id: int, query: str, filters: SearchFilters, limit: int, offset: int) -> str:
        payload = json.dumps(
            {"user": user_id, "q": query, "filters": filters.to_dict(), "limit": limit, "offset": offset},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    async def searches_this_period(self, user_id: int) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count(SearchHistory.id)).where(
                    SearchHistory.user_id == user_id,
                    SearchHistory.period_key == current_period_key(),
                )
            ) or 0

    async def _check_quota(self, user: User) -> None:
        allowance = user.limits.monthly_searches
        if allowance is None:
            return
        used = await self.searches_this_period(user.id)
        if used >= allowance:
            raise SearchQuotaExceededError(
                f"Monthly search limit of {allowance} reached for the {user.tier.value} tier"
            )

    async def search(
        self,
        user: User,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> SearchResponse:
        """
        Raises:
            SearchQuotaExceededError: monthly allowance used up
            SearchUnavailableError: index or embedding provider unavailable
        """
        started = time.perf_counter()
        filters = (filters or SearchFilters()).normalized()
        limit = max(1, min(limit or settings.SEARCH_DEFAULT_LIMIT, settings.SEARCH_MAX_LIMIT))
        offset = max(0, offset)
        normalized = normalize_text(query)

        # An empty query matches nothing; it is not charged or logged
        if not normalized:
            return SearchResponse(query=normalized, results=[], limit=limit, offset=offset)

        await self._check_quota(user)

        key = self.cache_key(user.id, normalized, filters, limit, offset)
        cached = await self.cache.get(key)
        query_vector: Optional[List[float]] = None

        if cached is not None:
            results, from_cache = cached, True
        else:
            try:
                embedded = await self.embedding_service.embed(normalized, user_id=user.id)
            except PipelineError as e:
                if e.error_class == ErrorClass.TRANSIENT:
                    raise SearchUnavailableError(f"Query embedding unavailable: {e}") from e
                raise

            query_vector = embedded.vector
            async with self.session_factory() as session:
                hits = await VectorSearchEngine(session).search(
                    user.id, query_vector, filters, limit=limit, offset=offset
                )
            results, from_cache = [hit.to_dict() for hit in hits], False
            await self.cache.set(key, results)

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        await self._log_history(user, normalized, filters, limit, offset, results, from_cache, latency_ms, query_vector)

        logger.info(
            "search_executed",
            user_id=user.id,
            results=len(results),
            cached=from_cache,
            latency_ms=latency_ms,
        )
        return SearchResponse(
            query=normalized,
            results=results,
            cached=from_cache,
            latency_ms=latency_ms,
            limit=limit,
            offset=offset,
        )

    async def _log_history(
        self,
        user: User,
        query: str,
        filters: SearchFilters,
        limit: int,
        offset: int,
        results: List[Dict[str, Any]],
        cached: bool,
        latency_ms: float,
        query_vector: Optional[List[float]],
    ) -> None:
        async with self.session_factory() as session:
            session.add(SearchHistory(
                user_id=user.id,
                query_text=query,
                filters=filters.to_dict(),
                limit=limit,
                offset=offset,
                result_count=len(results),
                cached=cached,
                latency_ms=latency_ms,
                period_key=current_period_key(),
                query_embedding=query_vector if settings.SEARCH_LOG_EMBEDDINGS else None,
                top_media_ids=[r["media_item_id"] for r in results[:10]],
            ))
            await session.commit()

    async def history(self, user_id: int, limit: int = 50, offset: int = 0) -> List[SearchHistory]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(SearchHistory)
                .where(SearchHistory.user_id == user_id)
                .order_by(SearchHistory.created_at.desc(), SearchHistory.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(rows.scalars().all())


# ========================================
# Dependency Injection
# ========================================

def get_search_service() -> SearchService:
    from app.db.session import AsyncSessionLocal
    from app.services.embeddings.service import get_embedding_service
    return SearchService(AsyncSessionLocal, get_embedding_service())
