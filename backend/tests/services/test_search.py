"""
Tests for VectorSearchEngine and SearchService.

This test module verifies:
1. Ranking by cosine distance and the similarity threshold
2. Tie-break: newest upload first
3. Pre-filters (kind, upload date, tags) and visibility rules
4. Matched video segments
5. Result cache with the `cached` flag
6. Monthly search quota and history rows
7. Empty queries
"""

import pytest
from sqlalchemy import func, select

from app.core.config import settings
from app.core.errors import SearchQuotaExceededError, SearchUnavailableError
from app.models.media import MediaKind, MediaStatus
from app.models.search import SearchHistory
from app.services.search import SearchFilters, VectorSearchEngine, cosine_distances
from tests.fakes import QUERY_VECTOR, FakeEmbeddingProvider, vector_at_distance


async def _completed(media_factory, embedding_factory, owner, distance, **kwargs):
    media = await media_factory(owner, status=MediaStatus.COMPLETED, **kwargs)
    await embedding_factory(media, vector_at_distance(distance), source_text=f"item at {distance}")
    return media


async def _history_count(session_factory, user_id):
    async with session_factory() as session:
        return await session.scalar(
            select(func.count(SearchHistory.id)).where(SearchHistory.user_id == user_id)
        )


class TestCosineDistances:

    def test_distances(self):
        distances = cosine_distances(QUERY_VECTOR, [QUERY_VECTOR, vector_at_distance(0.4), [0.0] * 8])
        assert distances[0] == pytest.approx(0.0)
        assert distances[1] == pytest.approx(0.4)
        # Zero vectors never look similar
        assert distances[2] == pytest.approx(1.0)


@pytest.mark.asyncio
class TestVectorSearchEngine:
    """Test ranking and filtering against the database."""

    async def test_ranking_and_threshold(self, db_session, media_factory, embedding_factory, test_user):
        """Nearest first; anything below the minimum similarity is dropped."""
        far = await _completed(media_factory, embedding_factory, test_user, 0.9)
        near = await _completed(media_factory, embedding_factory, test_user, 0.1)
        middle = await _completed(media_factory, embedding_factory, test_user, 0.4)

        hits = await VectorSearchEngine(db_session).search(
            test_user.id, QUERY_VECTOR, min_similarity=0.2
        )

        assert [h.media_item_id for h in hits] == [near.id, middle.id]
        assert hits[0].distance == pytest.approx(0.1, abs=1e-4)
        assert hits[0].similarity == pytest.approx(0.9, abs=1e-4)
        assert far.id not in {h.media_item_id for h in hits}

    async def test_tie_break_newest_first(self, db_session, media_factory, embedding_factory, test_user, days_ago):
        """Equal distances: the newer upload ranks first."""
        older = await _completed(media_factory, embedding_factory, test_user, 0.3, uploaded_at=days_ago(5))
        newer = await _completed(media_factory, embedding_factory, test_user, 0.3, uploaded_at=days_ago(1))

        hits = await VectorSearchEngine(db_session).search(test_user.id, QUERY_VECTOR)

        assert [h.media_item_id for h in hits] == [newer.id, older.id]

    async def test_pagination(self, db_session, media_factory, embedding_factory, test_user):
        ids = [
            (await _completed(media_factory, embedding_factory, test_user, d)).id
            for d in (0.1, 0.2, 0.3)
        ]

        page = await VectorSearchEngine(db_session).search(test_user.id, QUERY_VECTOR, limit=1, offset=1)

        assert [h.media_item_id for h in page] == [ids[1]]

    async def test_only_completed_items_of_the_owner(
        self, db_session, media_factory, embedding_factory, user_factory, test_user
    ):
        """Other users' media, unfinished, deleted and empty vectors are invisible."""
        visible = await _completed(media_factory, embedding_factory, test_user, 0.1)

        stranger = await user_factory()
        await _completed(media_factory, embedding_factory, stranger, 0.1)

        processing = await media_factory(test_user, status=MediaStatus.PROCESSING)
        await embedding_factory(processing, vector_at_distance(0.1))
        deleted = await media_factory(test_user, status=MediaStatus.DELETED)
        await embedding_factory(deleted, vector_at_distance(0.1))
        empty = await media_factory(test_user, status=MediaStatus.COMPLETED)
        await embedding_factory(empty, [0.0] * 8, source_text="", is_empty=True)

        hits = await VectorSearchEngine(db_session).search(test_user.id, QUERY_VECTOR, min_similarity=0.0)

        assert [h.media_item_id for h in hits] == [visible.id]

    async def test_kind_filter(self, db_session, media_factory, embedding_factory, test_user):
        await _completed(media_factory, embedding_factory, test_user, 0.1, kind=MediaKind.IMAGE)
        video = await _completed(media_factory, embedding_factory, test_user, 0.3, kind=MediaKind.VIDEO)

        hits = await VectorSearchEngine(db_session).search(
            test_user.id, QUERY_VECTOR, SearchFilters(kinds=[MediaKind.VIDEO])
        )

        assert [h.media_item_id for h in hits] == [video.id]
        assert hits[0].kind == "video"

    async def test_date_filter(self, db_session, media_factory, embedding_factory, test_user, days_ago):
        await _completed(media_factory, embedding_factory, test_user, 0.1, uploaded_at=days_ago(30))
        recent = await _completed(media_factory, embedding_factory, test_user, 0.2, uploaded_at=days_ago(2))

        hits = await VectorSearchEngine(db_session).search(
            test_user.id, QUERY_VECTOR, SearchFilters(uploaded_after=days_ago(7))
        )

        assert [h.media_item_id for h in hits] == [recent.id]

    async def test_tag_filter_requires_every_tag(self, db_session, media_factory, embedding_factory, test_user):
        """Tag filters are an AND, matched case-insensitively."""
        both = await _completed(media_factory, embedding_factory, test_user, 0.2, tags=["beach", "bicycle"])
        await _completed(media_factory, embedding_factory, test_user, 0.1, tags=["beach"])

        hits = await VectorSearchEngine(db_session).search(
            test_user.id, QUERY_VECTOR, SearchFilters(tags=["Bicycle", " beach "])
        )

        assert [h.media_item_id for h in hits] == [both.id]

    async def test_closest_segment_reported(self, db_session, media_factory, embedding_factory, test_user):
        """A video ranks by its best segment, which is returned with its time range."""
        video = await media_factory(test_user, kind=MediaKind.VIDEO, status=MediaStatus.COMPLETED)
        await embedding_factory(video, vector_at_distance(0.6), source_text="whole video")
        await embedding_factory(
            video, vector_at_distance(0.05), source_text="the goal in extra time",
            segment_index=3, start_time=90.0, end_time=120.0,
        )

        hits = await VectorSearchEngine(db_session).search(test_user.id, QUERY_VECTOR)

        assert len(hits) == 1
        assert hits[0].distance == pytest.approx(0.05, abs=1e-4)
        assert hits[0].matched_segment.start_time == 90.0
        assert hits[0].matched_segment.segment_index == 3
        assert hits[0].snippet == "the goal in extra time"


@pytest.mark.asyncio
class TestSearchService:
    """Test the query path."""

    async def test_search_and_cache_flag(
        self, search_service, embedding_provider, session_factory, media_factory, embedding_factory, test_user
    ):
        """A repeated query is served from cache and marked as such."""
        media = await _completed(media_factory, embedding_factory, test_user, 0.1)

        first = await search_service.search(test_user, "red bicycle")
        second = await search_service.search(test_user, "  red   bicycle ")

        assert not first.cached
        assert second.cached
        assert first.results == second.results
        assert first.results[0]["media_item_id"] == media.id
        assert len(embedding_provider.calls) == 1
        # Both executions are logged and count against the quota
        assert await _history_count(session_factory, test_user.id) == 2

    async def test_different_filters_miss_cache(self, search_service, test_user):
        await search_service.search(test_user, "red bicycle")
        response = await search_service.search(
            test_user, "red bicycle", SearchFilters(kinds=[MediaKind.VIDEO])
        )

        assert not response.cached

    async def test_history_row(self, search_service, session_factory, media_factory, embedding_factory, test_user):
        media = await _completed(media_factory, embedding_factory, test_user, 0.1)

        await search_service.search(test_user, "red bicycle", SearchFilters(tags=["Beach"]), limit=5)

        rows = await search_service.history(test_user.id)
        assert len(rows) == 1
        assert rows[0].query_text == "red bicycle"
        assert rows[0].filters["tags"] == ["beach"]
        assert rows[0].limit == 5
        assert rows[0].top_media_ids == []
        assert rows[0].query_embedding is None

        await search_service.search(test_user, "red bicycle")
        latest = (await search_service.history(test_user.id))[0]
        assert latest.top_media_ids == [media.id]

    async def test_quota(self, search_service, test_user, monkeypatch):
        """Free tier allowance used up → SearchQuotaExceededError."""
        monkeypatch.setattr(settings, "TIER_SEARCHES_FREE", 2)

        await search_service.search(test_user, "first")
        await search_service.search(test_user, "second")

        with pytest.raises(SearchQuotaExceededError):
            await search_service.search(test_user, "third")
        assert await search_service.searches_this_period(test_user.id) == 2

    async def test_empty_query(self, search_service, embedding_provider, session_factory, test_user):
        """Blank queries match nothing and are neither embedded nor logged."""
        response = await search_service.search(test_user, "   ")

        assert response.results == []
        assert response.count == 0
        assert embedding_provider.calls == []
        assert await _history_count(session_factory, test_user.id) == 0

    async def test_limit_clamped(self, search_service, test_user):
        response = await search_service.search(test_user, "anything", limit=10_000)
        assert response.limit == settings.SEARCH_MAX_LIMIT

    async def test_embedding_outage_is_unavailable(self, session_factory, ledger, fake_redis, test_user):
        """A transient embedding failure surfaces as a retryable search error."""
        from app.services.cache import RedisJSONCache
        from app.services.embeddings.service import EmbeddingService
        from app.services.search import SearchService

        provider = FakeEmbeddingProvider(error=RuntimeError("upstream 503"))
        service = SearchService(
            session_factory,
            EmbeddingService(provider=provider, ledger=ledger, cache=RedisJSONCache("embedding", 60, redis=fake_redis)),
            cache=RedisJSONCache("search", 60, redis=fake_redis),
        )

        with pytest.raises(SearchUnavailableError) as exc_info:
            await service.search(test_user, "red bicycle")

        assert exc_info.value.reason == "search_unavailable"
        assert await _history_count(session_factory, test_user.id) == 0
