"""
Tests for the worker pool and the lane slots.

This test module verifies:
1. A lane never has more holders than WORKER_CONCURRENCY allows
2. Slots are released only by their holder and expire on their own
3. A full lane makes run_once a no-op without claiming anything
4. start()/stop() run one loop per lane slot and drain the table
"""

import asyncio
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from app.models.jobs import Capability, JobStatus, ProcessingJob
from app.models.media import MediaItem, MediaKind, MediaStatus
from app.services.capabilities import Lane, all_lanes, lane_concurrency, lane_for
from app.workers.pool import PipelineWorkerPool
from app.workers.runner import JobRunner
from app.workers.slots import LaneSlots
from tests.fakes import FakeRedis, ScriptedAdapter

TRANSCRIPTION = lane_for(Capability.TRANSCRIPTION)
VIDEO_OBJECTS = lane_for(Capability.OBJECT_DETECTION, MediaKind.VIDEO)


def _slots(redis, **concurrency):
    return LaneSlots(concurrency=concurrency, ttl_seconds=600, renew_interval=60, redis=redis)


class DownRedis:
    async def set(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


class TestLanes:
    """Lanes split object and celebrity detection by media kind."""

    def test_split_lanes(self):
        names = {lane.name for lane in all_lanes()}

        assert {"object_detection.image", "object_detection.video", "transcription", "embedding"} <= names
        assert "object_detection" not in names
        assert VIDEO_OBJECTS.queue == "video-analysis"
        assert lane_for(Capability.TRANSCRIPTION, MediaKind.VIDEO) == Lane(Capability.TRANSCRIPTION)

    def test_concurrency_lookup(self):
        concurrency = {"object_detection": 4, "object_detection.video": 1}

        assert lane_concurrency(VIDEO_OBJECTS, concurrency) == 1
        assert lane_concurrency(lane_for(Capability.OBJECT_DETECTION, MediaKind.IMAGE), concurrency) == 4
        assert lane_concurrency(TRANSCRIPTION, concurrency) == 1


@pytest.mark.asyncio
class TestLaneSlots:
    """Test the Redis-backed per-lane limit."""

    async def test_limit_is_enforced(self):
        slots = _slots(FakeRedis(), transcription=2)

        first = await slots.acquire(TRANSCRIPTION, "a")
        second = await slots.acquire(TRANSCRIPTION, "b")

        assert {first, second} == {"pipeline:slots:transcription:0", "pipeline:slots:transcription:1"}
        assert await slots.acquire(TRANSCRIPTION, "c") is None

        await slots.release(first, "a")
        assert await slots.acquire(TRANSCRIPTION, "c") == first

    async def test_lanes_are_independent(self):
        slots = _slots(FakeRedis(), **{"object_detection.video": 1, "object_detection": 3})

        assert await slots.acquire(VIDEO_OBJECTS, "a") is not None
        assert await slots.acquire(VIDEO_OBJECTS, "b") is None
        assert await slots.acquire(lane_for(Capability.OBJECT_DETECTION, MediaKind.IMAGE), "c") is not None

    async def test_release_by_another_holder_is_ignored(self):
        """A slot that expired and was retaken is not freed by its previous holder."""
        redis = FakeRedis()
        slots = _slots(redis)
        key = await slots.acquire(TRANSCRIPTION, "new-holder")

        await slots.release(key, "old-holder")

        assert redis.store[key] == "new-holder"

    async def test_slots_carry_a_ttl(self):
        redis = FakeRedis()
        slots = LaneSlots(concurrency={}, ttl_seconds=900, renew_interval=0.01, redis=redis)

        async with slots.hold(TRANSCRIPTION) as held:
            assert held
            key = slots.key(TRANSCRIPTION, 0)
            assert redis.expiry[key] == 900
            redis.expiry[key] = 1
            await asyncio.sleep(0.05)
            assert redis.expiry[key] == 900

        assert redis.store == {}

    async def test_redis_down_runs_nothing(self):
        slots = LaneSlots(concurrency={}, redis=DownRedis())

        async with slots.hold(TRANSCRIPTION) as held:
            assert not held


def _runner(orchestrator, ledger, embedding_service, session_factory, adapters):
    return JobRunner(
        orchestrator=orchestrator,
        ledger=ledger,
        adapters={adapter.capability: adapter for adapter in adapters},
        embedding_service=embedding_service,
        session_factory=session_factory,
    )


@pytest.mark.asyncio
class TestPool:
    """Test PipelineWorkerPool with lane slots."""

    async def test_full_lane_claims_nothing(
        self, orchestrator, ledger, embedding_service, session_factory, media_factory, test_user
    ):
        media = await media_factory(test_user, kind=MediaKind.VIDEO)
        await orchestrator.enqueue(media.id)

        redis = FakeRedis()
        slots = _slots(redis, **{"object_detection.video": 1})
        adapter = ScriptedAdapter(ledger, Capability.OBJECT_DETECTION)
        pool = PipelineWorkerPool(
            orchestrator,
            _runner(orchestrator, ledger, embedding_service, session_factory, [adapter]),
            concurrency={},
            slots=slots,
        )

        # Another process holds the only video slot
        await slots.acquire(VIDEO_OBJECTS, "elsewhere")

        assert await pool.drain(Capability.OBJECT_DETECTION, max_jobs=5, kind=MediaKind.VIDEO) == 0
        assert adapter.calls == []

        await slots.release(slots.key(VIDEO_OBJECTS, 0), "elsewhere")
        assert await pool.drain(Capability.OBJECT_DETECTION, max_jobs=5, kind=MediaKind.VIDEO) == 1
        assert len(adapter.calls) == 1
        assert redis.store == {}

    async def test_start_and_stop(
        self, orchestrator, ledger, embedding_service, session_factory, media_factory, test_user
    ):
        """The loops run every lane until the item is embedded, then stop cleanly."""
        media = await media_factory(test_user)
        await orchestrator.enqueue(media.id)

        adapters = [
            ScriptedAdapter(ledger, capability, cost=Decimal("0.1"))
            for capability in (Capability.OBJECT_DETECTION, Capability.TEXT_DETECTION, Capability.TEXT_ANALYSIS)
        ]
        pool = PipelineWorkerPool(
            orchestrator,
            _runner(orchestrator, ledger, embedding_service, session_factory, adapters),
            concurrency={"object_detection": 2},
            poll_interval=0.01,
            slots=_slots(FakeRedis(), object_detection=2),
        )

        await pool.start()
        assert pool.running
        assert len(pool._tasks) == sum(lane_concurrency(lane, {"object_detection": 2}) for lane in all_lanes())

        for _ in range(300):
            item = await _media_status(session_factory, media.id)
            if item == MediaStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)

        await pool.stop()

        assert not pool.running
        assert item == MediaStatus.COMPLETED
        async with session_factory() as session:
            statuses = (await session.execute(
                select(ProcessingJob.status).where(ProcessingJob.media_item_id == media.id)
            )).scalars().all()
        assert set(statuses) == {JobStatus.COMPLETED}


async def _media_status(session_factory, media_id):
    async with session_factory() as session:
        return (await session.get(MediaItem, media_id)).status
