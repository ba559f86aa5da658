"""
Tests for the pipeline Celery tasks.

Only the broker-facing helpers are tested here; the work the tasks
perform is covered by the orchestrator and runner tests.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from kombu.exceptions import OperationalError

from app.models.jobs import Capability
from app.models.media import MediaKind
from app.services.capabilities import all_lanes, queue_for
from app.tasks.pipeline_tasks import drain_capability, enqueue_media, wake_workers
from app.workers.celery_app import celery_app


class TestWakeWorkers:
    """Test wake_workers."""

    def test_one_message_per_capability(self):
        """Duplicates collapse; each capability goes to its own queue."""
        with patch.object(drain_capability, "apply_async", MagicMock()) as apply_async:
            wake_workers(
                [Capability.OBJECT_DETECTION, Capability.TRANSCRIPTION, Capability.OBJECT_DETECTION],
                MediaKind.VIDEO,
            )

        sent = {(call.kwargs["args"][0], call.kwargs["queue"]) for call in apply_async.call_args_list}
        assert sent == {
            ("object_detection", queue_for(Capability.OBJECT_DETECTION, MediaKind.VIDEO)),
            ("transcription", queue_for(Capability.TRANSCRIPTION, MediaKind.VIDEO)),
        }
        assert apply_async.call_count == 2

    def test_split_capabilities_carry_the_kind(self):
        """A video object-detection drain is told to claim video jobs only."""
        with patch.object(drain_capability, "apply_async", MagicMock()) as apply_async:
            wake_workers([Capability.OBJECT_DETECTION, Capability.TRANSCRIPTION], MediaKind.VIDEO)

        kwargs = {call.kwargs["args"][0]: call.kwargs["kwargs"] for call in apply_async.call_args_list}
        assert kwargs == {"object_detection": {"kind": "video"}, "transcription": {}}

    def test_broker_outage_is_tolerated(self):
        """A failed publish is logged; the remaining capabilities are still tried."""
        apply_async = MagicMock(side_effect=[OperationalError("broker down"), None])

        with patch.object(drain_capability, "apply_async", apply_async):
            wake_workers([Capability.OBJECT_DETECTION, Capability.TEXT_DETECTION])

        assert apply_async.call_count == 2

    def test_nothing_to_wake(self):
        with patch.object(drain_capability, "apply_async", MagicMock()) as apply_async:
            wake_workers([])

        apply_async.assert_not_called()


class TestDrainCapabilityTask:
    """Test the drain task's lane handling without a broker."""

    def _drain(self, processed=0, **kwargs):
        pool = MagicMock()
        pool.drain = AsyncMock(return_value=processed)
        with patch("app.tasks.pipeline_tasks.build_worker_pool", return_value=pool), \
                patch("app.tasks.pipeline_tasks.run_async", side_effect=asyncio.run), \
                patch("app.tasks.pipeline_tasks.wake_workers") as wake:
            result = drain_capability("object_detection", **kwargs)
        return pool, result, wake

    def test_kind_narrows_the_claim(self):
        pool, result, _ = self._drain(kind="video")

        assert pool.drain.call_args.args[0] == Capability.OBJECT_DETECTION
        assert pool.drain.call_args.kwargs["kind"] == MediaKind.VIDEO
        assert result == {"success": True, "capability": "object_detection", "kind": "video", "processed": 0}

    def test_processed_jobs_wake_downstream_lanes(self):
        _, result, wake = self._drain(processed=2, kind="image")

        assert result["processed"] == 2
        wake.assert_called_once_with((Capability.TEXT_ANALYSIS, Capability.EMBEDDING))


class TestBeatSchedule:
    def test_one_drain_per_lane(self):
        drains = {
            name: entry for name, entry in celery_app.conf.beat_schedule.items()
            if entry["task"] == "pipeline.drain_capability"
        }

        assert set(drains) == {f"drain-{lane.name}" for lane in all_lanes()}
        video = drains["drain-object_detection.video"]
        assert video["kwargs"] == {"kind": "video"}
        assert video["options"]["queue"] == "video-analysis"
        assert drains["drain-transcription"]["kwargs"] == {}


class TestEnqueueMediaTask:
    """Test the task the upload collaborator calls."""

    def test_returns_job_ids(self):
        def fake_run_async(coro):
            coro.close()
            return [11, 12]

        with patch("app.tasks.pipeline_tasks.run_async", side_effect=fake_run_async):
            result = enqueue_media(7)

        assert result == {"success": True, "media_item_id": 7, "job_ids": [11, 12]}
