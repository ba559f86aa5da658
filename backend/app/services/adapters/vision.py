"""
Visual analysis adapters backed by Amazon Rekognition.

- ObjectDetectionAdapter: labels (+ moderation labels as content warnings)
- TextDetectionAdapter: text lines visible in an image
- CelebrityDetectionAdapter: recognized public figures

Images use the synchronous Rekognition APIs. Videos use the asynchronous
start_* / get_* job APIs, polled until the job finishes.

Pricing (USD):
- Image APIs: $0.001 per image per API call
- Video APIs: $0.10 per minute of video
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError
from app.models.jobs import Capability
from app.models.media import MediaKind
from app.services.adapters.aws import classify_aws_error, get_aws_client
from app.services.adapters.base import AnalysisAdapter, AnalysisOptions, AnalysisPayload
from app.services.ledger import CostLedger
from app.services.storage import MediaStorage

logger = logging.getLogger(__name__)


IMAGE_COST_PER_CALL = Decimal("0.001")
VIDEO_COST_PER_MINUTE = Decimal("0.10")
# Cost estimate when the upload service did not report a duration
DEFAULT_VIDEO_MINUTES = Decimal("10")

MIN_LABEL_CONFIDENCE = 50.0
MAX_LABELS = 50


def video_cost(duration_seconds: Optional[float]) -> Decimal:
    if not duration_seconds:
        return DEFAULT_VIDEO_MINUTES * VIDEO_COST_PER_MINUTE
    return Decimal(str(duration_seconds)) / Decimal("60") * VIDEO_COST_PER_MINUTE


def merge_labels(labels: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse repeated names (video timestamps) keeping the best confidence."""
    best: Dict[str, Dict[str, Any]] = {}
    for label in labels:
        name = label["name"]
        if name not in best or label["confidence"] > best[name]["confidence"]:
            best[name] = label
    return sorted(best.values(), key=lambda item: (-item["confidence"], item["name"]))


class RekognitionAdapter(AnalysisAdapter):
    """Shared Rekognition plumbing: client, S3 references, video job polling."""

    service = "rekognition"

    def __init__(self, ledger: CostLedger, storage: Optional[MediaStorage] = None, client=None, **kwargs):
        super().__init__(ledger, **kwargs)
        self.storage = storage or MediaStorage()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_aws_client("rekognition")
        return self._client

    def classify_exception(self, exc: Exception) -> PipelineError:
        return classify_aws_error(exc, self.service)

    def timeout_for(self, options: AnalysisOptions) -> float:
        if options.kind == MediaKind.VIDEO:
            return settings.VIDEO_ANALYSIS_TIMEOUT_SECONDS
        return self.timeout

    async def _rekognition(self, method: str, **params) -> Dict[str, Any]:
        return await asyncio.to_thread(getattr(self.client, method), **params)

    async def _run_video_job(
        self,
        locator: str,
        start_method: str,
        get_method: str,
        extract: Callable[[Dict[str, Any]], List[Dict[str, Any]]],
        **start_params,
    ) -> Tuple[List[Dict[str, Any]], Optional[float]]:
        """
        Start a Rekognition video job and poll it to completion.

        Returns:
            (items extracted from every result page, video duration in seconds)
        """
        started = await self._rekognition(
            start_method,
            Video=self.storage.s3_object(locator),
            **start_params,
        )
        job_id = started["JobId"]
        logger.info(f"Started {start_method} job {job_id} for {locator}")

        while True:
            response = await self._rekognition(get_method, JobId=job_id, MaxResults=1000)
            status = response.get("JobStatus")
            if status == "SUCCEEDED":
                break
            if status == "FAILED":
                raise PermanentInputError(
                    f"Rekognition video job {job_id} failed: {response.get('StatusMessage', 'unknown')}"
                )
            await asyncio.sleep(settings.VIDEO_ANALYSIS_POLL_SECONDS)

        items = extract(response)
        duration_ms = response.get("VideoMetadata", {}).get("DurationMillis")

        next_token = response.get("NextToken")
        while next_token:
            page = await self._rekognition(get_method, JobId=job_id, MaxResults=1000, NextToken=next_token)
            items.extend(extract(page))
            next_token = page.get("NextToken")

        duration = duration_ms / 1000.0 if duration_ms else None
        return items, duration


# ========================================
# Object Detection
# ========================================

class ObjectDetectionAdapter(RekognitionAdapter):
    """Object/scene labels and moderation warnings."""

    capability = Capability.OBJECT_DETECTION
    operation = "detect_labels"

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        if options.kind == MediaKind.VIDEO:
            return video_cost(options.duration_seconds)
        # detect_labels + detect_moderation_labels
        return IMAGE_COST_PER_CALL * 2

    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        if options.kind == MediaKind.VIDEO:
            return await self._detect_video_labels(locator, options)

        image = self.storage.s3_object(locator)
        labels_response = await self._rekognition(
            "detect_labels",
            Image=image,
            MaxLabels=MAX_LABELS,
            MinConfidence=MIN_LABEL_CONFIDENCE,
        )
        moderation_response = await self._rekognition(
            "detect_moderation_labels",
            Image=image,
            MinConfidence=MIN_LABEL_CONFIDENCE,
        )

        labels = [
            {"name": label["Name"], "confidence": round(label["Confidence"] / 100.0, 4)}
            for label in labels_response.get("Labels", [])
        ]
        warnings = [
            {
                "name": label["Name"],
                "parent": label.get("ParentName") or None,
                "confidence": round(label["Confidence"] / 100.0, 4),
            }
            for label in moderation_response.get("ModerationLabels", [])
        ]
        payload = AnalysisPayload(labels=merge_labels(labels), content_warnings=warnings)
        return payload, IMAGE_COST_PER_CALL * 2

    async def _detect_video_labels(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        def extract(page: Dict[str, Any]) -> List[Dict[str, Any]]:
            return [
                {
                    "name": item["Label"]["Name"],
                    "confidence": round(item["Label"]["Confidence"] / 100.0, 4),
                }
                for item in page.get("Labels", [])
            ]

        labels, duration = await self._run_video_job(
            locator,
            "start_label_detection",
            "get_label_detection",
            extract,
            MinConfidence=MIN_LABEL_CONFIDENCE,
        )
        payload = AnalysisPayload(labels=merge_labels(labels))
        return payload, video_cost(duration or options.duration_seconds)


# ========================================
# Text Detection
# ========================================

class TextDetectionAdapter(RekognitionAdapter):
    """Visible text in an image, one entry per detected line."""

    capability = Capability.TEXT_DETECTION
    operation = "detect_text"

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        return IMAGE_COST_PER_CALL

    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        if options.kind != MediaKind.IMAGE:
            raise PermanentInputError("Text detection only supports images")

        response = await self._rekognition("detect_text", Image=self.storage.s3_object(locator))
        lines = [
            detection["DetectedText"]
            for detection in response.get("TextDetections", [])
            if detection.get("Type") == "LINE" and detection.get("DetectedText")
        ]
        return AnalysisPayload(text="\n".join(lines)), IMAGE_COST_PER_CALL


# ========================================
# Celebrity Detection
# ========================================

class CelebrityDetectionAdapter(RekognitionAdapter):
    """Recognized public figures, reported as labels of type celebrity."""

    capability = Capability.CELEBRITY_DETECTION
    operation = "recognize_celebrities"

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        if options.kind == MediaKind.VIDEO:
            return video_cost(options.duration_seconds)
        return IMAGE_COST_PER_CALL

    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        if options.kind == MediaKind.VIDEO:
            def extract(page: Dict[str, Any]) -> List[Dict[str, Any]]:
                return [
                    {
                        "name": item["Celebrity"]["Name"],
                        "confidence": round(item["Celebrity"].get("Confidence", 0.0) / 100.0, 4),
                        "type": "celebrity",
                    }
                    for item in page.get("Celebrities", [])
                ]

            labels, duration = await self._run_video_job(
                locator,
                "start_celebrity_recognition",
                "get_celebrity_recognition",
                extract,
            )
            return AnalysisPayload(labels=merge_labels(labels)), video_cost(duration or options.duration_seconds)

        response = await self._rekognition("recognize_celebrities", Image=self.storage.s3_object(locator))
        labels = [
            {
                "name": face["Name"],
                "confidence": round(face.get("MatchConfidence", 0.0) / 100.0, 4),
                "type": "celebrity",
            }
            for face in response.get("CelebrityFaces", [])
        ]
        return AnalysisPayload(labels=merge_labels(labels)), IMAGE_COST_PER_CALL

