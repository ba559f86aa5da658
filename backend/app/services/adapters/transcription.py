"""
Speech-to-text adapter (OpenAI Whisper).

Downloads the media object, submits it to the transcription endpoint with
segment timestamps, and returns the full transcript plus segments.

Whisper bills per minute of submitted audio, including attempts that fail
after the upload was accepted, so failed attempts are charged too.
"""

import logging
import os
from decimal import Decimal
from typing import Optional, Tuple

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError
from app.models.jobs import Capability
from app.services.adapters.base import AnalysisAdapter, AnalysisOptions, AnalysisPayload
from app.services.adapters.openai_client import classify_openai_error, get_openai_client
from app.services.ledger import CostLedger
from app.services.storage import MediaStorage

logger = logging.getLogger(__name__)


COST_PER_MINUTE = Decimal("0.006")
DEFAULT_AUDIO_MINUTES = Decimal("10")


def transcription_cost(duration_seconds: Optional[float]) -> Decimal:
    if not duration_seconds:
        return DEFAULT_AUDIO_MINUTES * COST_PER_MINUTE
    return Decimal(str(duration_seconds)) / Decimal("60") * COST_PER_MINUTE


class TranscriptionAdapter(AnalysisAdapter):
    """Whisper transcription with segment-level timestamps."""

    capability = Capability.TRANSCRIPTION
    service = "openai"
    operation = "transcription"
    charges_on_failure = True

    def __init__(
        self,
        ledger: CostLedger,
        storage: Optional[MediaStorage] = None,
        client=None,
        model: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(ledger, **kwargs)
        self.storage = storage or MediaStorage()
        self._client = client
        self.model = model or settings.TRANSCRIPTION_MODEL

    @property
    def client(self):
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        return transcription_cost(options.duration_seconds)

    def classify_exception(self, exc: Exception) -> PipelineError:
        return classify_openai_error(exc, self.service)

    def timeout_for(self, options: AnalysisOptions) -> float:
        # Roughly real-time worst case for long videos
        if options.duration_seconds:
            return max(self.timeout, options.duration_seconds)
        return self.timeout

    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        if options.size_bytes and options.size_bytes > settings.TRANSCRIPTION_MAX_FILE_BYTES:
            raise PermanentInputError(
                f"File is {options.size_bytes} bytes; transcription accepts at most "
                f"{settings.TRANSCRIPTION_MAX_FILE_BYTES}"
            )

        path = await self.storage.download(locator)
        try:
            params = {
                "model": self.model,
                "response_format": "verbose_json",
                "timestamp_granularities": ["segment"],
            }
            if settings.TRANSCRIPTION_LANGUAGE:
                params["language"] = settings.TRANSCRIPTION_LANGUAGE

            with open(path, "rb") as audio:
                response = await self.client.audio.transcriptions.create(file=audio, **params)
        finally:
            os.unlink(path)

        segments = [
            {
                "start": float(segment.start),
                "end": float(segment.end),
                "text": segment.text.strip(),
            }
            for segment in (getattr(response, "segments", None) or [])
        ]
        duration = getattr(response, "duration", None) or options.duration_seconds

        logger.info(
            f"Transcribed media {options.media_item_id}: "
            f"{len(segments)} segments, {duration or 0:.1f}s"
        )
        payload = AnalysisPayload(
            text=(response.text or "").strip(),
            segments=segments,
            provider=f"openai:{self.model}",
        )
        return payload, transcription_cost(duration)
