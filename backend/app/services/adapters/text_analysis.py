"""
Entity and sentiment extraction (Amazon Comprehend).

Input is the text produced by the other capabilities (detected text and/or
transcript). Empty input completes immediately with an empty result and no
charge.

Pricing: $0.0001 per unit of 100 characters, minimum 3 units per request.
Each analysis makes two requests (entities + sentiment).
"""

import asyncio
import logging
import math
from decimal import Decimal
from typing import Optional, Tuple

from app.core.errors import PipelineError
from app.models.jobs import Capability
from app.services.adapters.aws import classify_aws_error, get_aws_client
from app.services.adapters.base import (
    AdapterOutcome,
    AnalysisAdapter,
    AnalysisOptions,
    AnalysisPayload,
    AttemptGate,
)
from app.services.ledger import CostLedger

logger = logging.getLogger(__name__)


COST_PER_UNIT = Decimal("0.0001")
CHARS_PER_UNIT = 100
MIN_UNITS = 3
# Synchronous Comprehend calls accept up to 5000 bytes of UTF-8
MAX_TEXT_BYTES = 5000


def truncate_utf8(text: str, max_bytes: int = MAX_TEXT_BYTES) -> str:
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max_bytes].decode("utf-8", errors="ignore")


def request_cost(text: str) -> Decimal:
    units = max(MIN_UNITS, math.ceil(len(text) / CHARS_PER_UNIT))
    return COST_PER_UNIT * units


class TextAnalysisAdapter(AnalysisAdapter):
    """Named entities plus overall sentiment."""

    capability = Capability.TEXT_ANALYSIS
    service = "comprehend"
    operation = "detect_entities_sentiment"

    def __init__(self, ledger: CostLedger, client=None, **kwargs):
        super().__init__(ledger, **kwargs)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_aws_client("comprehend")
        return self._client

    def estimate_cost(self, options: AnalysisOptions) -> Decimal:
        text = truncate_utf8(options.text.strip())
        if not text:
            return Decimal("0")
        return request_cost(text) * 2

    def classify_exception(self, exc: Exception) -> PipelineError:
        return classify_aws_error(exc, self.service)

    async def analyze(
        self, locator: str, options: AnalysisOptions, gate: Optional[AttemptGate] = None
    ) -> AdapterOutcome:
        if not options.text.strip():
            return AdapterOutcome(result=AnalysisPayload(provider=self.service))
        return await super().analyze(locator, options, gate)

    async def _call(self, locator: str, options: AnalysisOptions) -> Tuple[AnalysisPayload, Decimal]:
        text = truncate_utf8(options.text.strip())
        language = options.language_code or "en"

        entities_response = await asyncio.to_thread(
            self.client.detect_entities, Text=text, LanguageCode=language
        )
        sentiment_response = await asyncio.to_thread(
            self.client.detect_sentiment, Text=text, LanguageCode=language
        )

        entities = [
            {
                "name": entity["Text"],
                "type": entity.get("Type", "OTHER"),
                "confidence": round(entity.get("Score", 0.0), 4),
            }
            for entity in entities_response.get("Entities", [])
        ]
        sentiment: Optional[str] = sentiment_response.get("Sentiment")
        scores = {
            key.lower(): round(value, 4)
            for key, value in sentiment_response.get("SentimentScore", {}).items()
        }

        payload = AnalysisPayload(
            entities=entities,
            sentiment=sentiment.lower() if sentiment else None,
            sentiment_scores=scores or None,
        )
        return payload, request_cost(text) * 2
