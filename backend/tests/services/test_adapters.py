"""
Tests for the analysis adapters.

This test module verifies:
1. Rekognition responses are normalized into AnalysisPayload
2. Throttling is retried locally, input errors are not
3. Costs are recorded only for charged attempts
4. Provider error classification (AWS and OpenAI)
"""

from decimal import Decimal
from unittest.mock import Mock

import httpx
import openai
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from sqlalchemy import func, select

from app.core.errors import ErrorClass, PermanentInputError, TransientProviderError
from app.models.billing import CostRecord
from app.models.media import MediaKind
from app.services.adapters.aws import classify_aws_error
from app.services.adapters.base import AnalysisOptions
from app.services.adapters.openai_client import classify_openai_error
from app.services.adapters.text_analysis import TextAnalysisAdapter
from app.services.adapters.vision import ObjectDetectionAdapter, TextDetectionAdapter, merge_labels
from app.services.storage import MediaStorage


def client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} raised"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "DetectLabels",
    )


LABELS_RESPONSE = {
    "Labels": [
        {"Name": "Bicycle", "Confidence": 97.5},
        {"Name": "Beach", "Confidence": 81.25},
    ]
}


async def _cost_records(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count(CostRecord.id)))


@pytest.fixture
def rekognition():
    client = Mock()
    client.detect_labels.return_value = LABELS_RESPONSE
    client.detect_moderation_labels.return_value = {"ModerationLabels": []}
    return client


@pytest.fixture
def options(test_user):
    return AnalysisOptions(user_id=test_user.id, kind=MediaKind.IMAGE)


@pytest.mark.asyncio
class TestObjectDetection:
    """Test the Rekognition label adapter with a mocked client."""

    async def test_labels_normalized(self, ledger, rekognition, options, session_factory):
        adapter = ObjectDetectionAdapter(ledger, MediaStorage(bucket="media"), client=rekognition, local_retries=0)

        outcome = await adapter.analyze("uploads/1/beach.jpg", options)

        assert outcome.succeeded
        assert outcome.result.labels == [
            {"name": "Bicycle", "confidence": 0.975},
            {"name": "Beach", "confidence": 0.8125},
        ]
        assert outcome.result.provider == "rekognition"
        assert outcome.cost == Decimal("0.002")
        assert await _cost_records(session_factory) == 1

        call = rekognition.detect_labels.call_args
        assert call.kwargs["Image"] == {"S3Object": {"Bucket": "media", "Name": "uploads/1/beach.jpg"}}

    async def test_throttling_retried_locally(self, ledger, rekognition, options, session_factory):
        """One throttled attempt, then success: only the success is charged."""
        rekognition.detect_labels.side_effect = [client_error("ThrottlingException"), LABELS_RESPONSE]
        adapter = ObjectDetectionAdapter(
            ledger, MediaStorage(bucket="media"), client=rekognition, local_retries=1, retry_delay=0
        )

        outcome = await adapter.analyze("uploads/1/beach.jpg", options)

        assert outcome.succeeded
        assert outcome.attempts == 2
        assert await _cost_records(session_factory) == 1

    async def test_bad_image_is_permanent(self, ledger, rekognition, options, session_factory):
        """Input errors are not retried and cost nothing."""
        rekognition.detect_labels.side_effect = client_error("InvalidImageFormatException")
        adapter = ObjectDetectionAdapter(
            ledger, MediaStorage(bucket="media"), client=rekognition, local_retries=2, retry_delay=0
        )

        outcome = await adapter.analyze("uploads/1/broken.jpg", options)

        assert not outcome.succeeded
        assert outcome.error_class == ErrorClass.PERMANENT
        assert rekognition.detect_labels.call_count == 1
        assert await _cost_records(session_factory) == 0

    async def test_text_detection_rejects_video(self, ledger, rekognition, test_user):
        adapter = TextDetectionAdapter(ledger, MediaStorage(bucket="media"), client=rekognition)

        outcome = await adapter.analyze(
            "uploads/1/clip.mp4", AnalysisOptions(user_id=test_user.id, kind=MediaKind.VIDEO)
        )

        assert outcome.error_class == ErrorClass.PERMANENT
        rekognition.detect_text.assert_not_called()

    def test_merge_labels_keeps_best(self):
        merged = merge_labels([
            {"name": "Dog", "confidence": 0.7},
            {"name": "Dog", "confidence": 0.9},
            {"name": "Cat", "confidence": 0.8},
        ])
        assert merged == [{"name": "Dog", "confidence": 0.9}, {"name": "Cat", "confidence": 0.8}]


@pytest.mark.asyncio
class TestTextAnalysis:
    """Test the Comprehend adapter."""

    async def test_empty_text_skips_provider(self, ledger, test_user, session_factory):
        client = Mock()
        adapter = TextAnalysisAdapter(ledger, client=client)

        outcome = await adapter.analyze("", AnalysisOptions(user_id=test_user.id, text="   "))

        assert outcome.succeeded
        assert outcome.result.entities == []
        client.detect_entities.assert_not_called()
        assert await _cost_records(session_factory) == 0

    async def test_entities_and_sentiment(self, ledger, test_user):
        client = Mock()
        client.detect_entities.return_value = {
            "Entities": [{"Text": "Acme Rentals", "Type": "ORGANIZATION", "Score": 0.91}]
        }
        client.detect_sentiment.return_value = {
            "Sentiment": "POSITIVE",
            "SentimentScore": {"Positive": 0.9, "Negative": 0.01, "Neutral": 0.09, "Mixed": 0.0},
        }
        adapter = TextAnalysisAdapter(ledger, client=client)

        outcome = await adapter.analyze("", AnalysisOptions(user_id=test_user.id, text="Acme Rentals beach bikes"))

        assert outcome.result.entities == [{"name": "Acme Rentals", "type": "ORGANIZATION", "confidence": 0.91}]
        assert outcome.result.sentiment == "positive"
        assert outcome.result.sentiment_scores["positive"] == 0.9


class TestErrorClassification:
    """Provider exceptions map to error classes, never by message text."""

    @pytest.mark.parametrize("code, expected", [
        ("ThrottlingException", TransientProviderError),
        ("ProvisionedThroughputExceededException", TransientProviderError),
        ("InvalidImageFormatException", PermanentInputError),
        ("AccessDeniedException", PermanentInputError),
    ])
    def test_aws_codes(self, code, expected):
        assert isinstance(classify_aws_error(client_error(code), "rekognition"), expected)

    def test_aws_unknown_code_uses_status(self):
        assert isinstance(classify_aws_error(client_error("Mystery", 503), "s3"), TransientProviderError)
        assert isinstance(classify_aws_error(client_error("Mystery", 400), "s3"), PermanentInputError)

    def test_aws_transport_error(self):
        error = EndpointConnectionError(endpoint_url="https://rekognition.example")
        assert isinstance(classify_aws_error(error, "rekognition"), TransientProviderError)

    def test_openai_errors(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")

        rate_limited = openai.RateLimitError(
            "slow down", response=httpx.Response(429, request=request), body=None
        )
        bad_request = openai.BadRequestError(
            "unsupported file", response=httpx.Response(400, request=request), body=None
        )
        server_error = openai.InternalServerError(
            "oops", response=httpx.Response(500, request=request), body=None
        )

        assert isinstance(classify_openai_error(rate_limited), TransientProviderError)
        assert isinstance(classify_openai_error(bad_request), PermanentInputError)
        assert isinstance(classify_openai_error(server_error), TransientProviderError)
        assert isinstance(classify_openai_error(openai.APIConnectionError(request=request)), TransientProviderError)
