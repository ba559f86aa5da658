"""
AWS client construction and error classification shared by the Rekognition,
Comprehend and S3 wrappers.

boto3 clients are synchronous; adapters call them through asyncio.to_thread.
Client-side retries are disabled so the pipeline's own retry accounting is
the only one that runs.
"""

import logging
from functools import lru_cache

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError, TransientProviderError

logger = logging.getLogger(__name__)


TRANSIENT_ERROR_CODES = frozenset({
    "ThrottlingException",
    "Throttling",
    "ProvisionedThroughputExceededException",
    "LimitExceededException",
    "TooManyRequestsException",
    "ServiceUnavailableException",
    "ServiceUnavailable",
    "InternalServerError",
    "InternalServerException",
    "InternalFailure",
    "RequestTimeout",
    "RequestTimeoutException",
    "SlowDown",
})

PERMANENT_ERROR_CODES = frozenset({
    "InvalidImageFormatException",
    "ImageTooLargeException",
    "InvalidS3ObjectException",
    "InvalidParameterException",
    "VideoTooLargeException",
    "TextSizeLimitExceededException",
    "UnsupportedLanguageException",
    "InvalidRequestException",
    "NoSuchKey",
    "NoSuchBucket",
    "404",
    "AccessDeniedException",
    "AccessDenied",
})

_TRANSPORT_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


@lru_cache(maxsize=None)
def get_aws_client(service_name: str):
    """Shared boto3 client per service (boto3 clients are thread-safe)."""
    config = Config(
        region_name=settings.AWS_REGION,
        connect_timeout=10,
        read_timeout=settings.ADAPTER_TIMEOUT_SECONDS,
        retries={"max_attempts": 1, "mode": "standard"},
    )
    return boto3.client(
        service_name,
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        config=config,
    )


def classify_aws_error(exc: Exception, service: str) -> PipelineError:
    """
    Map a botocore exception to a pipeline error.

    Known throttling/availability codes and transport failures are transient.
    Known input codes are permanent. Unknown ClientErrors are decided by the
    HTTP status: 5xx transient, anything else permanent.
    """
    if isinstance(exc, PipelineError):
        return exc

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message", str(exc))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0

        if code in TRANSIENT_ERROR_CODES:
            return TransientProviderError(f"{service} {code}: {message}")
        if code in PERMANENT_ERROR_CODES:
            return PermanentInputError(f"{service} {code}: {message}")
        if status >= 500:
            return TransientProviderError(f"{service} {code or status}: {message}")
        return PermanentInputError(f"{service} {code or status}: {message}")

    if isinstance(exc, _TRANSPORT_ERRORS):
        return TransientProviderError(f"{service} connection error: {exc}")

    if isinstance(exc, BotoCoreError):
        logger.error(f"Unexpected botocore error from {service}: {exc}")
        return TransientProviderError(f"{service} error: {exc}")

    return TransientProviderError(f"{service} {type(exc).__name__}: {exc}")
