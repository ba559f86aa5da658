"""
OpenAI client and error classification, shared by transcription and the
OpenAI embedding provider.
"""

import openai
from openai import AsyncOpenAI

from app.core.config import settings
from app.core.errors import PermanentInputError, PipelineError, TransientProviderError


def get_openai_client() -> AsyncOpenAI:
    """
    New client bound to the caller. Callers keep the instance; httpx pools
    belong to the event loop that created them.
    """
    # SDK retries are disabled; the pipeline counts attempts itself
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.ADAPTER_TIMEOUT_SECONDS,
        max_retries=0,
    )


def classify_openai_error(exc: Exception, service: str = "openai") -> PipelineError:
    """
    Rate limits, timeouts, connection errors and 5xx are transient.
    Other API status errors (bad request, auth, not found) are permanent.
    """
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return TransientProviderError(f"{service} {type(exc).__name__}: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return TransientProviderError(f"{service} HTTP {exc.status_code}: {exc.message}")
        return PermanentInputError(f"{service} HTTP {exc.status_code}: {exc.message}")
    return TransientProviderError(f"{service} {type(exc).__name__}: {exc}")
