"""
Startup configuration checks.

Settings parse types; these checks cover what a type cannot express:
driver prefixes, secret strength, provider keys and the ranges the pipeline
relies on (jitter ratio, similarity threshold, tier limits). The API and the
Celery workers run them before touching the database.
"""

from typing import List

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_MARKERS = ("change", "your-", "example")


class EnvironmentValidationError(Exception):
    """Configuration is unusable; the message lists every problem."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def check_secret_key(min_length: int = 32) -> List[str]:
    key = settings.SECRET_KEY or ""
    if not key:
        return ["SECRET_KEY is not set"]
    errors = []
    if len(key) < min_length:
        errors.append(f"SECRET_KEY is too short (at least {min_length} characters)")
    if any(marker in key.lower() for marker in PLACEHOLDER_MARKERS):
        errors.append("SECRET_KEY looks like a placeholder")
    return errors


def check_urls() -> List[str]:
    errors = []
    url = settings.DATABASE_URL or ""
    if settings.is_sqlite:
        if not url.startswith("sqlite+aiosqlite://"):
            errors.append("SQLite DATABASE_URL must use the aiosqlite driver (sqlite+aiosqlite:///path.db)")
        if settings.is_production:
            errors.append("SQLite is not supported in production; vector search needs pgvector")
    elif not url.startswith("postgresql+asyncpg://"):
        errors.append("DATABASE_URL must use the asyncpg driver (postgresql+asyncpg://...)")

    if not settings.REDIS_URL.startswith(("redis://", "rediss://")):
        errors.append("REDIS_URL must start with redis:// or rediss://")
    return errors


def check_providers() -> List[str]:
    """OpenAI keys are required in production; elsewhere a missing key is a warning."""
    errors = []
    needs_openai = settings.EMBEDDING_PROVIDER == "openai" or bool(settings.TRANSCRIPTION_MODEL)

    if needs_openai and not settings.OPENAI_API_KEY:
        if settings.is_production:
            errors.append("OPENAI_API_KEY is required for transcription and OpenAI embeddings")
        else:
            logger.warning("openai_key_missing", embedding_provider=settings.EMBEDDING_PROVIDER)
    elif settings.OPENAI_API_KEY and not settings.OPENAI_API_KEY.startswith("sk-"):
        errors.append("OPENAI_API_KEY must start with sk-")

    if not settings.AWS_ACCESS_KEY_ID:
        logger.info("aws_default_credential_chain")
    return errors


def check_pipeline_ranges() -> List[str]:
    errors = []
    if not 0.0 <= settings.RETRY_JITTER_RATIO < 1.0:
        errors.append("RETRY_JITTER_RATIO must be in [0, 1)")
    if not 0.0 <= settings.SEARCH_MIN_SIMILARITY <= 1.0:
        errors.append("SEARCH_MIN_SIMILARITY must be between 0 and 1")
    if settings.SEARCH_DEFAULT_LIMIT > settings.SEARCH_MAX_LIMIT:
        errors.append("SEARCH_DEFAULT_LIMIT cannot exceed SEARCH_MAX_LIMIT")
    if settings.JOB_MAX_ATTEMPTS < 1:
        errors.append("JOB_MAX_ATTEMPTS must be at least 1")
    # Two missed renewals still leave the claim alive
    if not 0 < settings.CLAIM_HEARTBEAT_SECONDS * 3 <= settings.CLAIM_TIMEOUT_SECONDS:
        errors.append("CLAIM_HEARTBEAT_SECONDS must be positive and at most a third of CLAIM_TIMEOUT_SECONDS")
    if settings.EMBEDDING_DIMENSION < 1:
        errors.append("EMBEDDING_DIMENSION must be positive")
    return errors


def check_production() -> List[str]:
    if not settings.is_production:
        return []
    errors = []
    if settings.DEBUG:
        errors.append("DEBUG must be false in production")
    if settings.LOG_FORMAT != "json":
        logger.warning("log_format_not_json", log_format=settings.LOG_FORMAT)
    if settings.SEARCH_LOG_EMBEDDINGS:
        logger.warning("search_embeddings_logged")
    return errors


def collect_errors() -> List[str]:
    errors: List[str] = []
    for check in (check_secret_key, check_urls, check_providers, check_pipeline_ranges, check_production):
        errors.extend(check())
    return errors


def validate_environment() -> None:
    """
    Raises:
        EnvironmentValidationError: one or more checks failed
    """
    errors = collect_errors()
    if errors:
        logger.error("environment_validation_failed", errors=errors, error_count=len(errors))
        raise EnvironmentValidationError(errors)

    logger.info(
        "environment_validation_passed",
        app_env=settings.APP_ENV,
        embedding_provider=settings.EMBEDDING_PROVIDER,
        cost_tracking=settings.ENABLE_COST_TRACKING,
    )
