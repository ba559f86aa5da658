"""
Main FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.errors import (
    BudgetExceededError,
    ErrorClass,
    InvalidMediaError,
    MediaNotFoundError,
    PermanentInputError,
    PipelineError,
    SearchQuotaExceededError,
)
from app.core.env_validation import validate_environment
from app.core.logging import get_logger, setup_logging
from app.db.redis import check_redis_health, close_redis, init_redis
from app.db.session import init_db, close_db, check_db_health

# Setup logging
setup_logging()
logger = get_logger(__name__)

APP_VERSION = "0.1.0"

# InvalidMediaError reasons that describe the input rather than the item's state
INPUT_REASONS = {"unsupported_format", "file_too_large", "invalid_input"}
QUOTA_REASONS = {"upload_limit_exceeded", "storage_limit_exceeded"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan events.
    Handles startup and shutdown tasks.
    """
    # Startup
    logger.info(
        "starting_application",
        app_name=settings.APP_NAME,
        environment=settings.APP_ENV,
        version=APP_VERSION,
    )

    validate_environment()
    await init_db()

    # The caches degrade to misses without Redis; do not block startup on it
    try:
        await init_redis()
    except (RedisError, OSError) as e:
        logger.warning("redis_unavailable_at_startup", error=str(e))

    yield

    # Shutdown
    logger.info("shutting_down_application")

    await close_redis()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Media understanding and semantic search - Backend API",
    version=APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check() -> JSONResponse:
    """
    Health check endpoint for monitoring.
    Includes database and Redis connectivity checks.
    """
    db_healthy = await check_db_health()
    redis_healthy = await check_redis_health()

    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": "healthy" if db_healthy and redis_healthy else ("degraded" if db_healthy else "unhealthy"),
            "app_name": settings.APP_NAME,
            "environment": settings.APP_ENV,
            "version": APP_VERSION,
            "database": "connected" if db_healthy else "disconnected",
            "redis": "connected" if redis_healthy else "disconnected",
        }
    )


@app.get("/", tags=["root"])
async def root() -> JSONResponse:
    """
    Root endpoint.
    """
    return JSONResponse(
        content={
            "message": f"Welcome to {settings.APP_NAME} API",
            "version": APP_VERSION,
            "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
        }
    )


# Include API routers
from app.api import api_router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


def status_for_error(exc: PipelineError) -> int:
    """HTTP status for a pipeline error."""
    if isinstance(exc, MediaNotFoundError):
        return 404
    if isinstance(exc, BudgetExceededError):
        return 402
    if isinstance(exc, SearchQuotaExceededError) or exc.reason in QUOTA_REASONS:
        return 429
    if isinstance(exc, InvalidMediaError):
        return 422 if exc.reason in INPUT_REASONS else 409
    if isinstance(exc, PermanentInputError):
        return 422
    if exc.error_class == ErrorClass.TRANSIENT:
        return 503
    return 500


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """
    Map pipeline errors to HTTP responses.

    The body carries the stable reason code; transient errors are marked
    retryable.
    """
    status_code = status_for_error(exc)
    retryable = exc.error_class == ErrorClass.TRANSIENT

    log = logger.error if status_code >= 500 else logger.info
    log(
        "pipeline_error_response",
        reason=exc.reason,
        status_code=status_code,
        path=request.url.path,
        error=exc.message,
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": exc.reason,
                "message": exc.message,
                "retryable": retryable,
            }
        },
        headers={"Retry-After": "5"} if retryable else None,
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled errors.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "retryable": False,
            }
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
