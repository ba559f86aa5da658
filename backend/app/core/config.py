"""
Configuration management using Pydantic Settings.
All environment variables are loaded and validated here.
"""

from typing import Dict, List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ================================
    # Application Configuration
    # ================================
    APP_NAME: str = "MediaLens"
    APP_ENV: Literal["development", "staging", "testing", "production"] = "development"
    DEBUG: bool = True
    SECRET_KEY: str = Field(..., min_length=32)

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8000"

    @field_validator("ALLOWED_ORIGINS")
    @classmethod
    def parse_origins(cls, v: str) -> List[str]:
        """Parse comma-separated origins into list."""
        return [origin.strip() for origin in v.split(",")]

    # ================================
    # Database Configuration
    # ================================
    DATABASE_URL: str = Field(..., description="PostgreSQL connection string")
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # ================================
    # Redis Configuration
    # ================================
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20
    # Cache calls give up quickly; a slow Redis must not stall a search
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0

    # ================================
    # JWT Verification
    # ================================
    # Tokens are issued by the auth service; we only verify them.
    JWT_ALGORITHM: str = "HS256"

    # ================================
    # AWS (storage + analysis providers)
    # ================================
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    MEDIA_BUCKET: str = "medialens-uploads"

    # ================================
    # OpenAI (transcription + embeddings)
    # ================================
    OPENAI_API_KEY: Optional[str] = None
    TRANSCRIPTION_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: Optional[str] = None

    # ================================
    # Embedding Configuration
    # ================================
    EMBEDDING_PROVIDER: Literal["openai", "local"] = "openai"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 1536
    EMBEDDING_CACHE_TTL_SECONDS: int = 7 * 24 * 3600
    # Only used by the local sentence-transformers provider
    LOCAL_EMBEDDING_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    EMBEDDING_BATCH_SIZE: int = 32
    EMBEDDING_DEVICE: Literal["cpu", "cuda", "mps"] = "cpu"
    SEGMENT_WINDOW_SECONDS: float = 30.0

    # ================================
    # Pipeline Configuration
    # ================================
    JOB_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 10.0
    RETRY_MAX_DELAY_SECONDS: float = 15 * 60.0
    RETRY_JITTER_RATIO: float = 0.2
    CLAIM_TIMEOUT_SECONDS: int = 30 * 60
    # A running job renews its claimed_at this often
    CLAIM_HEARTBEAT_SECONDS: float = 60.0
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    ADAPTER_TIMEOUT_SECONDS: float = 60.0
    ADAPTER_LOCAL_RETRIES: int = 2
    ADAPTER_LOCAL_RETRY_DELAY_SECONDS: float = 0.5
    VIDEO_ANALYSIS_POLL_SECONDS: float = 5.0
    VIDEO_ANALYSIS_TIMEOUT_SECONDS: float = 15 * 60.0
    TRANSCRIPTION_MAX_FILE_BYTES: int = 25 * 1024 * 1024
    AGGREGATION_MAX_CHARS: int = 8000
    TAG_MIN_CONFIDENCE: float = 0.7
    # Concurrent workers per capability, as "capability:count" pairs;
    # "capability.video:count" narrows the video side of split capabilities
    WORKER_CONCURRENCY: str = (
        "object_detection:4,text_detection:4,celebrity_detection:2,"
        "transcription:2,text_analysis:4,embedding:4,"
        "object_detection.video:1,celebrity_detection.video:1"
    )

    @field_validator("WORKER_CONCURRENCY")
    @classmethod
    def parse_concurrency(cls, v: str) -> Dict[str, int]:
        """Parse "name:count" pairs into a dict."""
        limits = {}
        for pair in v.split(","):
            if not pair.strip():
                continue
            name, _, count = pair.partition(":")
            limits[name.strip()] = int(count or 1)
        return limits

    # ================================
    # Upload Constraints
    # ================================
    MAX_FILE_SIZE_BYTES: int = 500 * 1024 * 1024
    SUPPORTED_IMAGE_TYPES: str = "image/jpeg,image/png,image/gif,image/webp"
    SUPPORTED_VIDEO_TYPES: str = "video/mp4,video/quicktime,video/x-msvideo"

    @field_validator("SUPPORTED_IMAGE_TYPES", "SUPPORTED_VIDEO_TYPES")
    @classmethod
    def parse_mime_types(cls, v: str) -> List[str]:
        """Parse comma-separated MIME types into list."""
        return [mime.strip() for mime in v.split(",") if mime.strip()]

    # ================================
    # Search Configuration
    # ================================
    SEARCH_DEFAULT_LIMIT: int = 20
    SEARCH_MAX_LIMIT: int = 100
    SEARCH_MIN_SIMILARITY: float = 0.2
    SEARCH_CACHE_TTL_SECONDS: int = 60
    SEARCH_LOG_EMBEDDINGS: bool = False

    # ================================
    # Service Tiers
    # ================================
    # Lower priority value = served first. -1 means unlimited.
    TIER_PRIORITY_FREE: int = 10
    TIER_PRIORITY_PREMIUM: int = 5
    TIER_PRIORITY_ULTIMATE: int = 1
    TIER_BUDGET_FREE_USD: float = 1.0
    TIER_BUDGET_PREMIUM_USD: float = 10.0
    TIER_BUDGET_ULTIMATE_USD: float = 100.0
    TIER_UPLOADS_FREE: int = 10
    TIER_UPLOADS_PREMIUM: int = 100
    TIER_UPLOADS_ULTIMATE: int = -1
    TIER_SEARCHES_FREE: int = 50
    TIER_SEARCHES_PREMIUM: int = 500
    TIER_SEARCHES_ULTIMATE: int = -1
    TIER_STORAGE_FREE_MB: int = 5 * 1024
    TIER_STORAGE_PREMIUM_MB: int = 50 * 1024
    TIER_STORAGE_ULTIMATE_MB: int = 500 * 1024

    # ================================
    # Celery Configuration
    # ================================
    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/0"
    CELERY_TASK_SERIALIZER: str = "json"
    CELERY_RESULT_SERIALIZER: str = "json"
    # Celery accept content as comma-separated string, we'll parse it
    CELERY_ACCEPT_CONTENT: str = "json"
    CELERY_TIMEZONE: str = "UTC"
    CELERY_ENABLE_UTC: bool = True
    CELERY_DRAIN_BATCH_SIZE: int = 25

    @property
    def celery_accept_content_list(self) -> List[str]:
        """Parse CELERY_ACCEPT_CONTENT into a list."""
        return [item.strip() for item in self.CELERY_ACCEPT_CONTENT.split(",")]

    # ================================
    # Logging Configuration
    # ================================
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: Literal["json", "text"] = "json"

    # ================================
    # Feature Flags
    # ================================
    ENABLE_COST_TRACKING: bool = True

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


# Global settings instance
settings = Settings()
