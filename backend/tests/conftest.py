"""
Pytest configuration and fixtures.

This file is automatically discovered by pytest and provides
shared fixtures for all test modules.

Every test gets its own SQLite database (aiosqlite) under tmp_path, an
in-memory Redis double for the caches, and a deterministic embedding
provider. Nothing here talks to PostgreSQL, Redis or a paid provider.

References:
-----------
- Pytest Fixtures: https://docs.pytest.org/en/stable/fixture.html
- FastAPI Testing: https://fastapi.tiangolo.com/tutorial/testing/
"""

import os
import tempfile

# Settings are read at import time; configure them before importing app
os.environ.setdefault("SECRET_KEY", "medialens-test-signing-key-0123456789abcdef")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'medialens-test.db')}",
)
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6399/15")
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("EMBEDDING_PROVIDER", "openai")
os.environ.setdefault("EMBEDDING_DIMENSION", "8")
os.environ.setdefault("LOG_FORMAT", "text")

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401  (registers every table)
from app.core.security import create_access_token
from app.db.base import Base, utcnow
from app.db.deps import get_db
from app.models.jobs import Capability
from app.models.media import AggregatedContent, Embedding, MediaItem, MediaKind, MediaStatus, MediaTag
from app.models.user import ServiceTier, User
from app.services.cache import RedisJSONCache
from app.services.embeddings.service import EmbeddingService
from app.services.ledger import CostLedger
from app.services.media import MediaService
from app.services.orchestrator import JobOrchestrator
from app.services.search import SearchService
from tests.fakes import QUERY_VECTOR, FakeEmbeddingProvider, FakeRedis


# ================================
# Database Fixtures
# ================================

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    Fresh SQLite database per test.

    NullPool gives every session its own connection, so concurrent claims
    really race on the database.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    """Session factory with the same options as AsyncSessionLocal."""
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ================================
# Service Fixtures
# ================================

@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider(vectors={"red bicycle": QUERY_VECTOR})


@pytest_asyncio.fixture
async def ledger(session_factory) -> CostLedger:
    return CostLedger(session_factory)


@pytest_asyncio.fixture
async def embedding_service(embedding_provider, ledger, fake_redis) -> EmbeddingService:
    return EmbeddingService(
        provider=embedding_provider,
        ledger=ledger,
        cache=RedisJSONCache("embedding", 3600, redis=fake_redis),
        timeout=2.0,
    )


@pytest_asyncio.fixture
async def orchestrator(session_factory) -> JobOrchestrator:
    """Orchestrator whose retries are due immediately."""
    return JobOrchestrator(session_factory, backoff=lambda attempt: 0.0)


@pytest_asyncio.fixture
async def media_service(session_factory, orchestrator) -> MediaService:
    return MediaService(session_factory, orchestrator=orchestrator)


@pytest_asyncio.fixture
async def search_service(session_factory, embedding_service, fake_redis) -> SearchService:
    return SearchService(
        session_factory,
        embedding_service,
        cache=RedisJSONCache("search", 60, redis=fake_redis),
    )


# ================================
# Data Factories
# ================================

@pytest_asyncio.fixture
async def user_factory(session_factory):
    """
    Create users.

    Usage:
        user = await user_factory(ServiceTier.PREMIUM)
    """
    async def create(tier: ServiceTier = ServiceTier.FREE, is_active: bool = True) -> User:
        suffix = uuid.uuid4().hex[:10]
        async with session_factory() as session:
            user = User(
                external_id=f"auth|{suffix}",
                email=f"{suffix}@example.com",
                name=f"User {suffix}",
                tier=tier,
                is_active=is_active,
            )
            session.add(user)
            await session.commit()
            return user

    return create


@pytest_asyncio.fixture
async def test_user(user_factory) -> User:
    return await user_factory(ServiceTier.FREE)


@pytest_asyncio.fixture
async def media_factory(session_factory):
    """
    Insert media items directly in a given state.

    Usage:
        media = await media_factory(user, status=MediaStatus.COMPLETED, tags=["dog"])
    """
    async def create(
        owner: User,
        kind: MediaKind = MediaKind.IMAGE,
        status: MediaStatus = MediaStatus.UPLOADED,
        uploaded_at: Optional[datetime] = None,
        filename: Optional[str] = None,
        tags: Optional[List[str]] = None,
        text: Optional[str] = None,
    ) -> MediaItem:
        async with session_factory() as session:
            media = MediaItem(
                owner_id=owner.id,
                kind=kind,
                locator=f"uploads/{owner.id}/{uuid.uuid4().hex}",
                filename=filename or ("clip.mp4" if kind == MediaKind.VIDEO else "photo.jpg"),
                mime_type="video/mp4" if kind == MediaKind.VIDEO else "image/jpeg",
                size_bytes=2048,
                duration_seconds=42.0 if kind == MediaKind.VIDEO else None,
                status=status,
                uploaded_at=uploaded_at or utcnow(),
            )
            session.add(media)
            await session.flush()

            for tag in tags or []:
                session.add(MediaTag(media_item_id=media.id, tag=tag))
            if text is not None:
                session.add(AggregatedContent(
                    media_item_id=media.id,
                    text=text,
                    tags=sorted(tags or []),
                    content_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
                    source_result_ids=[],
                ))
            await session.commit()
            return media

    return create


@pytest_asyncio.fixture
async def embedding_factory(session_factory):
    """Attach an Embedding row to a media item."""
    async def create(
        media: MediaItem,
        vector: List[float],
        source_text: str = "aggregated text",
        is_empty: bool = False,
        segment_index: Optional[int] = None,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
    ) -> Embedding:
        async with session_factory() as session:
            embedding = Embedding(
                media_item_id=media.id,
                vector=vector,
                source_text=source_text,
                content_hash=hashlib.sha256(source_text.encode("utf-8")).hexdigest(),
                model=FakeEmbeddingProvider.model,
                is_empty=is_empty,
                segment_index=segment_index,
                start_time=start_time,
                end_time=end_time,
            )
            session.add(embedding)
            await session.commit()
            return embedding

    return create


@pytest.fixture
def days_ago():
    def at(days: float) -> datetime:
        return utcnow() - timedelta(days=days)
    return at


# ================================
# FastAPI Client Fixtures
# ================================

@pytest.fixture
def woken_capabilities(monkeypatch) -> List[Capability]:
    """Record wake_workers calls instead of publishing to the broker."""
    woken: List[Capability] = []

    def record(capabilities, kind=MediaKind.IMAGE):
        woken.extend(sorted(set(capabilities)))

    monkeypatch.setattr("app.tasks.pipeline_tasks.wake_workers", record)
    return woken


@pytest_asyncio.fixture
async def client(
    session_factory,
    ledger,
    media_service,
    search_service,
    woken_capabilities,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for the FastAPI app.

    Overrides the database session and the service dependencies so every
    request runs against the per-test database and test doubles.

    Usage:
        async def test_something(client: AsyncClient, auth_headers):
            response = await client.get("/api/v1/media", headers=auth_headers)
            assert response.status_code == 200
    """
    from app.main import app
    from app.services.ledger import get_cost_ledger
    from app.services.media import get_media_service
    from app.services.search import get_search_service

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_cost_ledger] = lambda: ledger
    app.dependency_overrides[get_media_service] = lambda: media_service
    app.dependency_overrides[get_search_service] = lambda: search_service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(test_user: User) -> Dict[str, str]:
    """Bearer token for test_user, signed like the auth service signs them."""
    token = create_access_token({"sub": test_user.external_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    def build(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': user.external_id})}"}
    return build
