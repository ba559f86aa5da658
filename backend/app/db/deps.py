"""
Database Dependencies for FastAPI Routes

Routes declare what they need and FastAPI provides it:

    @router.get("/media/{media_id}")
    async def get_media(media_id: int, db: DBSession):
        ...

Each request gets its own session; changes must be committed explicitly
and are rolled back automatically on errors.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session.

    Thin wrapper around get_session() so tests can override a single
    dependency (app.dependency_overrides[get_db]).

    Yields:
        AsyncSession: Database session for the current request
    """
    async for session in get_session():
        yield session


# Reusable annotation: `db: DBSession` instead of `db: AsyncSession = Depends(get_db)`
DBSession = Annotated[AsyncSession, Depends(get_db)]


__all__ = [
    "get_db",
    "DBSession",
]
