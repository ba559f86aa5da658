"""
Authentication dependencies for FastAPI.

This module provides:
- HTTP bearer scheme for tokens issued by the auth service
- Dependency injection for protected routes

The token's "sub" claim is the user's external_id. The user row (mirrored
from the auth and billing services) supplies the service tier.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import decode_access_token
from app.db.deps import get_db
from app.models.user import User

# ================================
# Bearer Configuration
# ================================

# auto_error=False so a missing header gets the same 401 as a bad token
bearer_scheme = HTTPBearer(auto_error=False)


# ================================
# Dependencies
# ================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Get the current authenticated user from the bearer token.

    Flow:
    -----
    1. HTTPBearer extracts the token from the Authorization header
    2. Verify signature and expiry
    3. Look up the user by the token's "sub" (external_id)

    Raises:
        HTTPException 401: token missing, invalid, expired, or unknown user
    """
    # Reused for all auth failures; never reveal which check failed
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    external_id: str | None = payload.get("sub")
    if external_id is None:
        raise credentials_exception

    result = await db.execute(
        select(User).where(User.external_id == external_id)
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Get the current user and verify the account is enabled.

    Disabled accounts cannot enqueue media or search.

    Raises:
        HTTPException 400: account disabled
    """
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )
    return current_user
