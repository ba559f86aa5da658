"""
JWT verification for tokens issued by the auth service.

This service never logs users in; it only checks that a bearer token was
signed with the shared secret and has not expired, and reads its claims.

References:
-----------
- FastAPI Security: https://fastapi.tiangolo.com/tutorial/security/oauth2-jwt/
- JWT Standard: https://jwt.io/introduction
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from app.core.config import settings

# Default lifetime for tokens minted by create_access_token (tests, local tooling)
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Sign a token the same way the auth service does.

    Args:
        data: Claims; must include "sub" (the user's external_id)
        expires_delta: Lifetime, default 30 minutes

    Example:
        >>> token = create_access_token({"sub": "auth0|alice"})
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or DEFAULT_TOKEN_LIFETIME)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a JWT access token.

    Checks the signature, the algorithm and the expiry.

    Returns:
        Dictionary of claims if valid, None if invalid

    Example:
        >>> decode_access_token("invalid.token.here") is None
        True
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        # Expired, tampered or malformed
        return None
