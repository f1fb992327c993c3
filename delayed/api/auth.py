"""
Authentication and authorization utilities.

Operators exchange the admin API key for a short lived JWT and present it
as a bearer token on every queue administration route.
"""

import secrets
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from delayed.config import get_settings

# Security scheme
security = HTTPBearer()

OPERATOR_SUBJECT = "operator"


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    subject: str
    exp: datetime


class Operator(BaseModel):
    """Authenticated operator context."""

    subject: str


def create_access_token(
    subject: str = OPERATOR_SUBJECT,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        subject: Who the token is issued to.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(UTC)
    to_encode = {
        "sub": subject,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    subject = payload.get("sub")
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        subject=subject,
        exp=datetime.fromtimestamp(payload["exp"], UTC),
    )


async def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Operator:
    """
    FastAPI dependency to get the authenticated operator.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return Operator(subject=token_data.subject)


# Type alias for dependency injection
CurrentOperator = Annotated[Operator, Depends(get_current_operator)]


def validate_api_key(api_key: str) -> bool:
    """
    Check an API key against the configured admin key.

    Args:
        api_key: The API key to validate.

    Returns:
        True if the API key is valid.
    """
    expected = get_settings().api_admin_key
    return bool(api_key) and secrets.compare_digest(api_key, expected)
