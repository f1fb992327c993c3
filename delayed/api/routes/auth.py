"""
Authentication routes.
"""

from fastapi import APIRouter, HTTPException, status

from delayed.api.auth import create_access_token, validate_api_key
from delayed.config import get_settings
from delayed.types.api import AuthRequest, TokenResponse

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange the operator API key for a JWT access token.",
)
async def get_token(request: AuthRequest) -> TokenResponse:
    """
    Get an access token using API key authentication.

    Raises:
        HTTPException: If authentication fails.
    """
    if not validate_api_key(request.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    settings = get_settings()
    return TokenResponse(
        access_token=create_access_token(),
        expires_in=settings.api_access_token_expire_minutes * 60,
    )
