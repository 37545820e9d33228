"""
Authentication and authorization utilities.

Users and operators authenticate with JWT bearer tokens carrying a user id
and a role. The tick trigger is authenticated separately with a shared cron
secret or a header set by the scheduling platform.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from taskqueue.config import get_settings
from taskqueue.constants import ADMIN_ROLE, USER_ROLE

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    user_id: str
    role: str
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Authenticated caller context."""

    user_id: str
    role: str = USER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def create_access_token(
    user_id: str,
    role: str = USER_ROLE,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        user_id: The user identifier (stored as "sub").
        role: "user" or "admin".
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    issued_at = datetime.now(timezone.utc)
    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": issued_at + expires_delta,
        "iat": issued_at,
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
        ) from e

    user_id = payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing sub",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        user_id=user_id,
        role=payload.get("role", USER_ROLE),
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current authenticated user.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return AuthenticatedUser(user_id=token_data.user_id, role=token_data.role)


async def get_current_admin(
    user: Annotated[AuthenticatedUser, Depends(get_current_user)],
) -> AuthenticatedUser:
    """
    FastAPI dependency that only admits operators.

    Raises:
        HTTPException: 403 if the caller is not an admin.
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


# Type aliases for dependency injection
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
CurrentAdmin = Annotated[AuthenticatedUser, Depends(get_current_admin)]


def is_cron_request(request: Request) -> bool:
    """
    Check whether a request comes from the scheduler.

    Accepts either the platform's trusted header or
    "Authorization: Bearer <cron_secret>". With no cron secret configured
    only the trusted header is accepted.
    """
    settings = get_settings()

    trusted = request.headers.get(settings.cron_trusted_header)
    if trusted is not None and secrets.compare_digest(
        trusted, settings.cron_trusted_header_value
    ):
        return True

    if not settings.cron_secret:
        return False

    auth_header = request.headers.get("Authorization", "")
    return secrets.compare_digest(auth_header, f"Bearer {settings.cron_secret}")


async def verify_cron_auth(request: Request) -> None:
    """
    FastAPI dependency guarding the tick trigger.

    Raises:
        HTTPException: 401 unless the request comes from the scheduler.
    """
    if not is_cron_request(request):
        logger.warning(
            "Rejected tick trigger",
            extra={"client": request.client.host if request.client else None},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized - queue processing is restricted to scheduled jobs",
        )
