"""
Authentication dependencies for FastAPI route protection.

This module provides dependency functions for:
- Extracting and verifying JWT access tokens from requests
- Loading the current user from the database
- Protecting routes with role requirements
- Supplying services (clock, transaction manager, attempt tracker,
  secret protector, notification queue) so tests can override them
"""

from typing import Annotated

import redis.asyncio as redis
from fastapi import Cookie, Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import AuthErrorCode, RoleName
from app.core.clock import Clock, get_clock
from app.core.database import get_db, get_session_factory
from app.core.errors import ForbiddenError, ServiceError
from app.core.logging import user_id_ctx
from app.core.role_cache import get_cached_user_roles, get_redis
from app.core.secret_protector import SecretProtector, get_secret_protector
from app.core.security import AccessTokenClaims, verify_access_token
from app.core.transaction import TransactionManager
from app.models.user import Users
from app.services.mfa_attempt_tracker import MfaAttemptTracker, get_mfa_attempt_tracker
from app.services.notifications import NotificationQueue, get_notification_queue


def _not_authenticated(message: str = "Not authenticated") -> ServiceError:
    return ServiceError(
        message,
        code=AuthErrorCode.NOT_AUTHENTICATED,
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_access_token_claims(
    clock: Annotated[Clock, Depends(get_clock)],
    access_token: Annotated[str | None, Cookie()] = None,
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(HTTPBearer(auto_error=False))
    ] = None,
) -> AccessTokenClaims:
    """
    Extract and verify the JWT access token.

    The Authorization header wins over the access_token cookie.

    Raises:
        ServiceError: 401 NOT_AUTHENTICATED if missing, invalid or expired
    """
    token = credentials.credentials if credentials else access_token
    if not token:
        raise _not_authenticated()

    claims = verify_access_token(token, clock.now())
    if claims is None:
        raise _not_authenticated("Could not validate credentials")
    return claims


async def get_current_user(
    claims: Annotated[AccessTokenClaims, Depends(get_access_token_claims)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Users:
    """
    Load current user from database using verified token.

    Raises:
        ServiceError: 401 if user not found, inactive or deleted
    """
    user = await db.get(Users, claims.user_id)
    if user is None or not user.is_valid_account:
        raise _not_authenticated()

    user_id_ctx.set(user.user_id)
    return user


def get_transaction_manager(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> TransactionManager:
    return TransactionManager(session_factory)


async def require_admin(
    current_user: Annotated[Users, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    redis_client: Annotated[redis.Redis, Depends(get_redis)],  # type: ignore[type-arg]
) -> Users:
    """
    Require current user to hold the Admin role.

    Roles are read through the cache rather than the token so that a revoked
    role stops working before the access token expires.

    Raises:
        ForbiddenError: 403 if user is not an admin
    """
    if current_user.user_id is None:
        raise _not_authenticated()
    roles = await get_cached_user_roles(db, redis_client, current_user.user_id)
    if RoleName.ADMIN not in roles:
        raise ForbiddenError("Admin privileges required")
    return current_user


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Checks X-Forwarded-For header first (for proxies/load balancers),
    falls back to direct client IP.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # X-Forwarded-For can contain multiple IPs, take the first (client)
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "unknown")


# Type aliases for dependency injection
CurrentUser = Annotated[Users, Depends(get_current_user)]
AdminUser = Annotated[Users, Depends(require_admin)]
ClaimsDep = Annotated[AccessTokenClaims, Depends(get_access_token_claims)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
ClockDep = Annotated[Clock, Depends(get_clock)]
ClientIp = Annotated[str, Depends(get_client_ip)]
UserAgent = Annotated[str, Depends(get_user_agent)]
TransactionsDep = Annotated[TransactionManager, Depends(get_transaction_manager)]
TrackerDep = Annotated[MfaAttemptTracker, Depends(get_mfa_attempt_tracker)]
ProtectorDep = Annotated[SecretProtector, Depends(get_secret_protector)]
NotifierDep = Annotated[NotificationQueue, Depends(get_notification_queue)]
RedisDep = Annotated[redis.Redis, Depends(get_redis)]  # type: ignore[type-arg]
