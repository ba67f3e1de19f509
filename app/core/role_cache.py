"""
Role caching layer for authorization checks.

Caches a user's role names in Redis with a configurable TTL. Role mutations
invalidate the cache after their transaction commits, so a removed role stops
granting access immediately instead of when the access token expires.

Redis errors degrade gracefully to a database read.
"""

import json
from collections.abc import AsyncGenerator
from typing import cast

import redis.asyncio as redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.logging import get_logger
from app.models.permissions import Roles, UserRoles

logger = get_logger(__name__)


async def get_redis() -> AsyncGenerator[redis.Redis, None]:  # type: ignore[type-arg]
    """
    Dependency for getting async redis connection.
    """
    client = redis.from_url(
        str(settings.REDIS_URL),
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        yield client
    finally:
        await client.aclose()


def _make_cache_key(user_id: int) -> str:
    """Generate Redis cache key for user roles."""
    return f"user_roles:{user_id}"


async def get_user_roles(db: AsyncSession, user_id: int) -> set[str]:
    """Load role names for a user straight from the database."""
    result = await db.execute(
        select(Roles.name)
        .join(UserRoles, UserRoles.role_id == Roles.role_id)  # type: ignore[arg-type]
        .where(UserRoles.user_id == user_id)  # type: ignore[arg-type]
    )
    return {row[0] for row in result.fetchall()}


async def get_cached_user_roles(
    db: AsyncSession,
    redis_client: redis.Redis,  # type: ignore[type-arg]
    user_id: int,
) -> set[str]:
    """
    Get user roles with caching.

    First checks Redis cache, falls back to database query if cache miss.
    Stores result in cache with TTL for subsequent requests.

    Args:
        db: Database session
        redis_client: Redis client
        user_id: User ID

    Returns:
        Set of role names
    """
    cache_key = _make_cache_key(user_id)

    try:
        cached = await redis_client.get(cache_key)
    except redis.RedisError:
        logger.warning("role_cache_read_failed", user_id=user_id, exc_info=True)
        return await get_user_roles(db, user_id)

    if cached:
        try:
            cached_str = cast(str, cached.decode("utf-8") if isinstance(cached, bytes) else cached)
            return set(json.loads(cached_str))
        except (json.JSONDecodeError, TypeError, AttributeError):
            # Cache corrupted, fall through to database
            pass

    # Cache miss - query database
    roles = await get_user_roles(db, user_id)

    try:
        await redis_client.setex(
            cache_key,
            settings.ROLE_CACHE_TTL,
            json.dumps(sorted(roles)),
        )
    except redis.RedisError:
        logger.warning("role_cache_write_failed", user_id=user_id, exc_info=True)

    return roles


async def invalidate_user_roles(
    redis_client: redis.Redis,  # type: ignore[type-arg]
    user_id: int,
) -> None:
    """
    Invalidate cached roles for a user.

    Call this after a role change has committed.
    """
    try:
        await redis_client.delete(_make_cache_key(user_id))
    except redis.RedisError:
        logger.warning("role_cache_invalidate_failed", user_id=user_id, exc_info=True)
