"""
MFA attempt tracking using Redis.

Counts failed second-factor attempts per (user, attempt type) and locks that
pair out after MFA_MAX_ATTEMPTS failures. Both the failure counter and the
lockout marker expire after MFA_LOCKOUT_MINUTES, so stale failures decay on
their own. TOTP and backup-code attempts are tracked separately, and none of
this touches the account's primary password lockout.

Callers hold guard(user_id, attempt_type) across check, verify and record.
The guard is a Redis lock, so concurrent requests for the same key are
serialized across every worker process.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Annotated

import redis.asyncio as redis
from fastapi import Depends
from redis.exceptions import LockError

from app.config import AuthErrorMessage, settings
from app.core.errors import TooManyAttemptsError
from app.core.logging import get_logger
from app.core.role_cache import get_redis

logger = get_logger(__name__)

GUARD_TIMEOUT_SECONDS = 10
GUARD_BLOCKING_TIMEOUT_SECONDS = 5


class MfaAttemptTracker:
    def __init__(
        self,
        redis_client: redis.Redis,  # type: ignore[type-arg]
        max_attempts: int | None = None,
        lockout_minutes: int | None = None,
    ) -> None:
        self._redis = redis_client
        self._max_attempts = max_attempts or settings.MFA_MAX_ATTEMPTS
        self._window = timedelta(minutes=lockout_minutes or settings.MFA_LOCKOUT_MINUTES)

    @staticmethod
    def _attempts_key(user_id: int, attempt_type: str) -> str:
        return f"mfa_attempts:{user_id}:{attempt_type}"

    @staticmethod
    def _lockout_key(user_id: int, attempt_type: str) -> str:
        return f"mfa_lockout:{user_id}:{attempt_type}"

    @asynccontextmanager
    async def guard(self, user_id: int, attempt_type: str) -> AsyncIterator[None]:
        """
        Serialize check/verify/record for one (user, attempt type) key.

        Raises:
            TooManyAttemptsError: Another attempt for the same key held the
                lock for longer than the blocking timeout
        """
        lock = self._redis.lock(
            f"mfa_attempts_lock:{user_id}:{attempt_type}",
            timeout=GUARD_TIMEOUT_SECONDS,
            blocking_timeout=GUARD_BLOCKING_TIMEOUT_SECONDS,
        )
        try:
            acquired = await lock.acquire()
        except LockError:
            acquired = False
        if not acquired:
            logger.warning("mfa_attempt_guard_busy", user_id=user_id, attempt_type=attempt_type)
            raise TooManyAttemptsError(AuthErrorMessage.TOO_MANY_ATTEMPTS)

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lock outlived its timeout; Redis already dropped it
                logger.warning("mfa_attempt_guard_expired", user_id=user_id, attempt_type=attempt_type)

    async def is_locked_out(self, user_id: int, attempt_type: str) -> bool:
        return bool(await self._redis.exists(self._lockout_key(user_id, attempt_type)))

    async def failed_attempts(self, user_id: int, attempt_type: str) -> int:
        count = await self._redis.get(self._attempts_key(user_id, attempt_type))
        return int(count) if count else 0

    async def record_failed_attempt(self, user_id: int, attempt_type: str) -> bool:
        """
        Count a failed attempt.

        The counter's expiry is set on the first failure, so failures older
        than the lockout window no longer count.

        Returns:
            True if this failure triggered a lockout
        """
        key = self._attempts_key(user_id, attempt_type)
        count = await self.failed_attempts(user_id, attempt_type)

        pipe = self._redis.pipeline()
        pipe.incr(key)
        if count == 0:
            pipe.expire(key, self._window)
        results = await pipe.execute()
        failed = int(results[0])

        if failed < self._max_attempts:
            logger.debug(
                "mfa_attempt_failed",
                user_id=user_id,
                attempt_type=attempt_type,
                failed_attempts=failed,
                limit=self._max_attempts,
            )
            return False

        triggered = await self._redis.set(
            self._lockout_key(user_id, attempt_type), "1", ex=self._window, nx=True
        )
        await self._redis.delete(key)
        if triggered:
            logger.warning(
                "mfa_attempts_locked_out",
                user_id=user_id,
                attempt_type=attempt_type,
                failed_attempts=failed,
                lockout_minutes=int(self._window.total_seconds() // 60),
            )
        return bool(triggered)

    async def reset_attempts(self, user_id: int, attempt_type: str) -> None:
        await self._redis.delete(self._attempts_key(user_id, attempt_type))


async def get_mfa_attempt_tracker(
    redis_client: Annotated[redis.Redis, Depends(get_redis)],  # type: ignore[type-arg]
) -> AsyncGenerator[MfaAttemptTracker, None]:
    """Dependency returning a tracker bound to the request's Redis client."""
    yield MfaAttemptTracker(redis_client)
