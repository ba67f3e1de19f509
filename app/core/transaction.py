"""
Optimistic-concurrency transaction manager.

Identity-mutating commands (role add/remove, soft delete/restore, TOTP
enrollment) run as an operation callback inside execute_in_transaction():

    async def operation(db: AsyncSession, state: RoleChange) -> Users | ConcurrencyConflict:
        user = await db.get(Users, user_id)
        ...
        if not await guarded_stamp_update(db, user):
            return CONFLICT
        return user

    user = await transactions.execute_in_transaction(operation, state_factory=RoleChange)

Each attempt gets a fresh session and a fresh state object, so nothing read
or accumulated by a failed attempt leaks into the next one. Side effects that
must not be rolled back (cache invalidation, audit) are done by the caller
with the returned value, after commit.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import ConcurrencyConflictError
from app.core.logging import get_logger
from app.models.user import Users, new_concurrency_stamp

logger = get_logger(__name__)

T = TypeVar("T")

BASE_RETRY_DELAY = 0.05  # seconds
MAX_RETRY_DELAY = 2.0
JITTER_RATIO = 0.25

# Driver messages for unique-key violations (MariaDB/MySQL 1062, SQLite)
_UNIQUE_VIOLATION_MARKERS = ("Duplicate entry", "UNIQUE constraint failed", "1062")


class ConcurrencyConflict:
    """Returned by an operation to ask for a fresh retry."""

    def __init__(self, reason: str = "concurrency_stamp_mismatch") -> None:
        self.reason = reason

    def __repr__(self) -> str:
        return f"ConcurrencyConflict({self.reason!r})"


CONFLICT = ConcurrencyConflict()


def exponential_backoff(attempt: int) -> float:
    """50ms * 2^(attempt-1) with +/-25% jitter, capped at 2s."""
    base = BASE_RETRY_DELAY * (2 ** (attempt - 1))
    jitter = random.uniform(-JITTER_RATIO, JITTER_RATIO)
    return min(base * (1 + jitter), MAX_RETRY_DELAY)


def is_unique_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return any(marker in message for marker in _UNIQUE_VIOLATION_MARKERS)


async def guarded_stamp_update(db: AsyncSession, user: Users, **values: Any) -> bool:
    """
    Apply values to a user row only if its concurrency stamp is unchanged.

    Returns False when another writer got there first (no row matched).
    On success the in-memory object is updated to match the row.
    """
    new_stamp = new_concurrency_stamp()
    result = await db.execute(
        update(Users)
        .where(Users.user_id == user.user_id)  # type: ignore[arg-type]
        .where(Users.concurrency_stamp == user.concurrency_stamp)  # type: ignore[arg-type]
        .values(concurrency_stamp=new_stamp, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:  # type: ignore[attr-defined]
        return False

    # Row already written; sync the instance without queuing a second UPDATE
    for key, value in {**values, "concurrency_stamp": new_stamp}.items():
        set_committed_value(user, key, value)
    return True


class TransactionManager:
    """Runs operations in a retry loop keyed on ConcurrencyConflict results."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._sleep = sleep

    async def execute_in_transaction(
        self,
        operation: Callable[[AsyncSession, Any], Awaitable[T | ConcurrencyConflict]],
        *,
        state_factory: Callable[[], Any] | None = None,
        max_retries: int = 3,
        backoff: Callable[[int], float] = exponential_backoff,
    ) -> T:
        """
        Run operation until it commits without a conflict.

        Args:
            operation: Async callable taking (session, state). Returns a value,
                or ConcurrencyConflict to request a retry.
            state_factory: Builds a fresh per-attempt state object (None if omitted)
            max_retries: Retries after the first attempt
            backoff: Delay in seconds before retry n (1-based)

        Raises:
            ConcurrencyConflictError: Conflicts persisted through every retry
            Exception: Anything else the operation raises, without retry
        """
        attempt = 0
        while True:
            attempt += 1
            state = state_factory() if state_factory is not None else None
            outcome = await self._run_attempt(operation, state)

            if not isinstance(outcome, ConcurrencyConflict):
                return outcome

            if attempt > max_retries:
                logger.warning(
                    "transaction_conflict_exhausted",
                    attempts=attempt,
                    reason=outcome.reason,
                )
                raise ConcurrencyConflictError(attempts=attempt)

            delay = backoff(attempt)
            logger.info(
                "transaction_conflict_retry",
                attempt=attempt,
                reason=outcome.reason,
                delay_ms=int(delay * 1000),
            )
            await self._sleep(delay)

    async def _run_attempt(
        self,
        operation: Callable[[AsyncSession, Any], Awaitable[T | ConcurrencyConflict]],
        state: Any,
    ) -> T | ConcurrencyConflict:
        async with self._session_factory() as session:
            try:
                outcome = await operation(session, state)
                if isinstance(outcome, ConcurrencyConflict):
                    await session.rollback()
                    return outcome
                await session.commit()
                return outcome
            except StaleDataError:
                await session.rollback()
                return ConcurrencyConflict("stale_data")
            except IntegrityError as e:
                await session.rollback()
                if is_unique_violation(e):
                    return ConcurrencyConflict("unique_violation")
                raise
            except Exception:
                await session.rollback()
                raise
