"""
Tests for the optimistic-concurrency transaction manager.

Concurrent writers are simulated with a second session that changes the
row's concurrency stamp between the operation's read and its guarded update.
"""

from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import event, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ConcurrencyConflictError, NotFoundError
from app.core.transaction import (
    CONFLICT,
    ConcurrencyConflict,
    TransactionManager,
    exponential_backoff,
    guarded_stamp_update,
    is_unique_violation,
)
from app.models.user import Users, new_concurrency_stamp


async def _bump_stamp(session_factory: async_sessionmaker[AsyncSession], user_id: int) -> None:
    async with session_factory() as other:
        await other.execute(
            update(Users)
            .where(Users.user_id == user_id)  # type: ignore[arg-type]
            .values(concurrency_stamp=new_concurrency_stamp())
        )
        await other.commit()


async def _load(session_factory: async_sessionmaker[AsyncSession], user_id: int) -> Users:
    async with session_factory() as fresh:
        user = await fresh.get(Users, user_id)
        assert user is not None
        return user


@dataclass
class Scratch:
    notes: list[str] = field(default_factory=list)


@pytest.mark.unit
class TestExecuteInTransaction:
    async def test_commits_on_success(self, session_factory, transactions, test_user):
        async def operation(db: AsyncSession, state: None) -> Users | ConcurrencyConflict:
            user = await db.get(Users, test_user.user_id)
            assert user is not None
            if not await guarded_stamp_update(db, user, requires_password_change=True):
                return CONFLICT
            return user

        result = await transactions.execute_in_transaction(operation)

        assert result.requires_password_change is True
        stored = await _load(session_factory, test_user.user_id)
        assert stored.requires_password_change is True
        assert stored.concurrency_stamp != test_user.concurrency_stamp

    async def test_conflict_then_retry_succeeds(self, session_factory, test_user):
        sleep = AsyncMock()
        transactions = TransactionManager(session_factory, sleep=sleep)
        attempts = 0

        async def operation(db: AsyncSession, state: None) -> Users | ConcurrencyConflict:
            nonlocal attempts
            attempts += 1
            user = await db.get(Users, test_user.user_id)
            assert user is not None
            if attempts == 1:
                # Another writer commits between our read and our write
                await _bump_stamp(session_factory, test_user.user_id)
            if not await guarded_stamp_update(db, user, email_confirmed=False):
                return CONFLICT
            return user

        await transactions.execute_in_transaction(operation, backoff=lambda n: 0.01 * n)

        assert attempts == 2
        sleep.assert_awaited_once_with(0.01)
        stored = await _load(session_factory, test_user.user_id)
        assert stored.email_confirmed is False

    async def test_fresh_state_per_attempt(self, session_factory, transactions):
        seen: list[list[str]] = []

        async def operation(db: AsyncSession, state: Scratch) -> str | ConcurrencyConflict:
            seen.append(list(state.notes))
            state.notes.append("touched")
            return CONFLICT if len(seen) < 3 else "done"

        result = await transactions.execute_in_transaction(operation, state_factory=Scratch)

        assert result == "done"
        assert seen == [[], [], []]

    async def test_exhaustion_raises_conflict_error(self, transactions):
        attempts = 0

        async def operation(db: AsyncSession, state: None) -> ConcurrencyConflict:
            nonlocal attempts
            attempts += 1
            return CONFLICT

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await transactions.execute_in_transaction(operation, max_retries=2)

        # max_retries retries after the first attempt
        assert attempts == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "CONCURRENCY_CONFLICT"

    async def test_other_errors_propagate_without_retry(self, session_factory, transactions, test_user):
        attempts = 0

        async def operation(db: AsyncSession, state: None) -> None:
            nonlocal attempts
            attempts += 1
            user = await db.get(Users, test_user.user_id)
            assert user is not None
            await guarded_stamp_update(db, user, active=False)
            raise NotFoundError("nope")

        with pytest.raises(NotFoundError):
            await transactions.execute_in_transaction(operation)

        assert attempts == 1
        stored = await _load(session_factory, test_user.user_id)
        assert stored.active is True  # rolled back

    async def test_unique_violation_is_retried(self, transactions, test_user):
        attempts = 0

        async def operation(db: AsyncSession, state: None) -> str:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                db.add(
                    Users(
                        username=test_user.username,
                        email="other@example.com",
                        password="x",
                        created_at=test_user.created_at,
                    )
                )
                await db.flush()
            return "ok"

        assert await transactions.execute_in_transaction(operation) == "ok"
        assert attempts == 2


@pytest.mark.unit
class TestGuardedStampUpdate:
    async def test_writes_row_once(self, engine, session_factory, test_user):
        statements: list[str] = []

        def record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(engine.sync_engine, "before_cursor_execute", record)
        try:
            async with session_factory() as db:
                user = await db.get(Users, test_user.user_id)
                assert user is not None
                assert await guarded_stamp_update(db, user, requires_password_change=True)

                assert user not in db.dirty
                assert user.requires_password_change is True
                await db.commit()
        finally:
            event.remove(engine.sync_engine, "before_cursor_execute", record)

        updates = [s for s in statements if s.lstrip().upper().startswith("UPDATE")]
        assert len(updates) == 1
        stored = await _load(session_factory, test_user.user_id)
        assert stored.concurrency_stamp == user.concurrency_stamp
        assert stored.requires_password_change is True

    async def test_stale_stamp_leaves_instance_untouched(self, session_factory, test_user):
        async with session_factory() as db:
            user = await db.get(Users, test_user.user_id)
            assert user is not None
            await _bump_stamp(session_factory, test_user.user_id)

            assert not await guarded_stamp_update(db, user, requires_password_change=True)
            assert user.concurrency_stamp == test_user.concurrency_stamp
            assert user.requires_password_change is False

@pytest.mark.unit
class TestBackoff:
    def test_grows_and_is_capped(self):
        first = exponential_backoff(1)
        assert 0.0375 <= first <= 0.0625
        third = exponential_backoff(3)
        assert 0.15 <= third <= 0.25
        assert exponential_backoff(20) == 2.0


@pytest.mark.unit
class TestUniqueViolationDetection:
    @pytest.mark.parametrize(
        "message",
        [
            "(1062, \"Duplicate entry 'alice' for key 'idx_users_username'\")",
            "UNIQUE constraint failed: users.username",
        ],
    )
    def test_detects_driver_messages(self, message):
        assert is_unique_violation(IntegrityError("INSERT", {}, Exception(message)))

    def test_ignores_other_integrity_errors(self):
        error = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: users.email"))
        assert not is_unique_violation(error)
