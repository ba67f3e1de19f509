"""Tests for TOTP enrollment under concurrent account updates."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update

from app.config import AuthErrorCode
from app.core import transaction
from app.core.errors import ConflictError
from app.core.transaction import TransactionManager
from app.models.user import Users, new_concurrency_stamp
from app.services import mfa_enrollment


async def load_user(session_factory, user_id: int) -> Users:
    async with session_factory() as db:
        user = await db.get(Users, user_id)
        assert user is not None
        return user


@pytest.mark.unit
class TestInitiateEnrollment:
    async def test_setup_fails_when_conflicts_persist(self, session_factory, test_user, protector):
        sleep = AsyncMock()
        transactions = TransactionManager(session_factory, sleep=sleep)

        with patch(
            "app.services.mfa_enrollment.guarded_stamp_update",
            new_callable=AsyncMock,
            return_value=False,
        ) as guarded:
            with pytest.raises(ConflictError) as exc_info:
                await mfa_enrollment.initiate_enrollment(transactions, protector, test_user.user_id)

        assert exc_info.value.code == AuthErrorCode.TOTP_SETUP_FAILED
        assert exc_info.value.status_code == 409
        # TOTP_SETUP_MAX_ATTEMPTS attempts in total
        assert guarded.await_count == 3
        assert sleep.await_count == 2

        user = await load_user(session_factory, test_user.user_id)
        assert user.totp_secret is None
        assert user.concurrency_stamp == test_user.concurrency_stamp

    async def test_retry_returns_the_secret_it_stored(self, session_factory, test_user, protector):
        transactions = TransactionManager(session_factory, sleep=AsyncMock())
        real = transaction.guarded_stamp_update
        calls = 0

        async def beaten_once(db, user, **values):
            nonlocal calls
            calls += 1
            if calls == 1:
                async with session_factory() as other:
                    await other.execute(
                        update(Users)
                        .where(Users.user_id == user.user_id)  # type: ignore[arg-type]
                        .values(concurrency_stamp=new_concurrency_stamp())
                    )
                    await other.commit()
            return await real(db, user, **values)

        with patch("app.services.mfa_enrollment.guarded_stamp_update", side_effect=beaten_once):
            setup = await mfa_enrollment.initiate_enrollment(transactions, protector, test_user.user_id)

        assert calls == 2
        user = await load_user(session_factory, test_user.user_id)
        assert protector.unprotect(user.totp_secret) == setup.secret
        assert user.has_pending_totp


@pytest.mark.unit
class TestPendingTotp:
    def test_pending_states(self):
        assert not Users(username="a", email="a@example.com", password="x").has_pending_totp
        assert Users(username="a", email="a@example.com", password="x", totp_secret="s").has_pending_totp
