"""
Tests for authentication API endpoints.

These tests cover the /api/v1/auth endpoints including:
- Login and account lockout
- Token refresh with rotation and reuse detection
- Logout and logout everywhere
- Current user
"""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.config import SecurityEventType
from app.models.refresh_token import RefreshTokens
from app.models.security_event import SecurityEvents
from app.models.user import Users
from tests.conftest import TEST_PASSWORD, auth_headers

LOGIN_URL = "/api/v1/auth/login"


async def login(client: AsyncClient, username: str = "testuser", password: str = TEST_PASSWORD, **extra):
    return await client.post(
        LOGIN_URL, json={"username_or_email": username, "password": password, **extra}
    )


async def load_user(session_factory, user_id: int) -> Users:
    async with session_factory() as db:
        user = await db.get(Users, user_id)
        assert user is not None
        return user


@pytest.mark.api
class TestLogin:
    """Tests for POST /api/v1/auth/login endpoint."""

    async def test_login_success(self, client: AsyncClient, test_user, clock, session_factory):
        response = await login(client)

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 15 * 60
        assert data["requires_password_change"] is False
        assert data["refresh_token"]
        assert "refresh_token" in response.cookies
        assert "access_token" in response.cookies

        user = await load_user(session_factory, test_user.user_id)
        assert user.last_login_at == clock.now()
        assert user.failed_login_attempts == 0

    async def test_login_by_email_is_case_insensitive(self, client: AsyncClient, test_user):
        response = await login(client, "TestUser@Example.com")
        assert response.status_code == 200

    async def test_remember_me_extends_refresh_lifetime(self, client: AsyncClient, test_user, clock, session_factory):
        response = await login(client, remember_me=True)
        assert response.status_code == 200

        async with session_factory() as db:
            token = (await db.execute(select(RefreshTokens))).scalar_one()
        assert token.expires_at == clock.now() + timedelta(days=14)

    async def test_failures_are_indistinguishable(self, client: AsyncClient, test_user, make_user):
        await make_user("inactive", active=False)
        await make_user("deleted", is_deleted=True)

        responses = [
            await login(client, "testuser", "WrongPassword1!"),
            await login(client, "nobody", TEST_PASSWORD),
            await login(client, "inactive", TEST_PASSWORD),
            await login(client, "deleted", TEST_PASSWORD),
        ]

        assert {r.status_code for r in responses} == {401}
        assert {r.json()["detail"] for r in responses} == {"Invalid credentials"}
        assert {r.json()["code"] for r in responses} == {"INVALID_CREDENTIALS"}

    async def test_failed_login_is_audited(self, client: AsyncClient, test_user, session_factory):
        await login(client, "nobody", "whatever")

        async with session_factory() as db:
            event = (await db.execute(select(SecurityEvents))).scalar_one()
        assert event.event_type == SecurityEventType.LOGIN_FAILED
        assert event.success is False
        assert event.username == "no***"

    async def test_missing_fields_rejected(self, client: AsyncClient):
        response = await client.post(LOGIN_URL, json={"username_or_email": "testuser"})
        assert response.status_code == 422


@pytest.mark.api
class TestLockout:
    async def test_fifth_failure_locks_account(self, client: AsyncClient, test_user, session_factory, clock):
        for _ in range(4):
            response = await login(client, password="WrongPassword1!")
            assert response.status_code == 401

        response = await login(client, password="WrongPassword1!")
        assert response.status_code == 423
        assert response.json()["code"] == "ACCOUNT_LOCKED"

        user = await load_user(session_factory, test_user.user_id)
        assert user.lockout_until == clock.now() + timedelta(minutes=15)

        # Correct password does not help while locked
        response = await login(client)
        assert response.status_code == 423

    async def test_lockout_expires(self, client: AsyncClient, test_user, clock):
        for _ in range(5):
            await login(client, password="WrongPassword1!")

        clock.advance(minutes=14, seconds=59)
        assert (await login(client)).status_code == 423

        clock.advance(seconds=1)
        assert (await login(client)).status_code == 200

    async def test_success_resets_counter(self, client: AsyncClient, test_user, session_factory):
        for _ in range(4):
            await login(client, password="WrongPassword1!")
        assert (await load_user(session_factory, test_user.user_id)).failed_login_attempts == 4

        assert (await login(client)).status_code == 200
        assert (await load_user(session_factory, test_user.user_id)).failed_login_attempts == 0

        # The counter starts over: four more failures still do not lock
        for _ in range(4):
            assert (await login(client, password="WrongPassword1!")).status_code == 401


@pytest.mark.api
class TestRefresh:
    """Tests for POST /api/v1/auth/refresh endpoint."""

    async def test_refresh_rotates(self, client: AsyncClient, test_user, session_factory):
        first = (await login(client)).json()["refresh_token"]

        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": first})

        assert response.status_code == 200
        second = response.json()["refresh_token"]
        assert second != first
        assert response.json()["access_token"]

        async with session_factory() as db:
            tokens = (await db.execute(select(RefreshTokens).order_by(RefreshTokens.id))).scalars().all()
        assert [t.revoked for t in tokens] == [True, False]
        assert tokens[0].family_id == tokens[1].family_id

    async def test_refresh_from_cookie(self, client: AsyncClient, test_user):
        assert (await login(client)).status_code == 200

        response = await client.post("/api/v1/auth/refresh")

        assert response.status_code == 200

    async def test_reuse_revokes_family(self, client: AsyncClient, test_user, session_factory):
        first = (await login(client)).json()["refresh_token"]
        second = (
            await client.post("/api/v1/auth/refresh", json={"refresh_token": first})
        ).json()["refresh_token"]

        replay = await client.post("/api/v1/auth/refresh", json={"refresh_token": first})
        assert replay.status_code == 401
        assert replay.json()["code"] == "TOKEN_REUSE"

        # The legitimate successor is now dead too
        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": second})
        assert response.status_code == 401

        async with session_factory() as db:
            tokens = (await db.execute(select(RefreshTokens))).scalars().all()
        assert all(t.revoked for t in tokens)

    async def test_reuse_leaves_other_sessions_alone(self, client: AsyncClient, test_user):
        first = (await login(client)).json()["refresh_token"]
        other = (await login(client)).json()["refresh_token"]
        await client.post("/api/v1/auth/refresh", json={"refresh_token": first})
        await client.post("/api/v1/auth/refresh", json={"refresh_token": first})

        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": other})
        assert response.status_code == 200

    async def test_expired_refresh_token(self, client: AsyncClient, test_user, clock):
        token = (await login(client)).json()["refresh_token"]
        clock.advance(days=7, seconds=1)

        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_EXPIRED"

    async def test_refresh_without_token(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    async def test_unknown_refresh_token(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": "bogus"})

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"


@pytest.mark.api
class TestLogout:
    async def test_logout_revokes_token(self, client: AsyncClient, test_user, session_factory):
        token = (await login(client)).json()["refresh_token"]

        response = await client.post("/api/v1/auth/logout", json={"refresh_token": token})

        assert response.status_code == 200
        refresh = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
        assert refresh.status_code == 401

        async with session_factory() as db:
            events = (
                await db.execute(
                    select(SecurityEvents.event_type).where(
                        SecurityEvents.event_type == SecurityEventType.LOGOUT
                    )
                )
            ).all()
        assert len(events) == 1

    async def test_logout_without_token(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/logout")
        assert response.status_code == 200

    async def test_logout_all(self, client: AsyncClient, test_user, clock):
        tokens = [(await login(client)).json()["refresh_token"] for _ in range(3)]

        response = await client.post("/api/v1/auth/logout-all", headers=auth_headers(test_user, clock))
        assert response.status_code == 200

        for token in tokens:
            refresh = await client.post("/api/v1/auth/refresh", json={"refresh_token": token})
            assert refresh.status_code == 401

    async def test_logout_all_requires_authentication(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/logout-all")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.api
class TestCurrentUser:
    async def test_me(self, client: AsyncClient, admin_user, admin_headers):
        response = await client.get("/api/v1/auth/me", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "adminuser"
        assert data["roles"] == ["Admin", "User"]
        assert data["mfa_enabled"] is False
        assert "password" not in data
        assert "totp_secret" not in data

    async def test_me_with_login_access_token(self, client: AsyncClient, test_user):
        access = (await login(client)).json()["access_token"]

        response = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {access}"})

        assert response.status_code == 200
        assert response.json()["user_id"] == test_user.user_id

    async def test_me_unauthenticated(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/me")

        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"

    async def test_expired_access_token(self, client: AsyncClient, test_user, user_headers, clock):
        clock.advance(minutes=15)

        response = await client.get("/api/v1/auth/me", headers=user_headers)

        assert response.status_code == 401

    async def test_deleted_user_token_rejected(self, client: AsyncClient, make_user, clock):
        user = await make_user("gone", is_deleted=True)

        response = await client.get("/api/v1/auth/me", headers=auth_headers(user, clock))

        assert response.status_code == 401
