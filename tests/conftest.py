"""
Pytest configuration and shared fixtures.

This file provides common fixtures for all tests.

Each test gets its own file-backed SQLite database (aiosqlite) with the
schema created from SQLModel metadata, a frozen clock, and fakes for Redis
and the notification queue. Settings are read from the environment at
import time, so the test environment is set before anything under app/ is
imported.
"""

import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./unused-test.db")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("BREACHED_PASSWORD_CHECK_ENABLED", "false")

import asyncio  # noqa: E402
import hashlib  # noqa: E402
from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402
from typing import Any  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import app.models  # noqa: E402, F401  (registers every table with SQLModel.metadata)
from app.config import RoleName, settings  # noqa: E402
from app.core.clock import FrozenClock, get_clock  # noqa: E402
from app.core.database import (  # noqa: E402
    create_engine_for_url,
    create_session_factory,
    get_db,
    get_session_factory,
)
from app.core.role_cache import get_redis  # noqa: E402
from app.core.secret_protector import SecretProtector, get_secret_protector  # noqa: E402
from app.core.security import create_access_token, get_password_hash  # noqa: E402
from app.core.transaction import TransactionManager  # noqa: E402
from app.main import app as main_app  # noqa: E402
from app.models.permissions import UserRoles  # noqa: E402
from app.models.user import Users  # noqa: E402
from app.services import breached_password  # noqa: E402
from app.services.mfa_attempt_tracker import MfaAttemptTracker, get_mfa_attempt_tracker  # noqa: E402
from app.services.notifications import NotificationQueue, get_notification_queue  # noqa: E402
from app.services.user_admin import get_or_create_role  # noqa: E402

TEST_PASSWORD = "TestPassword123!"
FROZEN_START = datetime(2026, 1, 15, 12, 0, 0)


class _FakePipeline:
    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._calls: list[tuple[str, tuple[Any, ...]]] = []

    def incr(self, key: str) -> "_FakePipeline":
        self._calls.append(("incr", (key,)))
        return self

    def expire(self, key: str, time: int | timedelta) -> "_FakePipeline":
        self._calls.append(("expire", (key, time)))
        return self

    async def execute(self) -> list[Any]:
        return [await getattr(self._client, name)(*args) for name, args in self._calls]


class _FakeLock:
    def __init__(self, lock: asyncio.Lock) -> None:
        self._lock = lock

    async def acquire(self) -> bool:
        await self._lock.acquire()
        return True

    async def release(self) -> None:
        self._lock.release()


class FakeRedis:
    """
    Dict-backed Redis for the attempt tracker.

    Key expiry follows the frozen clock, so tests can age counters and
    lockouts with clock.advance(). Locks are plain asyncio locks keyed by name.
    """

    def __init__(self, clock: FrozenClock) -> None:
        self._clock = clock
        self.data: dict[str, str] = {}
        self._expires_at: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _live(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self._clock.now():
            self.data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self.data

    async def get(self, key: str) -> str | None:
        return self.data[key] if self._live(key) else None

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._live(key))

    async def incr(self, key: str) -> int:
        value = int(self.data[key]) + 1 if self._live(key) else 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, time: int | timedelta) -> bool:
        if not self._live(key):
            return False
        seconds = time if isinstance(time, timedelta) else timedelta(seconds=time)
        self._expires_at[key] = self._clock.now() + seconds
        return True

    async def set(
        self, key: str, value: str, ex: int | timedelta | None = None, nx: bool = False
    ) -> bool | None:
        if nx and self._live(key):
            return None
        self.data[key] = str(value)
        self._expires_at.pop(key, None)
        if ex is not None:
            await self.expire(key, ex)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._live(key):
                removed += 1
            self.data.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    def pipeline(self) -> _FakePipeline:
        return _FakePipeline(self)

    def lock(self, name: str, **_: Any) -> "_FakeLock":
        return _FakeLock(self._locks.setdefault(name, asyncio.Lock()))


@pytest.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a fresh SQLite database for each test function.

    File-backed rather than in-memory so that the request session and the
    transaction manager's sessions see the same data.
    """
    test_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a new database session for each test.

    Commit after writing: SQLite allows one writer, and the app under test
    writes through its own sessions.
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FrozenClock:
    """A clock pinned at FROZEN_START; advance it with clock.advance(minutes=...)."""
    return FrozenClock(FROZEN_START)


@pytest.fixture
def attempt_store(clock: FrozenClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def tracker(attempt_store: FakeRedis) -> MfaAttemptTracker:
    return MfaAttemptTracker(attempt_store)


@pytest.fixture
def protector() -> SecretProtector:
    return SecretProtector("test-mfa-encryption-key")


@pytest.fixture
def notifier() -> AsyncMock:
    """Records enqueued emails instead of talking to arq."""
    return AsyncMock(spec=NotificationQueue)


@pytest.fixture
def redis_client() -> AsyncMock:
    """Redis stand-in with an always-empty cache."""
    client = AsyncMock()
    client.get.return_value = None
    return client


@pytest.fixture
def transactions(session_factory: async_sessionmaker[AsyncSession]) -> TransactionManager:
    """Transaction manager that retries without sleeping."""
    return TransactionManager(session_factory, sleep=AsyncMock())


@pytest.fixture(scope="function")
def app(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
    tracker: MfaAttemptTracker,
    protector: SecretProtector,
    notifier: AsyncMock,
    redis_client: AsyncMock,
) -> FastAPI:
    """
    Create FastAPI app wired to the per-test database and fakes.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield redis_client

    main_app.dependency_overrides[get_db] = override_get_db
    main_app.dependency_overrides[get_session_factory] = lambda: session_factory
    main_app.dependency_overrides[get_clock] = lambda: clock
    main_app.dependency_overrides[get_mfa_attempt_tracker] = lambda: tracker
    main_app.dependency_overrides[get_secret_protector] = lambda: protector
    main_app.dependency_overrides[get_notification_queue] = lambda: notifier
    main_app.dependency_overrides[get_redis] = override_get_redis

    yield main_app

    main_app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """
    Create async HTTP client for testing API endpoints.

    Usage:
        async def test_endpoint(client):
            response = await client.get("/api/v1/auth/me")
            assert response.status_code == 401
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def make_user(
    db_session: AsyncSession, clock: FrozenClock
) -> Callable[..., Awaitable[Users]]:
    """
    Factory creating committed users.

    Usage:
        async def test_something(make_user):
            user = await make_user("alice", roles=[RoleName.ADMIN])
    """

    async def _make_user(
        username: str = "testuser",
        *,
        email: str | None = None,
        password: str = TEST_PASSWORD,
        roles: list[str] | None = None,
        **fields: object,
    ) -> Users:
        user = Users(
            username=username,
            email=email or f"{username}@example.com",
            password=get_password_hash(password),
            created_at=clock.now(),
            email_confirmed=True,
            **fields,
        )
        db_session.add(user)
        await db_session.flush()
        for role_name in roles if roles is not None else [RoleName.USER]:
            role = await get_or_create_role(db_session, role_name)
            assert role.role_id is not None and user.user_id is not None
            db_session.add(UserRoles(user_id=user.user_id, role_id=role.role_id))
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
async def test_user(make_user: Callable[..., Awaitable[Users]]) -> Users:
    return await make_user("testuser")


@pytest.fixture
async def admin_user(make_user: Callable[..., Awaitable[Users]]) -> Users:
    return await make_user("adminuser", roles=[RoleName.USER, RoleName.ADMIN])


def auth_headers(user: Users, clock: FrozenClock, roles: list[str] | None = None) -> dict[str, str]:
    """Bearer header for a user, issued at the frozen clock's time."""
    assert user.user_id is not None
    token, _ = create_access_token(
        user.user_id, user.username, roles or [RoleName.USER], issued_at=clock.now()
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers(test_user: Users, clock: FrozenClock) -> dict[str, str]:
    return auth_headers(test_user, clock)


@pytest.fixture
def admin_headers(admin_user: Users, clock: FrozenClock) -> dict[str, str]:
    return auth_headers(admin_user, clock, [RoleName.USER, RoleName.ADMIN])


@pytest.fixture
def breached_passwords(monkeypatch: pytest.MonkeyPatch) -> set[str]:
    """
    Turn the breach check on with a canned range API.

    Add passwords to the returned set to have them reported as breached.
    """
    monkeypatch.setattr(settings, "BREACHED_PASSWORD_CHECK_ENABLED", True)
    monkeypatch.setattr(settings, "BREACHED_PASSWORD_BLOCK", True)
    breached: set[str] = set()

    async def fake_fetch(prefix: str) -> str:
        lines = []
        for password in breached:
            digest = hashlib.sha1(password.encode()).hexdigest().upper()
            if digest.startswith(prefix):
                lines.append(f"{digest[5:]}:1234")
        return "\r\n".join(lines)

    monkeypatch.setattr(breached_password, "fetch_hash_suffixes", fake_fetch)
    return breached
