"""
Refresh token store and rotation.

Refresh tokens are opaque 256-bit values; only their SHA256 hash is stored.
Tokens issued from one login form a family. Rotating a token revokes it and
issues its successor in the same family in one commit, so at most one token
per family is ever usable. Presenting a revoked token again is treated as
theft: the whole family is revoked.

Every family also has an absolute lifetime (ABSOLUTE_SESSION_TIMEOUT_DAYS
from session_started_at) that rotation cannot extend.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AuthErrorCode, AuthErrorMessage, SecurityEventType, settings
from app.core.errors import AuthenticationError
from app.core.logging import get_logger
from app.core.role_cache import get_user_roles
from app.core.security import create_access_token, generate_secure_token, hash_token
from app.models.refresh_token import RefreshTokens
from app.models.user import Users
from app.services import security_audit

logger = get_logger(__name__)


@dataclass
class IssuedRefreshToken:
    token: str
    expires_at: datetime
    record: RefreshTokens


@dataclass
class RotationResult:
    user: Users
    access_token: str
    access_token_expires_at: datetime
    refresh: IssuedRefreshToken


def refresh_token_lifetime(remember_me: bool) -> timedelta:
    days = (
        settings.REFRESH_TOKEN_REMEMBER_ME_EXPIRE_DAYS
        if remember_me
        else settings.REFRESH_TOKEN_EXPIRE_DAYS
    )
    return timedelta(days=min(days, settings.ABSOLUTE_SESSION_TIMEOUT_DAYS))


def session_deadline(session_started_at: datetime) -> datetime:
    return session_started_at + timedelta(days=settings.ABSOLUTE_SESSION_TIMEOUT_DAYS)


async def build_access_token(db: AsyncSession, user: Users, now: datetime) -> tuple[str, datetime]:
    """Create an access JWT carrying the user's current roles."""
    if user.user_id is None:
        raise ValueError("User ID cannot be None")
    roles = await get_user_roles(db, user.user_id)
    return create_access_token(
        user.user_id,
        user.username,
        sorted(roles),
        issued_at=now,
        requires_password_change=user.requires_password_change,
    )


async def enforce_session_limit(db: AsyncSession, user_id: int, now: datetime) -> int:
    """
    Revoke the oldest active tokens so a new family fits under the cap.

    Returns:
        Number of tokens revoked
    """
    active_filter = (
        RefreshTokens.user_id == user_id,
        RefreshTokens.revoked == False,  # noqa: E712
        RefreshTokens.expires_at > now,
    )
    count_result = await db.execute(
        select(func.count()).select_from(RefreshTokens).where(*active_filter)  # type: ignore[arg-type]
    )
    active_count = int(count_result.scalar_one())
    if active_count < settings.MAX_ACTIVE_SESSIONS_PER_USER:
        return 0

    excess = active_count - settings.MAX_ACTIVE_SESSIONS_PER_USER + 1
    oldest = await db.execute(
        select(RefreshTokens.id)
        .where(*active_filter)  # type: ignore[arg-type]
        .order_by(RefreshTokens.created_at, RefreshTokens.id)
        .limit(excess)
    )
    oldest_ids = [row[0] for row in oldest.fetchall()]
    await db.execute(
        update(RefreshTokens)
        .where(RefreshTokens.id.in_(oldest_ids))  # type: ignore[union-attr]
        .values(revoked=True, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    logger.info("session_limit_enforced", user_id=user_id, revoked_count=len(oldest_ids))
    return len(oldest_ids)


async def issue_refresh_token(
    db: AsyncSession,
    user_id: int,
    *,
    now: datetime,
    remember_me: bool,
    ip_address: str | None = None,
    user_agent: str | None = None,
    family_id: str | None = None,
    session_started_at: datetime | None = None,
    parent_token_id: int | None = None,
) -> IssuedRefreshToken:
    """
    Persist a refresh token.

    Without family_id a new family (new login session) is started and the
    session cap applies. With family_id the token continues an existing
    session and inherits its start time.
    """
    if family_id is None:
        await enforce_session_limit(db, user_id, now)
        family_id = str(uuid.uuid4())
        session_started_at = now
    elif session_started_at is None:
        raise ValueError("session_started_at is required when continuing a family")

    expires_at = min(now + refresh_token_lifetime(remember_me), session_deadline(session_started_at))

    token = generate_secure_token()
    record = RefreshTokens(
        user_id=user_id,
        token_hash=hash_token(token),
        family_id=family_id,
        session_started_at=session_started_at,
        created_at=now,
        expires_at=expires_at,
        ip_address=ip_address,
        user_agent=user_agent[:255] if user_agent else None,
        parent_token_id=parent_token_id,
    )
    db.add(record)
    await db.flush()
    return IssuedRefreshToken(token=token, expires_at=expires_at, record=record)


async def _revoke_if_active(db: AsyncSession, token_id: int, now: datetime) -> bool:
    """Guarded revoke. False if the token was already revoked."""
    result = await db.execute(
        update(RefreshTokens)
        .where(RefreshTokens.id == token_id)  # type: ignore[arg-type]
        .where(RefreshTokens.revoked == False)  # type: ignore[arg-type]  # noqa: E712
        .values(revoked=True, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1  # type: ignore[attr-defined]


async def revoke_family(db: AsyncSession, family_id: str, now: datetime) -> int:
    result = await db.execute(
        update(RefreshTokens)
        .where(RefreshTokens.family_id == family_id)  # type: ignore[arg-type]
        .where(RefreshTokens.revoked == False)  # type: ignore[arg-type]  # noqa: E712
        .values(revoked=True, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


async def revoke_all_user_tokens(db: AsyncSession, user_id: int, now: datetime) -> int:
    """Revoke every active refresh token of a user (logout everywhere)."""
    result = await db.execute(
        update(RefreshTokens)
        .where(RefreshTokens.user_id == user_id)  # type: ignore[arg-type]
        .where(RefreshTokens.revoked == False)  # type: ignore[arg-type]  # noqa: E712
        .values(revoked=True, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


async def revoke_refresh_token(db: AsyncSession, presented: str, now: datetime) -> RefreshTokens | None:
    """
    Revoke a single refresh token (logout).

    Returns:
        The token row if it existed, None otherwise
    """
    result = await db.execute(
        select(RefreshTokens).where(RefreshTokens.token_hash == hash_token(presented))  # type: ignore[arg-type]
    )
    record = result.scalar_one_or_none()
    if record is not None and record.id is not None:
        await _revoke_if_active(db, record.id, now)
    return record


async def _handle_reuse(
    db: AsyncSession, record: RefreshTokens, now: datetime, client_ip: str | None
) -> None:
    """Revoke the family of a replayed token and commit."""
    revoked_count = await revoke_family(db, record.family_id, now)
    await security_audit.log_event(
        db,
        SecurityEventType.TOKEN_REUSE_DETECTED,
        now=now,
        user_id=record.user_id,
        success=False,
        details=f"family revoked ({revoked_count} active tokens)",
        ip_address=client_ip,
    )
    await db.commit()
    logger.warning(
        "refresh_token_reuse_detected",
        user_id=record.user_id,
        family_id=record.family_id,
        revoked_count=revoked_count,
    )


async def rotate_refresh_token(
    db: AsyncSession,
    presented: str,
    *,
    now: datetime,
    client_ip: str | None = None,
    user_agent: str | None = None,
) -> RotationResult:
    """
    Exchange a refresh token for a new access/refresh pair.

    Raises:
        AuthenticationError: INVALID_TOKEN, TOKEN_REUSE or TOKEN_EXPIRED
    """
    result = await db.execute(
        select(RefreshTokens).where(RefreshTokens.token_hash == hash_token(presented))  # type: ignore[arg-type]
    )
    record = result.scalar_one_or_none()

    if record is None or record.id is None:
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    if record.revoked:
        await _handle_reuse(db, record, now, client_ip)
        raise AuthenticationError(AuthErrorMessage.TOKEN_REUSE, code=AuthErrorCode.TOKEN_REUSE)

    if record.expires_at <= now or now >= session_deadline(record.session_started_at):
        # Ordinary expiry: only this token is retired
        await _revoke_if_active(db, record.id, now)
        await db.commit()
        logger.info("refresh_token_expired", user_id=record.user_id, family_id=record.family_id)
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.TOKEN_EXPIRED)

    user = await db.get(Users, record.user_id)
    if user is None or not user.is_valid_account:
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    if not await _revoke_if_active(db, record.id, now):
        # Another request rotated this token first
        await _handle_reuse(db, record, now, client_ip)
        raise AuthenticationError(AuthErrorMessage.TOKEN_REUSE, code=AuthErrorCode.TOKEN_REUSE)

    remember_me = (record.expires_at - record.created_at) > timedelta(
        days=settings.REFRESH_TOKEN_EXPIRE_DAYS
    )
    successor = await issue_refresh_token(
        db,
        record.user_id,
        now=now,
        remember_me=remember_me,
        ip_address=client_ip,
        user_agent=user_agent,
        family_id=record.family_id,
        session_started_at=record.session_started_at,
        parent_token_id=record.id,
    )
    access_token, access_expires_at = await build_access_token(db, user, now)

    await security_audit.log_event(
        db,
        SecurityEventType.TOKEN_REFRESHED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        ip_address=client_ip,
    )
    await db.commit()

    return RotationResult(
        user=user,
        access_token=access_token,
        access_token_expires_at=access_expires_at,
        refresh=successor,
    )
