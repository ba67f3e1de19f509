"""
Authentication service: password login and token issuance.

login() has three outcomes:
- AuthResult: tokens issued (MFA disabled, or bypassed by a trusted device)
- MfaRequired: password accepted, second factor pending
- AuthenticationError / AccountLockedError raised

Unknown, inactive and soft-deleted accounts fail exactly like a wrong
password so the response never reveals whether an account exists.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import AuthErrorMessage, SecurityEventType, settings
from app.core.errors import AccountLockedError, AuthenticationError
from app.core.logging import get_logger, mask_identifier
from app.core.security import get_password_hash, verify_password
from app.models.user import Users
from app.services import mfa_challenge, security_audit, token_service, trusted_devices

logger = get_logger(__name__)

_dummy_password_hash: str | None = None


@dataclass
class AuthResult:
    user: Users
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    requires_password_change: bool = False
    trusted_device_token: str | None = None


@dataclass
class MfaRequired:
    challenge_token: str
    delivery_hint: str
    expires_at: datetime


def _burn_password_check(password: str) -> None:
    """Spend the same bcrypt work for unknown accounts as for known ones."""
    global _dummy_password_hash
    if _dummy_password_hash is None:
        _dummy_password_hash = get_password_hash("dummy-password-for-timing")
    verify_password(password, _dummy_password_hash)


async def find_by_username_or_email(db: AsyncSession, username_or_email: str) -> Users | None:
    """Case-insensitive lookup by username or email."""
    value = username_or_email.strip().lower()
    result = await db.execute(
        select(Users).where(
            or_(
                func.lower(Users.username) == value,
                func.lower(Users.email) == value,
            )
        )
    )
    return result.scalars().first()


async def _record_failed_password(db: AsyncSession, user: Users, now: datetime) -> bool:
    """
    Atomically count a wrong password.

    Returns:
        True if this failure locked the account
    """
    await db.execute(
        update(Users)
        .where(Users.user_id == user.user_id)  # type: ignore[arg-type]
        .values(failed_login_attempts=Users.failed_login_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        select(Users.failed_login_attempts).where(Users.user_id == user.user_id)  # type: ignore[arg-type]
    )
    failed_attempts = int(result.scalar_one())

    if not settings.LOCKOUT_ENABLED or failed_attempts < settings.LOCKOUT_MAX_FAILED_ATTEMPTS:
        return False

    lockout_until = now + timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES)
    await db.execute(
        update(Users)
        .where(Users.user_id == user.user_id)  # type: ignore[arg-type]
        .values(failed_login_attempts=0, lockout_until=lockout_until)
        .execution_options(synchronize_session=False)
    )
    logger.warning(
        "account_locked",
        user_id=user.user_id,
        failed_attempts=failed_attempts,
        lockout_until=lockout_until.isoformat(),
    )
    return True


async def generate_auth_result(
    db: AsyncSession,
    user: Users,
    *,
    now: datetime,
    client_ip: str | None,
    user_agent: str | None = None,
    remember_me: bool = False,
    requires_password_change: bool | None = None,
) -> AuthResult:
    """
    Issue an access token and a refresh token in a new family.

    Updates last_login_at / last_login_ip. The caller commits.
    """
    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    if requires_password_change is None:
        requires_password_change = user.requires_password_change

    refresh = await token_service.issue_refresh_token(
        db,
        user.user_id,
        now=now,
        remember_me=remember_me,
        ip_address=client_ip,
        user_agent=user_agent,
    )
    access_token, access_expires_at = await token_service.build_access_token(db, user, now)

    user.last_login_at = now
    user.last_login_ip = client_ip

    return AuthResult(
        user=user,
        access_token=access_token,
        access_token_expires_at=access_expires_at,
        refresh_token=refresh.token,
        refresh_token_expires_at=refresh.expires_at,
        requires_password_change=requires_password_change,
    )


async def login(
    db: AsyncSession,
    *,
    username_or_email: str,
    password: str,
    remember_me: bool,
    client_ip: str | None,
    user_agent: str,
    now: datetime,
    trusted_device_token: str | None = None,
) -> AuthResult | MfaRequired:
    """
    Authenticate with a password.

    Raises:
        AuthenticationError: INVALID_CREDENTIALS
        AccountLockedError: ACCOUNT_LOCKED
    """
    user = await find_by_username_or_email(db, username_or_email)

    if user is None or not user.is_valid_account:
        _burn_password_check(password)
        await security_audit.log_event(
            db,
            SecurityEventType.LOGIN_FAILED,
            now=now,
            username=username_or_email,
            success=False,
            details="User not found" if user is None else "User inactive",
            ip_address=client_ip,
        )
        await db.commit()
        raise AuthenticationError(AuthErrorMessage.INVALID_CREDENTIALS)

    if settings.LOCKOUT_ENABLED and user.lockout_until is not None and user.lockout_until > now:
        await security_audit.log_event(
            db,
            SecurityEventType.ACCOUNT_LOCKED,
            now=now,
            user_id=user.user_id,
            username=user.username,
            success=False,
            details="Login attempted while locked",
            ip_address=client_ip,
        )
        await db.commit()
        raise AccountLockedError(AuthErrorMessage.ACCOUNT_LOCKED)

    if not verify_password(password, user.password):
        locked = await _record_failed_password(db, user, now)
        await security_audit.log_event(
            db,
            SecurityEventType.ACCOUNT_LOCKED if locked else SecurityEventType.LOGIN_FAILED,
            now=now,
            user_id=user.user_id,
            username=user.username,
            success=False,
            ip_address=client_ip,
        )
        await db.commit()
        if locked:
            raise AccountLockedError(AuthErrorMessage.ACCOUNT_LOCKED)
        raise AuthenticationError(AuthErrorMessage.INVALID_CREDENTIALS)

    # Correct password
    user.failed_login_attempts = 0
    user.lockout_until = None
    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    if user.mfa_enabled:
        if await trusted_devices.validate_trusted_device(
            db, user.user_id, trusted_device_token, user_agent, client_ip, now
        ):
            await security_audit.log_event(
                db,
                SecurityEventType.MFA_BYPASSED_TRUSTED_DEVICE,
                now=now,
                user_id=user.user_id,
                username=user.username,
                ip_address=client_ip,
            )
            result = await generate_auth_result(
                db,
                user,
                now=now,
                client_ip=client_ip,
                user_agent=user_agent,
                remember_me=remember_me,
            )
            await db.commit()
            return result

        challenge_token = await mfa_challenge.create_challenge(
            db, user.user_id, client_ip, now, remember_me=remember_me
        )
        await security_audit.log_event(
            db,
            SecurityEventType.MFA_CHALLENGE_ISSUED,
            now=now,
            user_id=user.user_id,
            username=user.username,
            ip_address=client_ip,
        )
        await db.commit()
        return MfaRequired(
            challenge_token=challenge_token,
            delivery_hint=mask_identifier(user.email),
            expires_at=now + timedelta(minutes=settings.MFA_CHALLENGE_EXPIRE_MINUTES),
        )

    await security_audit.log_event(
        db,
        SecurityEventType.LOGIN_SUCCESS,
        now=now,
        user_id=user.user_id,
        username=user.username,
        ip_address=client_ip,
    )
    result = await generate_auth_result(
        db,
        user,
        now=now,
        client_ip=client_ip,
        user_agent=user_agent,
        remember_me=remember_me,
    )
    await db.commit()
    return result

