"""
Password change, forgot-password and reset flows.

Changing or resetting a password ends every session: all refresh tokens
and trusted devices of the account are revoked.
"""

from datetime import datetime, timedelta

from fastapi import status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import (
    AccountTokenPurpose,
    AuthErrorCode,
    AuthErrorMessage,
    SecurityEventType,
    settings,
)
from app.core.errors import AuthenticationError, ServiceError
from app.core.logging import get_logger, mask_identifier
from app.core.security import get_password_hash, validate_password_strength, verify_password
from app.models.user import Users
from app.services import account_tokens, breached_password, security_audit, token_service, trusted_devices
from app.services.authentication import find_by_username_or_email
from app.services.notifications import NotificationQueue

logger = get_logger(__name__)


def ensure_strong_password(password: str) -> None:
    is_valid, error_message = validate_password_strength(password)
    if not is_valid:
        raise ServiceError(error_message or "Password is too weak", code=AuthErrorCode.WEAK_PASSWORD)


async def _set_password_and_end_sessions(
    db: AsyncSession, user: Users, new_password: str, now: datetime
) -> int:
    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    user.password = get_password_hash(new_password)
    user.requires_password_change = False
    user.failed_login_attempts = 0
    user.lockout_until = None

    revoked = await token_service.revoke_all_user_tokens(db, user.user_id, now)
    await trusted_devices.revoke_all(db, user.user_id)
    return revoked


async def change_password(
    db: AsyncSession,
    user: Users,
    *,
    current_password: str,
    new_password: str,
    now: datetime,
    client_ip: str | None = None,
) -> None:
    """
    Change password for an authenticated user.

    Raises:
        ServiceError: INVALID_PASSWORD, WEAK_PASSWORD, PASSWORD_BREACHED
    """
    if not verify_password(current_password, user.password):
        raise ServiceError(
            "Current password is incorrect",
            code=AuthErrorCode.INVALID_PASSWORD,
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    ensure_strong_password(new_password)
    await breached_password.ensure_not_breached(new_password)
    revoked = await _set_password_and_end_sessions(db, user, new_password, now)

    await security_audit.log_event(
        db,
        SecurityEventType.PASSWORD_CHANGED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        details=f"revoked {revoked} sessions",
        ip_address=client_ip,
    )
    await db.commit()


async def request_password_reset(
    db: AsyncSession,
    notifier: NotificationQueue,
    *,
    email: str,
    now: datetime,
    client_ip: str | None = None,
) -> None:
    """
    Start a password reset.

    Always completes the same way whether or not the account exists.
    """
    user = await find_by_username_or_email(db, email)
    if user is None or not user.is_valid_account or user.email.lower() != email.strip().lower():
        logger.info("password_reset_unknown_email", email=mask_identifier(email))
        return

    reset_token = await account_tokens.issue_token(
        db,
        purpose=AccountTokenPurpose.PASSWORD_RESET,
        email=user.email,
        user_id=user.user_id,
        lifetime=timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES),
        now=now,
    )
    await security_audit.log_event(
        db,
        SecurityEventType.PASSWORD_RESET_REQUESTED,
        now=now,
        user_id=user.user_id,
        username=user.username,
        ip_address=client_ip,
    )
    await db.commit()

    await notifier.send_password_reset_email(user.email, user.username, reset_token)


async def reset_password(
    db: AsyncSession,
    *,
    token: str,
    new_password: str,
    now: datetime,
    client_ip: str | None = None,
) -> None:
    """
    Set a new password with a reset token.

    Raises:
        AuthenticationError: INVALID_TOKEN
        ServiceError: WEAK_PASSWORD, PASSWORD_BREACHED
    """
    record = await account_tokens.get_valid_token(
        db, token, AccountTokenPurpose.PASSWORD_RESET, now
    )
    if record is None or record.user_id is None:
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    ensure_strong_password(new_password)
    await breached_password.ensure_not_breached(new_password)

    user = await db.get(Users, record.user_id)
    if user is None or not user.is_valid_account:
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    if not await account_tokens.mark_used(db, record, now):
        raise AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)

    revoked = await _set_password_and_end_sessions(db, user, new_password, now)
    await security_audit.log_event(
        db,
        SecurityEventType.PASSWORD_RESET,
        now=now,
        user_id=user.user_id,
        username=user.username,
        details=f"revoked {revoked} sessions",
        ip_address=client_ip,
    )
    await db.commit()
