"""
Two-step registration.

initiate_registration() answers the same way whether or not the email is
already registered; a verification link is only sent when it is free.
complete_registration() redeems the single-use token, creates an active,
email-confirmed account with the User role and signs it in.
"""

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import (
    AccountTokenPurpose,
    AuthErrorCode,
    AuthErrorMessage,
    RoleName,
    SecurityEventType,
    settings,
)
from app.core.errors import AuthenticationError, ConflictError
from app.core.logging import get_logger, mask_identifier
from app.core.security import get_password_hash
from app.core.transaction import is_unique_violation
from app.models.permissions import UserRoles
from app.models.user import Users
from app.services import account_tokens, breached_password, security_audit
from app.services.authentication import AuthResult, generate_auth_result
from app.services.notifications import NotificationQueue
from app.services.password import ensure_strong_password
from app.services.user_admin import get_or_create_role

logger = get_logger(__name__)


def _invalid_token() -> AuthenticationError:
    return AuthenticationError(AuthErrorMessage.INVALID_TOKEN, code=AuthErrorCode.INVALID_TOKEN)


def _username_taken() -> ConflictError:
    return ConflictError("Username is already taken", code=AuthErrorCode.USERNAME_TAKEN)


async def _email_in_use(db: AsyncSession, email: str) -> bool:
    result = await db.execute(
        select(Users.user_id).where(func.lower(Users.email) == email.lower())
    )
    return result.first() is not None


async def _username_in_use(db: AsyncSession, username: str) -> bool:
    result = await db.execute(
        select(Users.user_id).where(func.lower(Users.username) == username.lower())
    )
    return result.first() is not None


async def initiate_registration(
    db: AsyncSession,
    notifier: NotificationQueue,
    *,
    email: str,
    now: datetime,
) -> None:
    """Send a verification link if the email is not registered yet."""
    email = email.strip().lower()
    if await _email_in_use(db, email):
        logger.info("registration_email_in_use", email=mask_identifier(email))
        return

    registration_token = await account_tokens.issue_token(
        db,
        purpose=AccountTokenPurpose.REGISTRATION,
        email=email,
        lifetime=timedelta(hours=settings.REGISTRATION_TOKEN_EXPIRE_HOURS),
        now=now,
    )
    await db.commit()

    logger.info("registration_initiated", email=mask_identifier(email))
    await notifier.send_verification_email(email, registration_token)


async def complete_registration(
    db: AsyncSession,
    notifier: NotificationQueue,
    *,
    token: str,
    username: str,
    password: str,
    now: datetime,
    client_ip: str | None,
    user_agent: str | None = None,
) -> AuthResult:
    """
    Create the account and sign it in.

    Raises:
        AuthenticationError: INVALID_TOKEN
        ServiceError: WEAK_PASSWORD, PASSWORD_BREACHED
        ConflictError: USERNAME_TAKEN
    """
    record = await account_tokens.get_valid_token(
        db, token, AccountTokenPurpose.REGISTRATION, now
    )
    if record is None:
        raise _invalid_token()

    ensure_strong_password(password)
    await breached_password.ensure_not_breached(password)

    username = username.strip()
    if await _username_in_use(db, username):
        raise _username_taken()
    if await _email_in_use(db, record.email):
        raise _invalid_token()

    if not await account_tokens.mark_used(db, record, now):
        raise _invalid_token()

    user = Users(
        username=username,
        email=record.email,
        password=get_password_hash(password),
        created_at=now,
        active=True,
        email_confirmed=True,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        if is_unique_violation(e):
            raise _username_taken() from e
        raise

    if user.user_id is None:
        raise ValueError("User ID cannot be None")

    role = await get_or_create_role(db, RoleName.USER)
    if role.role_id is None:
        raise ValueError("Role ID cannot be None")
    db.add(UserRoles(user_id=user.user_id, role_id=role.role_id))

    await security_audit.log_event(
        db,
        SecurityEventType.REGISTRATION_COMPLETED,
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
        remember_me=False,
        requires_password_change=False,
    )
    await db.commit()

    await notifier.send_welcome_email(user.email, user.username)
    return result
